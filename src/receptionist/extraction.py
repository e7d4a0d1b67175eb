"""
Post-call extraction pipeline.

After a call ends the finished transcript goes through two best-effort steps:

1. Completion: one structured-output chat completion extracts the customer's
   name, availability and any special notes.
2. Delivery: the extracted record is POSTed, unmodified, to the configured webhook.

Neither step retries. Both carry explicit timeouts so a hung endpoint cannot
stall call cleanup forever. A failed completion means nothing is delivered.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog
from openai import APIError, AsyncOpenAI
from pydantic import BaseModel, ValidationError

from src.receptionist.config import Config, get_config

logger = structlog.get_logger(__name__)

EXTRACTION_INSTRUCTIONS = (
    "Extract customer details: name, availability, and any special notes from the transcript."
)

CUSTOMER_DETAILS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "customerName": {"type": "string"},
        "customerAvailability": {"type": "string"},
        "specialNotes": {"type": "string"},
    },
    "required": ["customerName", "customerAvailability", "specialNotes"],
}


class CustomerDetails(BaseModel):
    """Structured record extracted from a call transcript."""

    customerName: str
    customerAvailability: str
    specialNotes: str


@dataclass
class ExtractionResult:
    """Result of the completion step."""
    success: bool
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    latency_ms: float = 0.0


@dataclass
class DeliveryResult:
    """Result of the webhook step."""
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class PipelineOutcome:
    extraction: ExtractionResult
    delivery: Optional[DeliveryResult] = None

    @property
    def delivered(self) -> bool:
        return self.delivery is not None and self.delivery.success


def parse_customer_details(content: Optional[str]) -> Dict[str, Any]:
    """
    Decode a completion's message content into the customer details record.

    The decoded object is returned as-is (validated, not rebuilt) so the webhook
    sees exactly what the model produced.

    Raises:
        ValueError: If the content is empty, not JSON, or does not match the schema
    """
    if not content:
        raise ValueError("Completion returned no content")

    try:
        record = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValueError(f"Completion content is not JSON: {e}")

    if not isinstance(record, dict):
        raise ValueError("Completion content is not a JSON object")

    try:
        CustomerDetails.model_validate(record)
    except ValidationError as e:
        raise ValueError(f"Completion content does not match schema: {e.error_count()} error(s)")

    return record


class ExtractionPipeline:
    """
    Turns a finished call transcript into customer details and forwards them.

    Interface used by the relay:
    - `run(transcript, call_id)`
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._openai_client = openai_client
        self._http_client = http_client

    def _get_openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(
                api_key=self.config.openai_api_key,
                timeout=self.config.extraction_timeout_seconds,
                max_retries=0,
            )
        return self._openai_client

    async def extract(self, transcript: str) -> ExtractionResult:
        """Run the structured-output completion over the transcript."""
        start_time = time.perf_counter()
        client = self._get_openai_client()

        try:
            completion = await client.chat.completions.create(
                model=self.config.extraction_model,
                messages=[
                    {"role": "system", "content": EXTRACTION_INSTRUCTIONS},
                    {"role": "user", "content": transcript},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "customer_details_extraction",
                        "schema": CUSTOMER_DETAILS_SCHEMA,
                    },
                },
                timeout=self.config.extraction_timeout_seconds,
            )
        except APIError as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "Extraction completion failed",
                status_code=getattr(e, "status_code", None),
                error=str(e),
                latency_ms=round(latency_ms, 2),
            )
            return ExtractionResult(success=False, error=str(e), latency_ms=latency_ms)

        latency_ms = (time.perf_counter() - start_time) * 1000

        if not completion.choices:
            logger.error("Extraction completion had no choices", latency_ms=round(latency_ms, 2))
            return ExtractionResult(success=False, error="No choices in completion", latency_ms=latency_ms)

        content = completion.choices[0].message.content
        try:
            record = parse_customer_details(content)
        except ValueError as e:
            logger.error(
                "Unexpected extraction content",
                error=str(e),
                content=(content or "")[:200],
            )
            return ExtractionResult(success=False, error=str(e), latency_ms=latency_ms)

        logger.info("Extraction completed", record=record, latency_ms=round(latency_ms, 2))
        return ExtractionResult(success=True, record=record, latency_ms=latency_ms)

    async def deliver(self, record: Dict[str, Any]) -> DeliveryResult:
        """POST the record to the webhook once."""
        url = self.config.webhook_url
        if not url:
            logger.warning("Webhook delivery skipped; WEBHOOK_URL not set")
            return DeliveryResult(success=False, error="WEBHOOK_URL not set")

        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, url, record)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, url, record)
        except httpx.HTTPError as e:
            logger.error("Webhook delivery failed", url=url, error=str(e))
            return DeliveryResult(success=False, error=str(e))

        logger.info("Webhook responded", url=url, status_code=response.status_code)

        if response.is_success:
            return DeliveryResult(success=True, status_code=response.status_code)

        logger.error(
            "Webhook rejected customer details",
            url=url,
            status_code=response.status_code,
            reason=response.reason_phrase,
        )
        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=response.reason_phrase or f"HTTP {response.status_code}",
        )

    async def _post(self, client: httpx.AsyncClient, url: str, record: Dict[str, Any]) -> httpx.Response:
        return await client.post(url, json=record, timeout=self.config.webhook_timeout_seconds)

    async def run(self, transcript: str, call_id: str) -> PipelineOutcome:
        """
        Extract customer details from a finished call and deliver them.

        Never raises for endpoint failures; the outcome records what happened.
        """
        logger.info("Processing transcript", call_id=call_id, transcript_chars=len(transcript))

        extraction = await self.extract(transcript)
        if not extraction.success or extraction.record is None:
            logger.warning("Extraction abandoned", call_id=call_id, error=extraction.error)
            return PipelineOutcome(extraction=extraction)

        delivery = await self.deliver(extraction.record)
        if delivery.success:
            logger.info("Customer details delivered", call_id=call_id)
        return PipelineOutcome(extraction=extraction, delivery=delivery)
