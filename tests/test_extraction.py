"""
Tests for the post-call extraction pipeline.

The completion endpoint and the webhook are both served by httpx.MockTransport,
so the real openai/httpx request paths are exercised without network access.
"""

import json
from typing import List

import httpx
import pytest
from openai import AsyncOpenAI

from src.receptionist.config import Config
from src.receptionist.extraction import (
    ExtractionPipeline,
    parse_customer_details,
)

TRANSCRIPT = "User: I need an oil change\nAgent: Sure, when works for you?\nUser: Friday, I'm Jane\n"
RECORD_JSON = '{"customerName":"Jane","customerAvailability":"Friday","specialNotes":"none"}'


def completion_body(content) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-2024-08-06",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


class FakeEndpoints:
    """Records requests to the completion endpoint and the webhook."""

    def __init__(self, completion_status: int = 200, completion_content=RECORD_JSON, webhook_status: int = 200):
        self.completion_status = completion_status
        self.completion_content = completion_content
        self.webhook_status = webhook_status
        self.completion_requests: List[httpx.Request] = []
        self.webhook_requests: List[httpx.Request] = []

    def completion_handler(self, request: httpx.Request) -> httpx.Response:
        self.completion_requests.append(request)
        if self.completion_status != 200:
            return httpx.Response(
                self.completion_status,
                json={"error": {"message": "upstream failure", "type": "server_error"}},
            )
        return httpx.Response(200, json=completion_body(self.completion_content))

    def webhook_handler(self, request: httpx.Request) -> httpx.Response:
        self.webhook_requests.append(request)
        return httpx.Response(self.webhook_status, json={"accepted": True})

    def pipeline(self, config: Config) -> ExtractionPipeline:
        openai_client = AsyncOpenAI(
            api_key="test_openai_key",
            max_retries=0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.completion_handler)),
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.webhook_handler))
        return ExtractionPipeline(config, openai_client=openai_client, http_client=http_client)

    def webhook_bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.webhook_requests]


@pytest.mark.asyncio
async def test_record_forwarded_unmodified(test_config):
    endpoints = FakeEndpoints()
    pipeline = endpoints.pipeline(test_config)

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.delivered is True
    assert endpoints.webhook_bodies() == [
        {"customerName": "Jane", "customerAvailability": "Friday", "specialNotes": "none"}
    ]
    assert str(endpoints.webhook_requests[0].url) == "https://hooks.example.com/customer-details"
    assert endpoints.webhook_requests[0].method == "POST"


@pytest.mark.asyncio
async def test_completion_request_shape(test_config):
    endpoints = FakeEndpoints()
    pipeline = endpoints.pipeline(test_config)

    await pipeline.run(TRANSCRIPT, "CA1")

    assert len(endpoints.completion_requests) == 1
    request = endpoints.completion_requests[0]
    assert request.url.path.endswith("/chat/completions")
    assert request.headers["authorization"] == "Bearer test_openai_key"

    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-2024-08-06"
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert body["messages"][1]["content"] == TRANSCRIPT
    schema_format = body["response_format"]
    assert schema_format["type"] == "json_schema"
    assert schema_format["json_schema"]["name"] == "customer_details_extraction"
    assert schema_format["json_schema"]["schema"]["required"] == [
        "customerName",
        "customerAvailability",
        "specialNotes",
    ]


@pytest.mark.asyncio
async def test_completion_server_error_skips_webhook(test_config):
    endpoints = FakeEndpoints(completion_status=500)
    pipeline = endpoints.pipeline(test_config)

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.extraction.success is False
    assert outcome.delivery is None
    assert outcome.delivered is False
    assert len(endpoints.completion_requests) == 1  # no retry
    assert endpoints.webhook_requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        None,
        "",
        "not json at all",
        "[1, 2]",
        '{"customerName": "Jane", "customerAvailability": "Friday"}',
        '{"customerName": "Jane", "customerAvailability": "Friday", "specialNotes": 42}',
    ],
)
async def test_unusable_content_skips_webhook(test_config, content):
    endpoints = FakeEndpoints(completion_content=content)
    pipeline = endpoints.pipeline(test_config)

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.extraction.success is False
    assert outcome.extraction.error
    assert endpoints.webhook_requests == []


@pytest.mark.asyncio
async def test_webhook_rejection_is_not_retried(test_config):
    endpoints = FakeEndpoints(webhook_status=502)
    pipeline = endpoints.pipeline(test_config)

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.extraction.success is True
    assert outcome.delivery.success is False
    assert outcome.delivery.status_code == 502
    assert len(endpoints.webhook_requests) == 1


@pytest.mark.asyncio
async def test_webhook_transport_error(test_config):
    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    endpoints = FakeEndpoints()
    pipeline = ExtractionPipeline(
        test_config,
        openai_client=endpoints.pipeline(test_config)._openai_client,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(broken)),
    )

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.delivered is False
    assert "connection refused" in outcome.delivery.error


@pytest.mark.asyncio
async def test_missing_webhook_url_skips_delivery():
    config = Config(openai_api_key="test_openai_key", webhook_url="")
    endpoints = FakeEndpoints()
    pipeline = endpoints.pipeline(config)

    outcome = await pipeline.run(TRANSCRIPT, "CA1")

    assert outcome.extraction.success is True
    assert outcome.delivery.success is False
    assert endpoints.webhook_requests == []


def test_parse_customer_details_keeps_extra_fields():
    record = parse_customer_details(
        '{"customerName":"Jane","customerAvailability":"Friday","specialNotes":"none","service":"oil change"}'
    )

    assert record["service"] == "oil change"
