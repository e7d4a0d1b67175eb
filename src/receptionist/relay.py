"""
Per-call relay between Twilio Media Streams and the OpenAI Realtime API.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

Each call runs one event loop. Three producers feed a single queue:
- the Twilio socket (messages, then a final close),
- the OpenAI socket (open, messages, close/error),
- the session configuration timer.
Only the loop touches the session or the upstream socket, so events for one call
are handled strictly in arrival order. The call ends when Twilio disconnects:
the upstream socket is closed, the transcript goes through the extraction
pipeline, and the session is removed from the registry.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
import websockets
from fastapi import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed

from src.receptionist import realtime_protocol as rt
from src.receptionist.config import Config, get_config
from src.receptionist.extraction import PipelineOutcome
from src.receptionist.sessions import CallSession, SessionRegistry
from src.receptionist.twilio_protocol import (
    TwilioEventType,
    create_media_message,
    parse_twilio_message,
    reencode_payload,
)

logger = structlog.get_logger(__name__)


class Downstream(Protocol):
    """The Twilio side; FastAPI's WebSocket satisfies this."""

    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...


class TranscriptPipeline(Protocol):
    async def run(self, transcript: str, call_id: str) -> PipelineOutcome: ...


UpstreamConnector = Callable[[], Awaitable[Any]]


class RelayState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    FINISHING = "finishing"
    STOPPED = "stopped"


class EventSource(str, Enum):
    DOWNSTREAM = "downstream"
    UPSTREAM = "upstream"
    TIMER = "timer"


class EventKind(str, Enum):
    MESSAGE = "message"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"
    CONFIGURE = "configure"


@dataclass(frozen=True)
class RelayEvent:
    source: EventSource
    kind: EventKind
    data: Any = None


@dataclass
class RelayStats:
    """Per-call counters, logged when the call ends."""
    media_in: int = 0
    media_forwarded: int = 0
    media_dropped: int = 0
    audio_out: int = 0
    dropped_output_frames: int = 0
    parse_errors: int = 0
    send_errors: int = 0


class RealtimeRelay:
    """
    Owns both connections for one call and translates events between them.

    The relay keeps only the call id; the session itself lives in the registry.
    """

    def __init__(
        self,
        call_id: str,
        registry: SessionRegistry,
        downstream: Downstream,
        pipeline: TranscriptPipeline,
        *,
        config: Optional[Config] = None,
        connect: Optional[UpstreamConnector] = None,
    ):
        self.call_id = call_id
        self.config = config or get_config()
        self.stats = RelayStats()

        self._registry = registry
        self._downstream = downstream
        self._pipeline = pipeline
        self._connect = connect or self._connect_openai

        self._state: RelayState = RelayState.IDLE
        self._events: asyncio.Queue[RelayEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

        self._upstream: Optional[Any] = None
        self._upstream_open: bool = False
        self._session_configured: bool = False

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def upstream_open(self) -> bool:
        return self._upstream_open

    @property
    def session(self) -> CallSession:
        return self._registry.get_or_create(self.call_id)

    async def run(self) -> Optional[PipelineOutcome]:
        """
        Relay until Twilio disconnects, then hand off the transcript.

        Returns the extraction pipeline outcome, or None if the pipeline failed
        unexpectedly.
        """
        if self._state != RelayState.IDLE:
            raise RuntimeError(f"Relay for {self.call_id} already {self._state.value}")

        self._registry.get_or_create(self.call_id)
        self._state = RelayState.CONNECTING
        logger.info("Client connected", call_id=self.call_id)

        self._spawn(self._downstream_pump(), "downstream")
        self._spawn(self._open_upstream(), "connect")

        try:
            while True:
                event = await self._events.get()
                if event.source == EventSource.DOWNSTREAM and event.kind == EventKind.CLOSED:
                    break
                try:
                    await self._dispatch(event)
                except Exception as e:
                    logger.error(
                        "Error handling relay event",
                        call_id=self.call_id,
                        source=event.source.value,
                        kind=event.kind.value,
                        error=str(e),
                    )
        finally:
            outcome = await self._finish_shielded()
        return outcome

    async def _finish_shielded(self) -> Optional[PipelineOutcome]:
        """
        Run cleanup to completion even if the handler task is being cancelled.

        The ASGI server may cancel the handler right after Twilio disconnects; the
        transcript still goes through the pipeline and the session is still
        removed before the cancellation is passed on.
        """
        finishing = asyncio.ensure_future(self._finish())
        cancelled = False
        while True:
            try:
                outcome = await asyncio.shield(finishing)
                break
            except asyncio.CancelledError:
                if finishing.cancelled():
                    raise
                cancelled = True
        if cancelled:
            logger.info("Call cleanup finished after cancellation", call_id=self.call_id)
            raise asyncio.CancelledError()
        return outcome

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=f"{self.call_id}:{name}"))

    def _post(self, source: EventSource, kind: EventKind, data: Any = None) -> None:
        self._events.put_nowait(RelayEvent(source, kind, data))

    # Producers

    async def _downstream_pump(self) -> None:
        try:
            while True:
                message = await self._downstream.receive_text()
                self._post(EventSource.DOWNSTREAM, EventKind.MESSAGE, message)
        except WebSocketDisconnect as e:
            logger.debug("Twilio socket disconnected", call_id=self.call_id, code=e.code)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Twilio socket failed", call_id=self.call_id, error=str(e))
        self._post(EventSource.DOWNSTREAM, EventKind.CLOSED)

    async def _connect_openai(self) -> Any:
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        return await websockets.connect(
            self.config.realtime_ws_url,
            additional_headers=headers,
            open_timeout=10,
        )

    async def _open_upstream(self) -> None:
        try:
            ws = await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(EventSource.UPSTREAM, EventKind.ERROR, e)
            return
        self._post(EventSource.UPSTREAM, EventKind.OPEN, ws)

    async def _upstream_pump(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._post(EventSource.UPSTREAM, EventKind.MESSAGE, raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(EventSource.UPSTREAM, EventKind.ERROR, e)
            return
        self._post(EventSource.UPSTREAM, EventKind.CLOSED)

    async def _configure_after_delay(self) -> None:
        await asyncio.sleep(self.config.session_update_delay_ms / 1000.0)
        self._post(EventSource.TIMER, EventKind.CONFIGURE)

    # Loop

    async def _dispatch(self, event: RelayEvent) -> None:
        if event.source == EventSource.DOWNSTREAM:
            await self._handle_twilio_message(event.data)
            return

        if event.source == EventSource.TIMER:
            await self._send_session_update()
            return

        if event.kind == EventKind.OPEN:
            self._upstream = event.data
            self._upstream_open = True
            self._state = RelayState.RUNNING
            logger.info("Connected to the OpenAI Realtime API", call_id=self.call_id)
            self._spawn(self._upstream_pump(event.data), "upstream")
            self._spawn(self._configure_after_delay(), "configure")
        elif event.kind == EventKind.MESSAGE:
            await self._handle_realtime_message(event.data)
        elif event.kind == EventKind.CLOSED:
            # Twilio stays connected; the call ends only when Twilio hangs up.
            self._upstream_open = False
            logger.info("Disconnected from the OpenAI Realtime API", call_id=self.call_id)
        elif event.kind == EventKind.ERROR:
            self._upstream_open = False
            logger.error("OpenAI Realtime connection error", call_id=self.call_id, error=str(event.data))

    async def _send_session_update(self) -> None:
        if self._session_configured:
            return
        if not self._upstream_open:
            logger.warning("Skipping session update; OpenAI Realtime not connected", call_id=self.call_id)
            return

        message = rt.build_session_update(self.config)
        logger.info(
            "Sending session update",
            call_id=self.call_id,
            voice=message["session"]["voice"],
            temperature=message["session"]["temperature"],
            transcription_model=message["session"]["input_audio_transcription"]["model"],
        )
        self._session_configured = await self._send_upstream(message)

    async def _handle_twilio_message(self, raw: Any) -> None:
        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            self.stats.parse_errors += 1
            logger.warning("Failed to parse Twilio message", call_id=self.call_id, error=str(e))
            return

        if event_type == TwilioEventType.MEDIA:
            self.stats.media_in += 1
            if not self._upstream_open:
                self.stats.media_dropped += 1
                return
            if await self._send_upstream(rt.build_audio_append(event.payload)):
                self.stats.media_forwarded += 1
            return

        if event_type == TwilioEventType.START:
            self.session.stream_sid = event.stream_sid
            logger.info(
                "Incoming stream has started",
                call_id=self.call_id,
                stream_sid=event.stream_sid,
                call_sid=event.call_sid or None,
            )
            return

        logger.debug("Received non-media event", call_id=self.call_id, event_type=event_type.value)

    async def _handle_realtime_message(self, raw: Any) -> None:
        try:
            event = rt.parse_realtime_event(raw)
        except ValueError as e:
            self.stats.parse_errors += 1
            logger.warning("Failed to parse OpenAI Realtime message", call_id=self.call_id, error=str(e))
            return

        event_type = event["type"]
        if event_type in rt.LOG_EVENT_TYPES:
            logger.info("Received event", call_id=self.call_id, event_type=event_type)

        if event_type == rt.INPUT_TRANSCRIPTION_COMPLETED:
            text = event.get("transcript")
            if not isinstance(text, str):
                logger.warning("Transcription event without transcript", call_id=self.call_id)
                return
            self.session.transcript.add_user(text)
            logger.info("User", call_id=self.call_id, text=text.strip())

        elif event_type == rt.RESPONSE_DONE:
            text = rt.find_agent_transcript(event) or rt.AGENT_MESSAGE_NOT_FOUND
            self.session.transcript.add_agent(text)
            logger.info("Agent", call_id=self.call_id, text=text)

        elif event_type == rt.SESSION_UPDATED:
            logger.info("Session updated successfully", call_id=self.call_id)

        elif event_type == rt.ERROR:
            logger.error("OpenAI Realtime error", call_id=self.call_id, details=event.get("error"))

        elif event_type == rt.RESPONSE_AUDIO_DELTA:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                await self._forward_audio(delta)

    async def _forward_audio(self, delta: str) -> None:
        stream_sid = self.session.stream_sid
        if stream_sid is None:
            # Twilio cannot route media without a streamSid.
            self.stats.dropped_output_frames += 1
            logger.debug("Dropping assistant audio before stream start", call_id=self.call_id)
            return

        try:
            payload = reencode_payload(delta)
        except ValueError as e:
            self.stats.parse_errors += 1
            logger.warning("Invalid assistant audio", call_id=self.call_id, error=str(e))
            return

        if await self._send_downstream(create_media_message(stream_sid, payload)):
            self.stats.audio_out += 1

    async def _send_upstream(self, message: dict) -> bool:
        ws = self._upstream
        if ws is None or not self._upstream_open:
            return False
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as e:
            self._upstream_open = False
            self.stats.send_errors += 1
            logger.error("OpenAI send failed", call_id=self.call_id, type=message.get("type"), error=str(e))
            return False
        return True

    async def _send_downstream(self, message: str) -> bool:
        try:
            await self._downstream.send_text(message)
        except Exception as e:
            self.stats.send_errors += 1
            logger.error("Failed to send Twilio message", call_id=self.call_id, error=str(e))
            return False
        return True

    # Shutdown

    async def _finish(self) -> Optional[PipelineOutcome]:
        self._state = RelayState.FINISHING

        if self._upstream is not None and self._upstream_open:
            self._upstream_open = False
            await self._close_socket(self._upstream)

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # A connect can complete after Twilio hung up; close it unused.
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.source == EventSource.UPSTREAM and event.kind == EventKind.OPEN:
                await self._close_socket(event.data)

        session = self._registry.get(self.call_id)
        transcript = session.transcript.text if session else ""
        logger.info("Client disconnected", call_id=self.call_id, **asdict(self.stats))
        logger.info("Call transcript", call_id=self.call_id, transcript=transcript)

        outcome: Optional[PipelineOutcome] = None
        try:
            outcome = await self._pipeline.run(transcript, self.call_id)
        except Exception as e:
            logger.error("Transcript processing failed", call_id=self.call_id, error=str(e))
        finally:
            self._registry.remove(self.call_id)
            self._state = RelayState.STOPPED
        return outcome

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.warning("Error closing OpenAI Realtime socket", call_id=self.call_id, error=str(e))
