"""
Per-call session state and the process-wide session registry.

The registry is owned by the server (one per FastAPI app) and handed to every
relay; a relay keeps only its call id and goes through the registry for the
session. All access happens on the event loop thread, so plain dict operations
are enough to keep different calls independent.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class Transcript:
    """Append-only, ordered log of caller and agent utterances for one call."""

    def __init__(self):
        self._lines: List[str] = []

    def add_user(self, text: str) -> str:
        """Add a caller utterance (whitespace trimmed)."""
        return self._append(f"User: {text.strip()}\n")

    def add_agent(self, text: str) -> str:
        """Add an agent utterance."""
        return self._append(f"Agent: {text}\n")

    def _append(self, line: str) -> str:
        self._lines.append(line)
        return line

    @property
    def lines(self) -> Tuple[str, ...]:
        """Snapshot of the lines in arrival order."""
        return tuple(self._lines)

    @property
    def text(self) -> str:
        return "".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


@dataclass
class CallSession:
    """State for one phone call."""
    call_id: str
    transcript: Transcript = field(default_factory=Transcript)
    stream_sid: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def stream_started(self) -> bool:
        return self.stream_sid is not None


def new_call_id() -> str:
    """Synthesize a call id when Twilio did not supply one; unique within a millisecond."""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class SessionRegistry:
    """Maps call ids to live sessions. Created on first reference, removed on call end."""

    def __init__(self):
        self._sessions: Dict[str, CallSession] = {}

    def get_or_create(self, call_id: str) -> CallSession:
        """Return the session for call_id, creating an empty one if needed."""
        session = self._sessions.get(call_id)
        if session is None:
            session = CallSession(call_id=call_id)
            self._sessions[call_id] = session
            logger.debug("Session created", call_id=call_id, active_sessions=len(self._sessions))
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def remove(self, call_id: str) -> Optional[CallSession]:
        """Remove and return the session; no-op if it is not registered."""
        session = self._sessions.pop(call_id, None)
        if session is not None:
            logger.debug("Session removed", call_id=call_id, active_sessions=len(self._sessions))
        return session

    def active_ids(self) -> List[str]:
        return list(self._sessions)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
