"""
Agent session registry.

A session scopes the ledger's session-tier counter and groups payments and
workflows. Sessions live in an explicit registry owned by the caller, one
open session per agent; opening a new one closes the previous session and
restarts the agent's session counter.

Usage:
    sessions = SessionRegistry(ledger, ttl_seconds=3600)
    session = sessions.open_session("agent-1")
    gateway.call("agent-1", session.session_id, url)
    sessions.close_session(session.session_id)
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .budget import BudgetLedger
from .errors import SessionExpiredError, SessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class AgentSession:
    session_id: str
    agent_id: str
    created_at: float
    ttl_seconds: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        return self.ttl_seconds is not None and now > self.created_at + self.ttl_seconds

    def to_dict(self, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        expires_at = self.created_at + self.ttl_seconds if self.ttl_seconds is not None else None
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "created_at": self.created_at,
            "expires_at": expires_at,
            "seconds_remaining": max(0, int(expires_at - now)) if expires_at is not None else None,
        }


class SessionRegistry:
    """In-process registry of open agent sessions."""

    def __init__(
        self,
        ledger: BudgetLedger,
        ttl_seconds: Optional[int] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self.audit = audit
        self._clock = clock
        self._sessions: dict[str, AgentSession] = {}
        self._by_agent: dict[str, str] = {}
        self._lock = threading.Lock()

    def open_session(self, agent_id: str) -> AgentSession:
        """Start a fresh ledger session for the agent, replacing any open one."""
        if not agent_id:
            raise ValueError("agent_id is required")
        self.ledger.start_new_session(agent_id)

        session = AgentSession(
            session_id=self._generate_session_id(),
            agent_id=agent_id,
            created_at=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        with self._lock:
            previous = self._by_agent.get(agent_id)
            if previous is not None:
                self._sessions.pop(previous, None)
                logger.info("Session %s replaced for agent %s", previous, agent_id)
            self._sessions[session.session_id] = session
            self._by_agent[agent_id] = session.session_id

        logger.info("Session opened: %s (agent: %s)", session.session_id, agent_id)
        if self.audit is not None:
            self.audit.log(EventType.SESSION_STARTED, agent_id=agent_id, session_id=session.session_id)
        return session

    def get_session(self, session_id: str) -> AgentSession:
        """Get a session by ID. Raises if expired or not found."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        if session.is_expired(self._clock()):
            self.close_session(session_id)
            raise SessionExpiredError(f"Session expired: {session_id}")
        return session

    def get_agent_session(self, agent_id: str) -> Optional[AgentSession]:
        with self._lock:
            session_id = self._by_agent.get(agent_id)
        if session_id is None:
            return None
        try:
            return self.get_session(session_id)
        except SessionExpiredError:
            return None

    def close_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None and self._by_agent.get(session.agent_id) == session_id:
                del self._by_agent[session.agent_id]
        if session is not None:
            logger.info("Session closed: %s", session_id)

    def close_all(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.close_session(session_id)

    def list_sessions(self) -> list[AgentSession]:
        """Open sessions; expired ones are closed first."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for session_id in expired:
            self.close_session(session_id)
        with self._lock:
            return list(self._sessions.values())

    def _generate_session_id(self) -> str:
        entropy = f"{self._clock()}-{os.urandom(16).hex()}"
        return f"ps-{hashlib.sha256(entropy.encode()).hexdigest()[:12]}"
