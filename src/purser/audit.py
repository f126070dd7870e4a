"""
Audit trail for budget decisions, payments and workflow progress.

One JSON object per line. Each entry carries ``event_hash`` =
HMAC-SHA256(key, prev_hash | canonical payload), so editing, dropping or
reordering a line breaks the chain on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditChainError
from .storage import ensure_private_dir, ensure_private_file


class EventType(str, Enum):
    BUDGET_INITIALIZED = "budget_initialized"
    LIMITS_UPDATED = "limits_updated"
    SESSION_STARTED = "session_started"
    SPENDING_DENIED = "spending_denied"
    FUNDS_RESERVED = "funds_reserved"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECONCILED = "payment_reconciled"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_FINISHED = "workflow_finished"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"


_CHAIN_FIELDS = ("prev_hash", "event_hash")


@dataclass
class AuditEvent:
    """A single audit trail entry. ``amount`` is base units as a string."""

    event_type: str
    timestamp: float
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    workflow_id: Optional[str] = None
    amount: Optional[str] = None
    endpoint: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def to_json(self) -> str:
        return json.dumps(
            {k: v for k, v in asdict(self).items() if v is not None},
            separators=(",", ":"),
        )


class AuditTrail:
    """Tamper-evident append-only audit log shared by every Purser component."""

    def __init__(self, path: Path, key_path: Path):
        self.path = Path(path)
        self.key_path = Path(key_path)
        self._lock = threading.Lock()

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)

        self._key = self._load_key()
        self._head = self._last_hash_on_disk()

    def _load_key(self) -> bytes:
        env_key = os.environ.get("PURSER_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _lines(self) -> Iterator[dict]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _last_hash_on_disk(self) -> str:
        head = ""
        for raw in self._lines():
            head = raw.get("event_hash", "")
        return head

    def _sign(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _verified(self) -> Iterator[dict]:
        """Entries in file order; raises ``AuditChainError`` at the first bad link."""
        expected_prev = ""
        for position, raw in enumerate(self._lines(), start=1):
            prev_hash = raw.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise AuditChainError(position, "previous hash mismatch")
            payload = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._sign(payload, prev_hash), raw.get("event_hash") or ""):
                raise AuditChainError(position, "event hash mismatch")
            expected_prev = raw["event_hash"]
            yield raw

    def log(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        amount: Optional[int] = None,
        endpoint: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            agent_id=agent_id,
            session_id=session_id,
            payment_id=payment_id,
            workflow_id=workflow_id,
            amount=str(amount) if amount is not None else None,
            endpoint=endpoint,
            success=success,
            reason=reason,
            details=details,
        )
        payload = {
            k: v for k, v in asdict(event).items()
            if v is not None and k not in _CHAIN_FIELDS
        }

        with self._lock:
            event.prev_hash = self._head or None
            event.event_hash = self._sign(payload, self._head)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._head = event.event_hash
        return event

    def verify(self) -> int:
        """Check the whole chain; returns the number of entries."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        agent_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent matching events, oldest first. The full chain is verified."""
        wanted = {
            "agent_id": agent_id,
            "workflow_id": workflow_id,
            "event_type": event_type.value if event_type else None,
        }
        events = [
            AuditEvent.from_dict(raw)
            for raw in self._verified()
            if all(value is None or raw.get(key) == value for key, value in wanted.items())
        ]
        return events[-limit:] if limit else events

    def summary(self, agent_id: Optional[str] = None) -> dict:
        events = self.read_events(agent_id=agent_id, limit=0)
        by_type: dict[str, int] = {}
        spent = 0
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.PAYMENT_COMPLETED.value and e.amount:
                spent += int(e.amount)
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "spent": str(spent),
            "last_event": events[-1].to_json() if events else None,
        }
