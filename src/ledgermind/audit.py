"""
Audit trail for funded-payment runs.

Every orchestrator transition is appended as a JSONL entry with an HMAC hash
chain, so tampering is detected during reads. Failed attempts are recorded
alongside successful ones and never removed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import default_home
from .storage import ensure_private_dir, ensure_private_file


class EventType(str, Enum):
    ANALYZING = "analyzing"
    CHECKING = "checking"
    EXECUTING = "executing"
    AUTO_FUNDING = "auto_funding"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    run_id: Optional[str] = None
    intent: Optional[str] = None
    agent: Optional[str] = None
    merchant: Optional[str] = None
    amount: Optional[str] = None
    attempt: Optional[int] = None
    success: bool = True
    kind: Optional[str] = None
    reason: Optional[str] = None
    revert_reason: Optional[str] = None
    tx_hash: Optional[str] = None
    duration_ms: Optional[int] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        home = default_home()
        self.path = path or home / "audit.jsonl"
        self.key_path = key_path or home / "secrets" / "audit_hmac.key"

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("LEDGERMIND_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        run_id: Optional[str] = None,
        intent: Optional[str] = None,
        agent: Optional[str] = None,
        merchant: Optional[str] = None,
        amount: Optional[int] = None,
        attempt: Optional[int] = None,
        success: bool = True,
        kind: Optional[str] = None,
        reason: Optional[str] = None,
        revert_reason: Optional[str] = None,
        tx_hash: Optional[str] = None,
        duration_ms: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "run_id": run_id,
            "intent": intent,
            "agent": agent,
            "merchant": merchant,
            # uint256 amounts do not survive a JSON float round-trip
            "amount": str(amount) if amount is not None else None,
            "attempt": attempt,
            "success": success,
            "kind": kind,
            "reason": reason,
            "revert_reason": revert_reason,
            "tx_hash": tx_hash,
            "duration_ms": duration_ms,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with self._lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = current_hash
        ensure_private_file(self.path)
        return event

    def read_events(
        self,
        run_id: Optional[str] = None,
        intent: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if run_id and raw.get("run_id") != run_id:
                    continue
                if intent and raw.get("intent") != intent.lower():
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def count(self, event_type: EventType, run_id: Optional[str] = None) -> int:
        return len(self.read_events(run_id=run_id, event_type=event_type, limit=1_000_000))

    def summary(self, intent: Optional[str] = None) -> dict:
        events = self.read_events(intent=intent, limit=1_000_000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "runs": len({e.run_id for e in events if e.run_id}),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_json() if events else None,
        }
