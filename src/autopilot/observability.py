"""Control event log schema enforcement."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

logger = logging.getLogger("autopilot.events")

EVENT_KINDS = [
    "tick",
    "trigger",
    "admission",
    "retry",
    "terminal_failure",
    "cancelled",
    "breaker_reset",
]

CONTROL_EVENT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["kind", "recorded_at", "subject", "ok"],
    "properties": {
        "kind": {"type": "string", "enum": EVENT_KINDS},
        "recorded_at": {"type": "string", "format": "date-time"},
        "subject": {"type": "string", "minLength": 1},
        "ok": {"type": "boolean"},
        "reason": {"type": ["string", "null"]},
        "wait_seconds": {"type": ["number", "null"], "minimum": 0},
        "retry_count": {"type": ["integer", "null"], "minimum": 0},
        "duration_ms": {"type": ["number", "null"], "minimum": 0},
        "detail": {"type": "object"},
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(CONTROL_EVENT_SCHEMA)


def validate_event(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: e.path)
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValueError(f"control event validation failed: {messages}")


@dataclass
class ControlEventRecord:
    kind: str
    subject: str
    ok: bool
    reason: Optional[str] = None
    wait_seconds: Optional[float] = None
    retry_count: Optional[int] = None
    duration_ms: Optional[float] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "kind": self.kind,
            "recorded_at": self.recorded_at,
            "subject": self.subject,
            "ok": self.ok,
            "reason": self.reason,
            "wait_seconds": self.wait_seconds,
            "retry_count": self.retry_count,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
        }
        validate_event(payload)
        return payload


def emit_event(record: ControlEventRecord) -> Dict[str, Any]:
    payload = record.to_dict()
    logger.info("%s", json.dumps(payload, sort_keys=True, default=str))
    return payload
