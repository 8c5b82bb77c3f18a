from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from calmirror.models import CanonicalEvent, EventFields


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _digest(payload: Any) -> str:
    text = json.dumps(payload, sort_keys=True, default=_json_default, ensure_ascii=False)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint_record(record: Mapping[str, Any]) -> str:
    """Hash a flat record; key order never matters because keys are sorted."""
    return _digest(dict(record))


def event_fingerprint(identity: str, fields: EventFields) -> str:
    # Only these keys are tracked; organizer, attendees and the like never reach the hash.
    return fingerprint_record(
        {
            "identity": identity,
            "title": fields.title,
            "description": fields.description,
            "location": fields.location,
            "start": fields.start,
            "end": fields.end,
            "transparent": fields.transparent,
            "status": fields.status,
            "sequence": fields.sequence,
            "last_modified": fields.last_modified,
        }
    )


def master_fingerprint(master: CanonicalEvent, exceptions: Iterable[CanonicalEvent]) -> str:
    rule_text = master.recurrence_rule.as_text() if master.recurrence_rule is not None else ""
    linked = sorted(
        (
            exception.identity,
            _json_default(exception.exception_date) if exception.exception_date is not None else "",
            exception.fingerprint,
        )
        for exception in exceptions
    )
    return _digest(
        {
            "fingerprint": master.fingerprint,
            "rrule": rule_text,
            "exceptions": [list(item) for item in linked],
        }
    )
