from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

from calmirror.errors import TranslationError
from calmirror.models import CanonicalEvent, EventFields, RecurrenceRule
from calmirror.timezones import normalize_timezone_name, zone


logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
DAY_SECONDS = 24 * 60 * 60


def _is_midnight(value: datetime) -> bool:
    return value.hour == 0 and value.minute == 0 and value.second == 0 and value.microsecond == 0


def _is_exact_hour(value: datetime, hour: int) -> bool:
    return value.hour == hour and value.minute == 0 and value.second == 0 and value.microsecond == 0


def _as_aware(value: datetime, fallback_zone: str) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone(fallback_zone))
    return value


class GoogleEventTranslator:
    """Turns canonical events into Google Calendar v3 event bodies."""

    def __init__(self, default_timezone: str = "UTC") -> None:
        self.default_timezone = normalize_timezone_name(default_timezone) or "UTC"

    def resolve_timezone(self, event: CanonicalEvent, rule: RecurrenceRule | None = None) -> str:
        for candidate in (rule.timezone if rule else None, event.fields.timezone):
            resolved = normalize_timezone_name(candidate)
            if resolved:
                return resolved
        return self.default_timezone

    def all_day_span(self, fields: EventFields, zone_name: str) -> tuple[date, date] | None:
        """Return the inclusive (first, last) calendar days of an all-day event, else None."""
        start, end = fields.start, fields.end
        if start is None:
            return None
        if not isinstance(start, datetime):
            # DTEND of a date-only event is already exclusive.
            if isinstance(end, date) and not isinstance(end, datetime) and end > start:
                return start, end - timedelta(days=1)
            return start, start
        if not isinstance(end, datetime):
            return None

        start = _as_aware(start, zone_name)
        end = _as_aware(end, zone_name)
        duration = (end - start).total_seconds()
        if duration <= 0:
            return None

        for basis in (zone(zone_name), timezone.utc):
            local_start = start.astimezone(basis)
            local_end = end.astimezone(basis)
            if not _is_midnight(local_start):
                continue
            if _is_midnight(local_end):
                return local_start.date(), local_end.date() - timedelta(days=1)
            # A single 23-hour block standing in for a whole day in a DST-shifted feed.
            if duration == 23 * 60 * 60 and _is_exact_hour(local_end, 23):
                return local_start.date(), local_end.date()

        if duration % DAY_SECONDS == 0:
            local_start = start.astimezone(zone(zone_name))
            local_end = end.astimezone(zone(zone_name))
            last = local_end.date() - timedelta(days=1) if _is_midnight(local_end) else local_end.date()
            return local_start.date(), last
        return None

    def to_remote_body(
        self,
        event: CanonicalEvent,
        rule: RecurrenceRule | None = None,
        exception_dates: Iterable[datetime | date] = (),
    ) -> dict[str, Any]:
        fields = event.fields
        zone_name = self.resolve_timezone(event, rule)
        body: dict[str, Any] = {
            "summary": fields.title,
            "description": fields.description,
            "location": fields.location,
            "transparency": "transparent" if fields.transparent else "opaque",
            "extendedProperties": {"private": {"icsIdentity": event.identity}},
        }

        span = self.all_day_span(fields, zone_name)
        if span is not None:
            first, last = span
            # Google treats the all-day end date as exclusive.
            body["start"] = {"date": first.isoformat()}
            body["end"] = {"date": (last + timedelta(days=1)).isoformat()}
        else:
            if not isinstance(fields.start, datetime) or not isinstance(fields.end, datetime):
                raise TranslationError(f"Event {event.identity} has no usable start/end")
            tz = zone(zone_name)
            body["start"] = {
                "dateTime": _as_aware(fields.start, zone_name).astimezone(tz).replace(microsecond=0).isoformat(),
                "timeZone": zone_name,
            }
            body["end"] = {
                "dateTime": _as_aware(fields.end, zone_name).astimezone(tz).replace(microsecond=0).isoformat(),
                "timeZone": zone_name,
            }

        if rule is not None:
            body["recurrence"] = self.to_remote_recurrence(
                rule,
                exception_dates,
                all_day=span is not None,
                timezone_name=zone_name,
            )
        return body

    def to_remote_recurrence(
        self,
        rule: RecurrenceRule,
        exception_dates: Iterable[datetime | date] = (),
        *,
        all_day: bool = False,
        timezone_name: str | None = None,
    ) -> list[str]:
        frequency = rule.frequency.upper()
        if frequency not in SUPPORTED_FREQUENCIES:
            raise TranslationError(f"Unsupported recurrence frequency: {rule.frequency}")
        zone_name = normalize_timezone_name(timezone_name) or normalize_timezone_name(rule.timezone) or self.default_timezone

        line = f"RRULE:FREQ={frequency}"
        if rule.interval > 1:
            line += f";INTERVAL={rule.interval}"
        if rule.by_day:
            line += ";BYDAY=" + ",".join(rule.by_day)
        if rule.until is not None:
            line += ";UNTIL=" + self._format_until(rule.until, zone_name, all_day)
        lines = [line]

        # Every EXDATE is written in the rule's own zone; a mismatch leaves the original occurrence visible.
        for value in sorted(set(exception_dates), key=lambda item: self._sort_key(item, zone_name)):
            lines.append(self._format_exdate(value, zone_name, all_day))
        return lines

    def _sort_key(self, value: datetime | date, zone_name: str) -> datetime:
        if isinstance(value, datetime):
            return _as_aware(value, zone_name).astimezone(timezone.utc)
        return datetime.combine(value, time.min, tzinfo=zone(zone_name)).astimezone(timezone.utc)

    def _format_until(self, until: datetime | date, zone_name: str, all_day: bool) -> str:
        if isinstance(until, datetime):
            # A zone-less UNTIL is wall-clock time in the rule's zone, not UTC.
            aware = _as_aware(until, zone_name)
            if all_day:
                return aware.astimezone(zone(zone_name)).strftime("%Y%m%d")
            return aware.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if all_day:
            return until.strftime("%Y%m%d")
        end_of_day = datetime.combine(until, time(23, 59, 59), tzinfo=zone(zone_name))
        return end_of_day.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")

    def _format_exdate(self, value: datetime | date, zone_name: str, all_day: bool) -> str:
        if all_day:
            if isinstance(value, datetime):
                value = _as_aware(value, zone_name).astimezone(zone(zone_name)).date()
            return f"EXDATE;VALUE=DATE:{value.strftime('%Y%m%d')}"
        if not isinstance(value, datetime):
            logger.warning("Date-only exclusion %s on a timed series, using midnight in %s", value, zone_name)
            value = datetime.combine(value, time.min)
        local = _as_aware(value, zone_name).astimezone(zone(zone_name))
        return f"EXDATE;TZID={zone_name}:{local.strftime('%Y%m%dT%H%M%S')}"
