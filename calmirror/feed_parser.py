from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

import requests
from icalendar import Calendar as ICalendar

from calmirror.errors import ClassificationAmbiguity, FeedFetchError, FeedParseError, ParseError
from calmirror.filters import ExclusionPolicy
from calmirror.fingerprint import event_fingerprint
from calmirror.models import (
    Attendee,
    CanonicalEvent,
    EventFields,
    EventKind,
    FeedConfig,
    RawEntry,
    RecurrenceRule,
)
from calmirror.timezones import normalize_timezone_name, zone, zone_name_of


logger = logging.getLogger(__name__)

CARRIED_RULE_PARTS = {"FREQ", "INTERVAL", "BYDAY", "UNTIL", "WKST"}
DATETIME_PATTERN = re.compile(r"(\d{8})T(\d{6})(Z?)")
DATE_PATTERN = re.compile(r"(?<!\d)(\d{8})(?!\d)")
TZID_PATTERN = re.compile(r"TZID=([^:;]+)")


def normalize_feed_url(url: str) -> str:
    text = str(url or "").strip()
    if text.lower().startswith("webcal://"):
        return "https://" + text[len("webcal://"):]
    return text


class HttpFeedSource:
    def __init__(self, config: FeedConfig) -> None:
        self.config = config

    def fetch(self) -> bytes:
        url = normalize_feed_url(self.config.url)
        if not url:
            raise FeedFetchError("Feed URL is not configured.")
        try:
            response = requests.get(url, timeout=self.config.timeout_seconds)
        except requests.RequestException as exc:
            raise FeedFetchError(f"Failed to fetch ICS: {exc}") from exc
        if not response.ok:
            raise FeedFetchError(f"Failed to fetch ICS: {response.status_code} {response.reason}")
        return response.content


@dataclass
class ResolvedFeed:
    singles: list[CanonicalEvent] = field(default_factory=list)
    masters: list[CanonicalEvent] = field(default_factory=list)
    exceptions: list[CanonicalEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def exceptions_for(self, identity: str) -> list[CanonicalEvent]:
        return [item for item in self.exceptions if item.exception_of == identity]

    def identities(self) -> set[str]:
        return {item.identity for item in self.all_events()}

    def all_events(self) -> list[CanonicalEvent]:
        return [*self.masters, *self.exceptions, *self.singles]


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value).strip()


def _decode_time(component: Any, name: str, default_timezone: str) -> tuple[datetime | date | None, str | None]:
    prop = component.get(name)
    if prop is None:
        return None, None
    if isinstance(prop, list):
        prop = prop[0] if prop else None
    value = getattr(prop, "dt", None)
    if value is None:
        raise ParseError(f"{name} is not a date or date-time: {prop!r}")
    params = getattr(prop, "params", {}) or {}
    if not isinstance(value, datetime):
        return value, None
    declared = normalize_timezone_name(params.get("TZID"))
    if declared:
        # Keep the wall-clock digits and attach the normalised zone.
        return value.replace(tzinfo=None).replace(tzinfo=zone(declared)), declared
    if value.tzinfo is None:
        return value.replace(tzinfo=zone(default_timezone)), None
    return value, zone_name_of(value.tzinfo)


def _attendees(component: Any) -> list[Attendee]:
    raw = component.get("ATTENDEE")
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    attendees: list[Attendee] = []
    for item in items:
        email = str(item).strip()
        if email.lower().startswith("mailto:"):
            email = email[len("mailto:"):]
        params = getattr(item, "params", {}) or {}
        attendees.append(Attendee(email=email.lower(), partstat=str(params.get("PARTSTAT", "")).upper()))
    return attendees


def _recurrence_rule(component: Any, timezone_name: str | None) -> RecurrenceRule | None:
    raw = component.get("RRULE")
    if raw is None:
        return None
    if isinstance(raw, list):
        raw = raw[0] if raw else None
        if raw is None:
            return None
    frequency = str((raw.get("FREQ") or [""])[0]).upper()
    if not frequency:
        raise ParseError("RRULE without FREQ")
    ignored = sorted(set(str(key).upper() for key in raw.keys()) - CARRIED_RULE_PARTS)
    if ignored:
        logger.debug("RRULE parts not carried over: %s", ", ".join(ignored))
    interval = int((raw.get("INTERVAL") or [1])[0] or 1)
    until = (raw.get("UNTIL") or [None])[0]
    if until is not None and not isinstance(until, date):
        until = getattr(until, "dt", None)
    return RecurrenceRule(
        frequency=frequency,
        interval=max(1, interval),
        by_day=tuple(str(day).upper() for day in raw.get("BYDAY") or []),
        until=until,
        timezone=timezone_name,
    )


def _occurrence_reference(component: Any) -> tuple[bool, Any, str | None]:
    prop = component.get("RECURRENCE-ID")
    if isinstance(prop, list):
        prop = prop[0] if prop else None
    if prop is not None:
        params = getattr(prop, "params", {}) or {}
        try:
            value = prop.dt
        except (AttributeError, ValueError):
            # Unparseable values are kept as raw text and dated later.
            value = None
        return True, value or str(prop), params.get("TZID")
    for name, message in getattr(component, "errors", []) or []:
        if str(name).upper() == "RECURRENCE-ID":
            return True, str(message), None
    return False, None, None


def entry_from_component(component: Any, default_timezone: str) -> RawEntry:
    uid = _text(component, "UID")
    start, declared = _decode_time(component, "DTSTART", default_timezone)
    if start is None:
        raise ParseError("DTSTART is missing")
    end, _ = _decode_time(component, "DTEND", default_timezone)
    if end is None:
        duration = component.get("DURATION")
        delta = getattr(duration, "dt", None)
        if isinstance(delta, timedelta):
            end = start + delta
        elif isinstance(start, datetime):
            end = start + timedelta(hours=1)
        else:
            end = start + timedelta(days=1)

    last_modified, _ = _decode_time(component, "LAST-MODIFIED", "UTC")
    sequence_raw = component.get("SEQUENCE")
    try:
        sequence = int(sequence_raw) if sequence_raw is not None else None
    except (TypeError, ValueError):
        sequence = None

    fields = EventFields(
        title=_text(component, "SUMMARY"),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start=start,
        end=end,
        transparent=_text(component, "TRANSP").upper() == "TRANSPARENT",
        status=_text(component, "STATUS").upper(),
        sequence=sequence,
        last_modified=last_modified if isinstance(last_modified, datetime) else None,
        timezone=declared,
    )
    has_reference, reference, reference_tzid = _occurrence_reference(component)
    return RawEntry(
        uid=uid,
        fields=fields,
        rule=None if has_reference else _recurrence_rule(component, declared),
        has_occurrence_reference=has_reference,
        occurrence_reference=reference,
        occurrence_tzid=reference_tzid,
        attendees=_attendees(component),
        busy_status=_text(component, "X-MICROSOFT-CDO-BUSYSTATUS").upper(),
    )


def entries_from_ical(raw: bytes | str, default_timezone: str = "UTC") -> tuple[list[RawEntry], list[str]]:
    """Parse feed bytes into raw entries; malformed entries are dropped and reported."""
    try:
        calendar_obj = ICalendar.from_ical(raw)
    except Exception as exc:
        raise FeedParseError(f"Feed is not valid iCalendar data: {exc}") from exc

    entries: list[RawEntry] = []
    errors: list[str] = []
    for component in calendar_obj.subcomponents:
        if component.name != "VEVENT":
            continue
        uid = _text(component, "UID")
        if not uid:
            logger.debug("Discarding VEVENT without UID")
            continue
        try:
            entry = entry_from_component(component, default_timezone)
            for nested in component.subcomponents:
                if nested.name != "VEVENT":
                    continue
                override = entry_from_component(nested, default_timezone)
                entry.overrides.append(replace(override, uid=override.uid or uid, rule=None))
        except (ParseError, ValueError, TypeError) as exc:
            message = f"Skipping entry {uid}: {type(exc).__name__}: {exc}"
            logger.warning(message)
            errors.append(message)
            continue
        entries.append(entry)
    return entries, errors


def parse_occurrence_reference(
    value: datetime | date | str | None,
    tzid: str | None,
    basis_timezone: str,
) -> datetime | date:
    """Normalise a RECURRENCE-ID value into the master's timezone basis."""
    basis = zone(basis_timezone)
    if isinstance(value, datetime):
        declared = normalize_timezone_name(tzid)
        if declared:
            value = value.replace(tzinfo=None).replace(tzinfo=zone(declared))
        elif value.tzinfo is None:
            value = value.replace(tzinfo=basis)
        return value.astimezone(basis)
    if isinstance(value, date):
        return value

    text = str(value or "")
    match = DATETIME_PATTERN.search(text)
    if match:
        parsed = datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S")
        if match.group(3):
            return parsed.replace(tzinfo=timezone.utc).astimezone(basis)
        tz_match = TZID_PATTERN.search(text)
        declared = normalize_timezone_name(tz_match.group(1) if tz_match else tzid)
        return parsed.replace(tzinfo=zone(declared or basis_timezone)).astimezone(basis)
    match = DATE_PATTERN.search(text)
    if match:
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    raise ClassificationAmbiguity(f"Unparseable RECURRENCE-ID: {text!r}")


def exception_identity(master_uid: str, exception_date: datetime | date) -> str:
    day = exception_date.date() if isinstance(exception_date, datetime) else exception_date
    return f"{master_uid}_EXCEPTION_{day.isoformat()}"


def resolve_entries(
    entries: Iterable[RawEntry],
    policy: ExclusionPolicy | None = None,
    *,
    default_timezone: str = "UTC",
    include_filtered: bool = False,
    now: datetime | None = None,
    errors: list[str] | None = None,
) -> ResolvedFeed:
    resolved = ResolvedFeed(errors=list(errors or []))
    seen: set[str] = set()
    pending: list[tuple[RawEntry, bool]] = []

    def _excluded(entry: RawEntry) -> bool | None:
        reason = policy.reason(entry) if policy is not None else None
        if reason is None:
            return False
        if include_filtered:
            return True
        logger.debug("Filtered %s (%s)", entry.uid, reason)
        return None

    def _admit(event: CanonicalEvent) -> bool:
        if event.identity in seen:
            logger.warning("Duplicate feed identity %s, keeping the first entry", event.identity)
            return False
        seen.add(event.identity)
        return True

    for entry in entries:
        if not entry.uid:
            continue
        for override in entry.overrides:
            override_filtered = _excluded(override)
            if override_filtered is not None:
                pending.append((replace(override, uid=override.uid or entry.uid, has_occurrence_reference=True), override_filtered))
        filtered = _excluded(entry)
        if filtered is None:
            continue
        if entry.has_occurrence_reference:
            pending.append((entry, filtered))
            continue
        kind = EventKind.RECURRING_MASTER if entry.rule is not None else EventKind.SINGLE
        event = CanonicalEvent(
            identity=entry.uid,
            kind=kind,
            fields=entry.fields,
            fingerprint=event_fingerprint(entry.uid, entry.fields),
            recurrence_rule=entry.rule,
            filtered=filtered,
        )
        if _admit(event):
            (resolved.masters if kind is EventKind.RECURRING_MASTER else resolved.singles).append(event)

    master_zones = {
        master.identity: master.fields.timezone or default_timezone for master in resolved.masters
    }
    linked: set[tuple[str, datetime | date]] = set()
    for entry, filtered in pending:
        basis = master_zones.get(entry.uid) or entry.fields.timezone or default_timezone
        try:
            occurrence = parse_occurrence_reference(entry.occurrence_reference, entry.occurrence_tzid, basis)
        except ClassificationAmbiguity as exc:
            # Known-lossy: the exception is kept but dated "now".
            occurrence = (now or datetime.now(timezone.utc)).astimezone(zone(basis))
            logger.warning("%s for %s, using current date %s", exc, entry.uid, occurrence.isoformat())
        key = (entry.uid, occurrence)
        if key in linked:
            logger.debug("Dropping duplicate override %s @ %s", entry.uid, occurrence)
            continue
        linked.add(key)
        identity = exception_identity(entry.uid, occurrence)
        event = CanonicalEvent(
            identity=identity,
            kind=EventKind.RECURRING_EXCEPTION,
            fields=entry.fields,
            fingerprint=event_fingerprint(identity, entry.fields),
            exception_of=entry.uid,
            exception_date=occurrence,
            filtered=filtered,
        )
        if _admit(event):
            resolved.exceptions.append(event)

    logger.info(
        "Parsed feed: %d recurring, %d single, %d exceptions",
        len(resolved.masters),
        len(resolved.singles),
        len(resolved.exceptions),
    )
    return resolved


def resolve_feed(
    raw: bytes | str,
    policy: ExclusionPolicy | None = None,
    *,
    default_timezone: str = "UTC",
    include_filtered: bool = False,
    now: datetime | None = None,
) -> ResolvedFeed:
    entries, errors = entries_from_ical(raw, default_timezone)
    return resolve_entries(
        entries,
        policy,
        default_timezone=default_timezone,
        include_filtered=include_filtered,
        now=now,
        errors=errors,
    )
