from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


DEFAULT_SKIP_TITLES = ["Canceled:", "Declined:"]
DEFAULT_TIMEZONE = "Europe/London"
DEFAULT_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | date | None) -> datetime | date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    if "T" not in text and len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).isoformat()
    return value.isoformat()


class EventKind(str, Enum):
    SINGLE = "single"
    RECURRING_MASTER = "recurring_master"
    RECURRING_EXCEPTION = "recurring_exception"


@dataclass
class FeedConfig:
    url: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            url=str(data.get("url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class GoogleConfig:
    calendar_id: str = "primary"
    client_id: str = ""
    client_secret: str = ""
    token_uri: str = "https://oauth2.googleapis.com/token"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        scopes = [str(x).strip() for x in data.get("scopes", DEFAULT_SCOPES) or [] if str(x).strip()]
        return cls(
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            token_uri=str(data.get("token_uri", "https://oauth2.googleapis.com/token")).strip()
            or "https://oauth2.googleapis.com/token",
            scopes=scopes or list(DEFAULT_SCOPES),
        )


@dataclass
class SyncConfig:
    default_timezone: str = DEFAULT_TIMEZONE
    run_timeout_seconds: int = 600
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            default_timezone=str(data.get("default_timezone", DEFAULT_TIMEZONE)).strip() or DEFAULT_TIMEZONE,
            run_timeout_seconds=max(30, int(data.get("run_timeout_seconds", 600))),
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
        )


@dataclass
class FilterConfig:
    skip_titles: list[str] = field(default_factory=lambda: list(DEFAULT_SKIP_TITLES))
    principal_email: str = ""
    skip_tentative: bool = True
    skip_transparent: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FilterConfig":
        data = data or {}
        raw_titles = data.get("skip_titles", DEFAULT_SKIP_TITLES)
        if isinstance(raw_titles, str):
            raw_titles = raw_titles.split(",")
        return cls(
            skip_titles=[str(x).strip() for x in raw_titles or [] if str(x).strip()],
            principal_email=str(data.get("principal_email", "")).strip(),
            skip_tentative=bool(data.get("skip_tentative", True)),
            skip_transparent=bool(data.get("skip_transparent", False)),
        )


@dataclass
class RateLimitConfig:
    max_requests_per_second: float = 10.0
    max_retries: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 5000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RateLimitConfig":
        data = data or {}
        base_delay_ms = max(0, int(data.get("base_delay_ms", 100)))
        return cls(
            max_requests_per_second=max(0.1, float(data.get("max_requests_per_second", 10.0))),
            max_retries=max(0, int(data.get("max_retries", 3))),
            base_delay_ms=base_delay_ms,
            max_delay_ms=max(base_delay_ms, int(data.get("max_delay_ms", 5000))),
        )

    @property
    def min_interval_seconds(self) -> float:
        return 1.0 / self.max_requests_per_second


@dataclass
class AppConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            feed=FeedConfig.from_dict(data.get("feed")),
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            filters=FilterConfig.from_dict(data.get("filters")),
            rate_limit=RateLimitConfig.from_dict(data.get("rate_limit")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EventFields:
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime | date | None = None
    end: datetime | date | None = None
    transparent: bool = False
    status: str = ""
    sequence: int | None = None
    last_modified: datetime | None = None
    # Declared IANA zone of DTSTART, already normalised; None for UTC/floating values.
    timezone: str | None = None

    @property
    def is_date_only(self) -> bool:
        return isinstance(self.start, date) and not isinstance(self.start, datetime)


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str
    interval: int = 1
    by_day: tuple[str, ...] = ()
    until: datetime | date | None = None
    timezone: str | None = None

    def as_text(self) -> str:
        parts = [f"FREQ={self.frequency}", f"INTERVAL={self.interval}"]
        if self.by_day:
            parts.append("BYDAY=" + ",".join(self.by_day))
        if self.until is not None:
            parts.append(f"UNTIL={self.until.isoformat()}")
        if self.timezone:
            parts.append(f"TZID={self.timezone}")
        return ";".join(parts)


@dataclass
class Attendee:
    email: str
    partstat: str = ""


@dataclass
class RawEntry:
    """Feed entry after the parser adapter has flattened vendor-specific properties."""

    uid: str
    fields: EventFields
    rule: RecurrenceRule | None = None
    has_occurrence_reference: bool = False
    occurrence_reference: datetime | date | str | None = None
    occurrence_tzid: str | None = None
    attendees: list[Attendee] = field(default_factory=list)
    busy_status: str = ""
    overrides: list["RawEntry"] = field(default_factory=list)


@dataclass
class CanonicalEvent:
    identity: str
    kind: EventKind
    fields: EventFields
    fingerprint: str = ""
    recurrence_rule: RecurrenceRule | None = None
    exception_of: str | None = None
    exception_date: datetime | date | None = None
    filtered: bool = False

    @property
    def is_master(self) -> bool:
        return self.kind is EventKind.RECURRING_MASTER

    @property
    def is_exception(self) -> bool:
        return self.kind is EventKind.RECURRING_EXCEPTION


@dataclass
class MappingRecord:
    identity: str
    remote_event_id: str
    last_applied_fingerprint: str
    is_exception: bool = False
    exception_of_identity: str | None = None
    exception_date: datetime | date | None = None


@dataclass(frozen=True)
class ReconciliationResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def operations(self) -> int:
        return self.created + self.updated + self.deleted


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": list(self.errors),
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
