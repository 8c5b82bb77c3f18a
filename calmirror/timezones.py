from __future__ import annotations

from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


# Vendor display names (mostly Windows/Exchange) seen in TZID parameters, mapped to IANA names.
TIMEZONE_ALIASES: dict[str, str] = {
    "GMT Standard Time": "Europe/London",
    "GMT Daylight Time": "Europe/London",
    "GMT": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "UTC": "UTC",
    "Coordinated Universal Time": "UTC",
    "W. Europe Standard Time": "Europe/Berlin",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "Central European Time": "Europe/Paris",
    "Central European Summer Time": "Europe/Paris",
    "CET": "Europe/Paris",
    "CEST": "Europe/Paris",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kiev",
    "GTB Standard Time": "Europe/Bucharest",
    "Eastern Standard Time": "America/New_York",
    "Eastern Daylight Time": "America/New_York",
    "Central Standard Time": "America/Chicago",
    "Central Daylight Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "Mountain Daylight Time": "America/Denver",
    "US Mountain Standard Time": "America/Phoenix",
    "Pacific Standard Time": "America/Los_Angeles",
    "Pacific Daylight Time": "America/Los_Angeles",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "India Standard Time": "Asia/Kolkata",
    "China Standard Time": "Asia/Shanghai",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Singapore Standard Time": "Asia/Singapore",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "New Zealand Standard Time": "Pacific/Auckland",
}

_ALIASES_FOLDED = {key.casefold(): value for key, value in TIMEZONE_ALIASES.items()}


def normalize_timezone_name(name: str | None) -> str | None:
    """Return the IANA name for a TZID value, or None when it cannot be resolved."""
    text = str(name or "").strip().strip('"')
    if not text:
        return None
    mapped = _ALIASES_FOLDED.get(text.casefold())
    if mapped:
        return mapped
    # Some producers emit "/mozilla.org/20050126_1/Europe/London"-style prefixed ids.
    candidates = [text]
    if text.count("/") >= 2:
        candidates.append("/".join(text.rsplit("/", 2)[-2:]))
    for candidate in candidates:
        try:
            ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
        return candidate
    return None


def zone(name: str | None, fallback: str = "UTC") -> tzinfo:
    resolved = normalize_timezone_name(name) or normalize_timezone_name(fallback) or "UTC"
    return ZoneInfo(resolved)


def zone_name_of(value: tzinfo | None) -> str | None:
    if value is None:
        return None
    key = getattr(value, "key", None) or getattr(value, "zone", None)
    return normalize_timezone_name(key) if key else None
