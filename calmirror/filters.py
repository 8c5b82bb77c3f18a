from __future__ import annotations

from dataclasses import dataclass, field

from calmirror.models import DEFAULT_SKIP_TITLES, FilterConfig, RawEntry


@dataclass
class ExclusionPolicy:
    skip_titles: list[str] = field(default_factory=lambda: list(DEFAULT_SKIP_TITLES))
    principal_email: str = ""
    skip_tentative: bool = True
    skip_transparent: bool = False

    @classmethod
    def from_config(cls, config: FilterConfig) -> "ExclusionPolicy":
        titles = list(DEFAULT_SKIP_TITLES)
        for title in config.skip_titles:
            if title not in titles:
                titles.append(title)
        return cls(
            skip_titles=titles,
            principal_email=config.principal_email.strip().lower(),
            skip_tentative=config.skip_tentative,
            skip_transparent=config.skip_transparent,
        )

    def reason(self, entry: RawEntry) -> str | None:
        title = entry.fields.title or ""
        for blocked in self.skip_titles:
            if blocked and blocked in title:
                return "title"
        if self.principal_email:
            if self.skip_tentative and self._is_tentative(entry):
                return "tentative"
            if self._not_accepted_by_principal(entry):
                return "declined"
        if self.skip_transparent and entry.fields.transparent:
            return "transparent"
        return None

    def should_skip(self, entry: RawEntry) -> bool:
        return self.reason(entry) is not None

    @staticmethod
    def _is_tentative(entry: RawEntry) -> bool:
        return entry.busy_status.upper() == "TENTATIVE"

    def _not_accepted_by_principal(self, entry: RawEntry) -> bool:
        for attendee in entry.attendees:
            if attendee.email.lower() != self.principal_email:
                continue
            # A missing PARTSTAT counts as unanswered.
            return attendee.partstat.upper() != "ACCEPTED"
        return False
