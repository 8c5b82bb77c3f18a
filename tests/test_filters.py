import unittest
from datetime import datetime, timezone

from calmirror.filters import ExclusionPolicy
from calmirror.models import Attendee, EventFields, FilterConfig, RawEntry


def _entry(title: str = "Planning", **kwargs) -> RawEntry:
    fields = EventFields(
        title=title,
        start=datetime(2025, 9, 10, 9, 0, tzinfo=timezone.utc),
        end=datetime(2025, 9, 10, 10, 0, tzinfo=timezone.utc),
        transparent=kwargs.pop("transparent", False),
        status=kwargs.pop("status", ""),
    )
    return RawEntry(uid="e1", fields=fields, **kwargs)


class ExclusionPolicyTests(unittest.TestCase):
    def test_default_title_prefixes_are_skipped(self) -> None:
        policy = ExclusionPolicy()
        self.assertEqual(policy.reason(_entry("Canceled: Lunch")), "title")
        self.assertEqual(policy.reason(_entry("Declined: Review")), "title")
        self.assertIsNone(policy.reason(_entry("Lunch")))

    def test_configured_titles_extend_defaults(self) -> None:
        policy = ExclusionPolicy.from_config(FilterConfig.from_dict({"skip_titles": "Focus time, OOO"}))
        self.assertIn("Canceled:", policy.skip_titles)
        self.assertTrue(policy.should_skip(_entry("Focus time")))
        self.assertTrue(policy.should_skip(_entry("OOO - Friday")))

    def test_tentative_busy_status_is_skipped_for_principal(self) -> None:
        policy = ExclusionPolicy(principal_email="me@example.com")
        self.assertEqual(policy.reason(_entry(busy_status="TENTATIVE")), "tentative")
        self.assertIsNone(policy.reason(_entry(status="TENTATIVE")))
        self.assertIsNone(
            ExclusionPolicy(principal_email="me@example.com", skip_tentative=False).reason(_entry(busy_status="TENTATIVE"))
        )

    def test_tentative_is_kept_without_principal(self) -> None:
        self.assertIsNone(ExclusionPolicy().reason(_entry(busy_status="TENTATIVE")))

    def test_principal_must_have_accepted(self) -> None:
        policy = ExclusionPolicy.from_config(FilterConfig(principal_email="Me@Example.com"))
        declined = _entry(attendees=[Attendee("me@example.com", "DECLINED")])
        accepted = _entry(attendees=[Attendee("me@example.com", "ACCEPTED")])
        unanswered = _entry(attendees=[Attendee("me@example.com")])
        not_invited = _entry(attendees=[Attendee("other@example.com", "DECLINED")])
        self.assertEqual(policy.reason(declined), "declined")
        self.assertEqual(policy.reason(unanswered), "declined")
        self.assertIsNone(policy.reason(accepted))
        self.assertIsNone(policy.reason(not_invited))

    def test_transparent_only_skipped_when_enabled(self) -> None:
        entry = _entry(transparent=True)
        self.assertIsNone(ExclusionPolicy().reason(entry))
        self.assertEqual(ExclusionPolicy(skip_transparent=True).reason(entry), "transparent")


if __name__ == "__main__":
    unittest.main()
