import unittest
from types import SimpleNamespace

from calmirror.errors import MappingStoreError
from calmirror.feed_parser import ResolvedFeed, resolve_feed
from calmirror.models import MappingRecord, RateLimitConfig
from calmirror.rate_limiter import RateLimitedExecutor
from calmirror.reconciler import reconcile
from calmirror.translator import GoogleEventTranslator


def ics(*events: str) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calmirror tests//EN"]
    for event in events:
        lines.extend(line.strip() for line in event.strip().splitlines())
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


MASTER = """
BEGIN:VEVENT
UID:weekly-1
SUMMARY:Standup
DTSTART;TZID=Europe/London:20250902T090000
DTEND;TZID=Europe/London:20250902T093000
RRULE:FREQ=WEEKLY;BYDAY=TU
END:VEVENT
"""

THIRD_TUESDAY = """
BEGIN:VEVENT
UID:weekly-1
RECURRENCE-ID;TZID=Europe/London:20250916T090000
SUMMARY:{title}
DTSTART;TZID=Europe/London:20250916T110000
DTEND;TZID=Europe/London:20250916T113000
END:VEVENT
"""

SINGLE = """
BEGIN:VEVENT
UID:{uid}
SUMMARY:Dentist
DTSTART:20250910T140000Z
DTEND:20250910T150000Z
END:VEVENT
"""


class FakeHttpError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.resp = SimpleNamespace(status=status)


class FakeCalendarClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.bodies: dict[str, dict] = {}
        self.fail_create_for: set[str] = set()
        self.delete_error: Exception | None = None
        self._counter = 0

    def create_event(self, body: dict) -> str:
        identity = body["extendedProperties"]["private"]["icsIdentity"]
        if identity in self.fail_create_for:
            raise ValueError(f"Invalid event {identity}")
        self._counter += 1
        remote_id = f"remote-{self._counter}"
        self.calls.append(("create", remote_id))
        self.bodies[remote_id] = body
        return remote_id

    def update_event(self, event_id: str, body: dict) -> None:
        self.calls.append(("update", event_id))
        self.bodies[event_id] = body

    def delete_event(self, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        if self.delete_error is not None:
            raise self.delete_error
        self.bodies.pop(event_id, None)


class MemoryStore:
    def __init__(self) -> None:
        self.records: dict[str, MappingRecord] = {}
        self.fail_writes = False

    def load_mappings(self) -> dict[str, MappingRecord]:
        return dict(self.records)

    def upsert_mapping(self, record: MappingRecord) -> None:
        if self.fail_writes:
            raise MappingStoreError("disk full")
        self.records[record.identity] = record

    def delete_mapping(self, identity: str) -> None:
        self.records.pop(identity, None)


class ReconcileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeCalendarClient()
        self.store = MemoryStore()
        self.executor = RateLimitedExecutor(
            RateLimitConfig(max_requests_per_second=1000.0, base_delay_ms=0),
            sleeper=lambda seconds: False,
        )
        self.translator = GoogleEventTranslator("Europe/London")

    def run_sync(self, raw: str | ResolvedFeed, **kwargs):
        feed = raw if isinstance(raw, ResolvedFeed) else resolve_feed(raw, default_timezone="Europe/London")
        return reconcile(
            feed=feed,
            snapshot=self.store.load_mappings(),
            client=self.client,
            store=self.store,
            executor=self.executor,
            translator=self.translator,
            **kwargs,
        )

    def test_weekly_series_with_moved_occurrence(self) -> None:
        feed = ics(MASTER, THIRD_TUESDAY.format(title="Standup (moved)"))

        first = self.run_sync(feed)
        self.assertEqual((first.created, first.updated, first.deleted), (2, 0, 0))
        self.assertEqual(first.errors, ())
        master_id = self.store.records["weekly-1"].remote_event_id
        exception_id = self.store.records["weekly-1_EXCEPTION_2025-09-16"].remote_event_id
        self.assertEqual(self.client.calls, [("create", master_id), ("create", exception_id)])
        self.assertEqual(
            self.client.bodies[master_id]["recurrence"],
            ["RRULE:FREQ=WEEKLY;BYDAY=TU", "EXDATE;TZID=Europe/London:20250916T090000"],
        )
        exception_body = self.client.bodies[exception_id]
        self.assertNotIn("recurrence", exception_body)
        self.assertNotIn("recurringEventId", exception_body)
        self.assertEqual(exception_body["start"]["dateTime"], "2025-09-16T11:00:00+01:00")
        exception_record = self.store.records["weekly-1_EXCEPTION_2025-09-16"]
        self.assertTrue(exception_record.is_exception)
        self.assertEqual(exception_record.exception_of_identity, "weekly-1")

        second = self.run_sync(feed)
        self.assertEqual(second.operations, 0)
        self.assertEqual(second.errors, ())

        self.client.calls.clear()
        third = self.run_sync(ics(MASTER, THIRD_TUESDAY.format(title="Standup (moved again)")))
        self.assertEqual((third.created, third.updated, third.deleted), (0, 2, 0))
        self.assertEqual(self.client.calls, [("update", master_id), ("update", exception_id)])
        self.assertEqual(
            self.client.bodies[master_id]["recurrence"],
            ["RRULE:FREQ=WEEKLY;BYDAY=TU", "EXDATE;TZID=Europe/London:20250916T090000"],
        )

    def test_removed_event_is_deleted_once(self) -> None:
        self.run_sync(ics(SINGLE.format(uid="keep-1"), SINGLE.format(uid="gone-1")))
        gone_id = self.store.records["gone-1"].remote_event_id
        self.client.calls.clear()

        result = self.run_sync(ics(SINGLE.format(uid="keep-1")))
        self.assertEqual((result.created, result.updated, result.deleted), (0, 0, 1))
        self.assertEqual(self.client.calls, [("delete", gone_id)])
        self.assertNotIn("gone-1", self.store.records)
        self.assertIn("keep-1", self.store.records)

    def test_already_deleted_remote_counts_as_deleted(self) -> None:
        for error in (
            FakeHttpError(410, "Resource has been deleted"),
            FakeHttpError(404, "Not Found"),
            Exception("Resource has been deleted"),
        ):
            with self.subTest(error=error):
                self.store.records = {
                    "gone-1": MappingRecord(identity="gone-1", remote_event_id="remote-x", last_applied_fingerprint="f")
                }
                self.client.delete_error = error
                result = self.run_sync(ics())
                self.assertEqual(result.deleted, 1)
                self.assertEqual(result.errors, ())
                self.assertEqual(self.store.records, {})

    def test_failed_delete_keeps_mapping(self) -> None:
        self.store.records = {
            "gone-1": MappingRecord(identity="gone-1", remote_event_id="remote-x", last_applied_fingerprint="f")
        }
        self.client.delete_error = FakeHttpError(403, "Forbidden")
        result = self.run_sync(ics())
        self.assertEqual(result.deleted, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Failed to delete gone-1: PermanentRemoteError"))
        self.assertIn("gone-1", self.store.records)

    def test_promoted_single_keeps_identity_and_is_not_deleted(self) -> None:
        promoted = """
        BEGIN:VEVENT
        UID:weekly-1
        SUMMARY:Standup
        DTSTART;TZID=Europe/London:20250902T090000
        DTEND;TZID=Europe/London:20250902T093000
        END:VEVENT
        """
        self.run_sync(ics(promoted))
        remote_id = self.store.records["weekly-1"].remote_event_id
        self.client.calls.clear()

        result = self.run_sync(ics(MASTER))
        self.assertEqual((result.created, result.updated, result.deleted), (0, 1, 0))
        self.assertEqual(self.client.calls, [("update", remote_id)])

    def test_exception_without_master_is_reported(self) -> None:
        result = self.run_sync(ics(THIRD_TUESDAY.format(title="Orphan")))
        self.assertEqual(result.operations, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(
            result.errors[0].startswith("Failed to sync exception weekly-1_EXCEPTION_2025-09-16: MissingMasterError")
        )

    def test_exception_resolves_master_from_snapshot(self) -> None:
        self.run_sync(ics(MASTER))
        self.client.calls.clear()
        result = self.run_sync(ics(MASTER, THIRD_TUESDAY.format(title="Moved")))
        self.assertEqual((result.created, result.updated), (1, 1))
        self.assertEqual(result.errors, ())

    def test_per_event_failure_does_not_stop_run(self) -> None:
        self.client.fail_create_for = {"bad-1"}
        result = self.run_sync(ics(SINGLE.format(uid="bad-1"), SINGLE.format(uid="good-1")))
        self.assertEqual(result.created, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Failed to sync event bad-1: PermanentRemoteError"))
        self.assertIn("good-1", self.store.records)
        self.assertNotIn("bad-1", self.store.records)

    def test_store_failure_after_remote_success_is_reported(self) -> None:
        self.store.fail_writes = True
        result = self.run_sync(ics(SINGLE.format(uid="single-1")))
        self.assertEqual(result.created, 1)
        self.assertEqual(
            result.errors,
            ("Mapping store write failed for single-1: MappingStoreError: disk full",),
        )

    def test_feed_errors_lead_the_error_list(self) -> None:
        feed = resolve_feed(ics(SINGLE.format(uid="single-1")), default_timezone="Europe/London")
        feed.errors.append("Skipping entry broken-1: ParseError: DTSTART is missing")
        result = self.run_sync(feed)
        self.assertEqual(result.created, 1)
        self.assertEqual(result.errors, ("Skipping entry broken-1: ParseError: DTSTART is missing",))

    def test_expired_deadline_stops_before_any_work(self) -> None:
        self.store.records = {
            "gone-1": MappingRecord(identity="gone-1", remote_event_id="remote-x", last_applied_fingerprint="f")
        }
        result = self.run_sync(ics(SINGLE.format(uid="single-1")), deadline=10.0, clock=lambda: 11.0)
        self.assertEqual(result.operations, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Run stopped"))
        self.assertEqual(self.client.calls, [])
        self.assertIn("gone-1", self.store.records)


if __name__ == "__main__":
    unittest.main()
