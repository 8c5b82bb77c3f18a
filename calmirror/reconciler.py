from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from calmirror.errors import DeadlineExceeded, MissingMasterError, OperationError
from calmirror.feed_parser import ResolvedFeed
from calmirror.fingerprint import master_fingerprint
from calmirror.models import CanonicalEvent, MappingRecord, ReconciliationResult
from calmirror.rate_limiter import RateLimitedExecutor
from calmirror.translator import GoogleEventTranslator


logger = logging.getLogger(__name__)

ALREADY_GONE_STATUSES = {404, 410}


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def is_already_deleted(exc: BaseException) -> bool:
    status = exc.status if isinstance(exc, OperationError) else None
    if status in ALREADY_GONE_STATUSES:
        return True
    return "resource has been deleted" in str(exc).lower()


@dataclass
class _Run:
    client: Any
    store: Any
    executor: RateLimitedExecutor
    translator: GoogleEventTranslator
    snapshot: dict[str, MappingRecord]
    deadline: float | None
    clock: Callable[[], float]
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    # Remote ids of masters created during this call only.
    created_masters: dict[str, str] = field(default_factory=dict)
    halted: bool = False

    def record_error(self, context: str, identity: str, exc: BaseException) -> None:
        message = f"{context} {identity}: {_describe(exc)}"
        logger.error(message)
        self.errors.append(message)

    def out_of_time(self) -> bool:
        if self.halted:
            return True
        if self.deadline is not None and self.clock() >= self.deadline:
            self.halt("deadline reached before all events were processed")
        return self.halted

    def halt(self, reason: str) -> None:
        if self.halted:
            return
        self.halted = True
        message = f"Run stopped: {reason}"
        logger.warning(message)
        self.errors.append(message)

    def call(self, label: str, operation: Callable[[], Any]) -> Any:
        return self.executor.execute(label, operation, deadline=self.deadline)


def _normalize_snapshot(snapshot: Mapping[str, MappingRecord] | Iterable[MappingRecord]) -> dict[str, MappingRecord]:
    if isinstance(snapshot, Mapping):
        return dict(snapshot)
    return {record.identity: record for record in snapshot}


def _apply(
    run: _Run,
    event: CanonicalEvent,
    fingerprint: str,
    build_body: Callable[[], dict[str, Any]],
    *,
    kind_label: str,
) -> str | None:
    """Create or update one remote event; returns its remote id, or None when unchanged."""
    existing = run.snapshot.get(event.identity)
    if existing is not None and existing.last_applied_fingerprint == fingerprint:
        logger.debug("Unchanged %s %s", kind_label, event.identity)
        return existing.remote_event_id

    body = build_body()
    if existing is None:
        remote_id = run.call(f"create {event.identity}", lambda: run.client.create_event(body))
        run.created += 1
        logger.info("Created %s %s -> %s", kind_label, event.identity, remote_id)
    else:
        remote_id = existing.remote_event_id
        run.call(f"update {event.identity}", lambda: run.client.update_event(remote_id, body))
        run.updated += 1
        logger.info("Updated %s %s (%s)", kind_label, event.identity, remote_id)

    record = MappingRecord(
        identity=event.identity,
        remote_event_id=remote_id,
        last_applied_fingerprint=fingerprint,
        is_exception=event.is_exception,
        exception_of_identity=event.exception_of,
        exception_date=event.exception_date,
    )
    try:
        run.store.upsert_mapping(record)
    except Exception as exc:
        # The remote write stands; the next run will see no mapping and create again.
        run.record_error("Mapping store write failed for", event.identity, exc)
    return remote_id


def _sync_masters(run: _Run, feed: ResolvedFeed, masters: list[CanonicalEvent]) -> None:
    for master in masters:
        if run.out_of_time():
            return
        exceptions = [item for item in feed.exceptions_for(master.identity) if not item.filtered]
        composite = master_fingerprint(master, exceptions)
        exception_dates = [item.exception_date for item in exceptions if item.exception_date is not None]
        try:
            remote_id = _apply(
                run,
                master,
                composite,
                lambda: run.translator.to_remote_body(master, master.recurrence_rule, exception_dates),
                kind_label="master",
            )
        except DeadlineExceeded as exc:
            run.halt(str(exc))
            return
        except Exception as exc:
            run.record_error("Failed to sync master", master.identity, exc)
            continue
        if remote_id and master.identity not in run.snapshot:
            run.created_masters[master.identity] = remote_id


def _sync_exceptions(run: _Run, exceptions: list[CanonicalEvent]) -> None:
    for item in exceptions:
        if run.out_of_time():
            return
        master_identity = item.exception_of or ""
        parent_id = run.created_masters.get(master_identity)
        if parent_id is None and master_identity in run.snapshot:
            parent_id = run.snapshot[master_identity].remote_event_id
        if parent_id is None:
            run.record_error(
                "Failed to sync exception",
                item.identity,
                MissingMasterError(f"master {master_identity} has no remote event"),
            )
            continue
        try:
            _apply(run, item, item.fingerprint, lambda: run.translator.to_remote_body(item), kind_label="exception")
        except DeadlineExceeded as exc:
            run.halt(str(exc))
            return
        except Exception as exc:
            run.record_error("Failed to sync exception", item.identity, exc)


def _sync_singles(run: _Run, singles: list[CanonicalEvent]) -> None:
    for event in singles:
        if run.out_of_time():
            return
        try:
            _apply(run, event, event.fingerprint, lambda: run.translator.to_remote_body(event), kind_label="event")
        except DeadlineExceeded as exc:
            run.halt(str(exc))
            return
        except Exception as exc:
            run.record_error("Failed to sync event", event.identity, exc)


def _delete_stale(run: _Run, present: set[str]) -> None:
    for identity in sorted(run.snapshot):
        if identity in present:
            continue
        if run.out_of_time():
            return
        record = run.snapshot[identity]
        try:
            run.call(f"delete {identity}", lambda: run.client.delete_event(record.remote_event_id))
        except DeadlineExceeded as exc:
            run.halt(str(exc))
            return
        except Exception as exc:
            if not is_already_deleted(exc):
                run.record_error("Failed to delete", identity, exc)
                continue
            logger.info("Remote event for %s was already gone", identity)
        run.deleted += 1
        logger.info("Deleted %s (%s)", identity, record.remote_event_id)
        try:
            run.store.delete_mapping(identity)
        except Exception as exc:
            run.record_error("Mapping store delete failed for", identity, exc)


def reconcile(
    *,
    feed: ResolvedFeed,
    snapshot: Mapping[str, MappingRecord] | Iterable[MappingRecord],
    client: Any,
    store: Any,
    executor: RateLimitedExecutor,
    translator: GoogleEventTranslator,
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ReconciliationResult:
    """Apply the minimal remote changes that make the calendar match ``feed``.

    Phases run strictly in order: masters, exceptions, singles, deletions.
    Per-event failures are collected in the result and never abort the run.
    """
    started_at = datetime.now(timezone.utc)
    run = _Run(
        client=client,
        store=store,
        executor=executor,
        translator=translator,
        snapshot=_normalize_snapshot(snapshot),
        deadline=deadline,
        clock=clock,
        errors=list(feed.errors),
    )
    masters = [item for item in feed.masters if not item.filtered]
    exceptions = [item for item in feed.exceptions if not item.filtered]
    singles = [item for item in feed.singles if not item.filtered]

    _sync_masters(run, feed, masters)
    _sync_exceptions(run, exceptions)
    _sync_singles(run, singles)
    # A halted run never reaches deletion; unprocessed identities would look stale.
    if not run.halted:
        present = {item.identity for item in (*masters, *exceptions, *singles)}
        _delete_stale(run, present)

    result = ReconciliationResult(
        created=run.created,
        updated=run.updated,
        deleted=run.deleted,
        errors=tuple(run.errors),
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )
    logger.info(
        "Reconciled: %d created, %d updated, %d deleted, %d errors",
        result.created,
        result.updated,
        result.deleted,
        len(result.errors),
    )
    return result
