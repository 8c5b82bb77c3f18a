from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone

from calmirror.config_manager import ConfigManager
from calmirror.feed_parser import HttpFeedSource, resolve_feed
from calmirror.filters import ExclusionPolicy
from calmirror.google_client import CredentialStore, GoogleClientFactory
from calmirror.models import ReconciliationResult, SyncResult
from calmirror.rate_limiter import RateLimitedExecutor
from calmirror.reconciler import reconcile
from calmirror.state_store import StateStore
from calmirror.translator import GoogleEventTranslator


logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A sync run is already in progress."


def run_status(result: ReconciliationResult) -> str:
    if not result.errors:
        return "success"
    if len(result.errors) < result.operations:
        return "partial"
    return "error"


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.credential_store = CredentialStore(state_store)
        self._run_lock = threading.Lock()
        self._executor: RateLimitedExecutor | None = None

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        executor = self._executor
        if executor is not None:
            executor.cancel()

    def run_once(self, trigger: str = "manual") -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync (%s) skipped, another run is in progress", trigger)
            return SyncResult(
                status="skipped",
                message=BUSY_MESSAGE,
                duration_ms=0,
                trigger=trigger,
            )
        try:
            return self._run(trigger)
        finally:
            self._executor = None
            self._run_lock.release()

    def _run(self, trigger: str) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        run_id: int | None = None

        def _elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            config = self.config_manager.load()
            if not config.feed.url:
                message = "Feed URL missing. Sync skipped."
                run_id = self.state_store.start_sync_run(trigger=trigger)
                self.state_store.finish_sync_run(run_id=run_id, status="skipped", message=message, duration_ms=0)
                return SyncResult(status="skipped", message=message, duration_ms=0, trigger=trigger, run_at=started_at)

            run_id = self.state_store.start_sync_run(trigger=trigger)
            logger.info("Sync run %d started (%s)", run_id, trigger)
            raw = HttpFeedSource(config.feed).fetch()
            feed = resolve_feed(
                raw,
                ExclusionPolicy.from_config(config.filters),
                default_timezone=config.sync.default_timezone,
            )
            snapshot = self.state_store.load_mappings()
            client = GoogleClientFactory(config.google, self.credential_store).build()
            executor = RateLimitedExecutor(config.rate_limit)
            self._executor = executor
            result = reconcile(
                feed=feed,
                snapshot=snapshot,
                client=client,
                store=self.state_store,
                executor=executor,
                translator=GoogleEventTranslator(config.sync.default_timezone),
                deadline=started + config.sync.run_timeout_seconds,
            )
            executor.log_summary()

            status = run_status(result)
            message = (
                f"Created {result.created}, updated {result.updated}, "
                f"deleted {result.deleted}, {len(result.errors)} errors."
            )
            duration_ms = _elapsed_ms()
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                errors=list(result.errors),
            )
            logger.info("Sync run %d finished with status %s: %s", run_id, status, message)
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                trigger=trigger,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                errors=list(result.errors),
                run_at=started_at,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms()
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run failed: %s", error_message)
            if run_id is None:
                run_id = self.state_store.start_sync_run(trigger=trigger)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                errors=[error_message],
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                trigger=trigger,
                errors=[error_message],
                run_at=started_at,
            )
