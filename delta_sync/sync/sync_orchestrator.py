"""Orchestrates delta traversals, cursor lifecycle and change polling."""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Iterable

import structlog

from delta_sync.exceptions import ChangeApplyError, RemoteError, TransportError
from delta_sync.ingestion.page_fetcher import PageFetcher
from delta_sync.models.config import PollingConfig, RetryConfig
from delta_sync.models.delta import (
    ChangeRecord,
    ContinuationRequest,
    DeltaCursor,
    DeltaRequest,
    InitialQuery,
    Page,
    PageRequest,
    SyncMode,
    SyncSession,
)
from delta_sync.sync.change_applier import ChangeApplier
from delta_sync.sync.cursor_store import DeltaCursorStore, describe_cursor
from delta_sync.sync.models import SyncReport, SyncState
from delta_sync.utils.retry import RetryCancelled, compute_backoff_delay, retry_call

log = structlog.stdlib.get_logger()


def _is_transient(error: Exception) -> bool:
    if isinstance(error, TransportError):
        return True
    return isinstance(error, RemoteError) and error.is_transient


def _retry_after(error: Exception) -> float | None:
    return error.retry_after if isinstance(error, RemoteError) else None


class SyncOrchestrator:
    """Drives delta traversals for one resource collection.

    State machine::

        START -> PAGING -> (PAGING | SETTLED) -> POLLING -> SETTLED

    Each instance owns its fetcher, cursor store and applier; run separate
    instances to track several collections concurrently.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        cursor_store: DeltaCursorStore,
        applier: ChangeApplier,
        resource: str = "users",
        select_fields: Iterable[str] = (),
        retry_config: RetryConfig | None = None,
        polling_config: PollingConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize sync orchestrator.

        Args:
            fetcher: Page fetcher bound to the collection's delta endpoint
            cursor_store: Store holding the collection's delta cursor
            applier: Sink receiving every change record, in order
            resource: Collection name, used for logging and reports
            select_fields: Fields selected on the initial query
            retry_config: Retry policy for transient fetch errors
            polling_config: Backoff and deadline for poll_for_changes
            sleep: Sleep function used between retries and polls without a cancel event
        """
        self._fetcher = fetcher
        self._cursor_store = cursor_store
        self._applier = applier
        self._resource = resource
        self._select = tuple(select_fields)
        self._retry = retry_config or RetryConfig()
        self._polling = polling_config or PollingConfig()
        self._sleep = sleep
        self._state = SyncState.START
        self._log = log.bind(resource=resource)

        self._log.info("sync_orchestrator_initialized", select_fields=list(self._select))

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def resource(self) -> str:
        return self._resource

    def sync(self) -> SyncReport:
        """
        Run one traversal and settle on its terminal cursor.

        Without a stored cursor this is a full snapshot; otherwise only the
        changes since the stored cursor are fetched. An expired cursor is
        discarded and the pass restarts as a full resync.

        Returns:
            SyncReport for the traversal

        Raises:
            TransportError: If transient failures outlast the retry budget
            RemoteError: If the service rejects the pass
            ProtocolError: If a page violates the delta contract
            ChangeApplyError: If the applier fails; the stored cursor is unchanged
        """
        cursor = self._cursor_store.get()
        report = self._new_report(cursor)

        self._log.info("sync_started", mode=report.mode.value, **describe_cursor(cursor))

        new_cursor, _ = self._run_pass(cursor, report, self._sleep)
        self._settle(new_cursor, previous=cursor, report=report)

        report.end_time = datetime.now(timezone.utc)
        self._log.info(
            "sync_completed",
            mode=report.mode.value,
            pages_fetched=report.pages_fetched,
            records_upserted=report.records_upserted,
            records_removed=report.records_removed,
            forced_resync=report.forced_resync,
            duration_seconds=report.duration_seconds,
        )
        return report

    def poll_for_changes(
        self,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> SyncReport:
        """
        Replay the stored cursor until the service reports a change.

        A pass that returns no records and the same terminal token as the
        stored cursor means the change has not replicated yet; the loop waits
        with exponential backoff and tries again. The loop stops when a change
        is observed, the cancel event is set (also during retry waits), or the
        deadline passes.

        Args:
            cancel_event: Optional event that cancels the loop, including waits
            timeout: Seconds before giving up; defaults to polling.timeout_seconds

        Returns:
            SyncReport with changes_observed or cancelled set

        Raises:
            Same as sync(); a cancelled poll never raises
        """
        deadline = time.monotonic() + (
            timeout if timeout is not None else self._polling.timeout_seconds
        )
        cursor = self._cursor_store.get()

        if cursor is None:
            self._log.info("no_stored_cursor_before_polling")
            baseline = self.sync()
            cursor = self._cursor_store.get()
            report = self._new_report(cursor)
            report.used_stored_cursor = False
            report.cursor_changed = baseline.cursor_changed
            report.pages_fetched = baseline.pages_fetched
            report.records_upserted = baseline.records_upserted
            report.records_removed = baseline.records_removed
            report.forced_resync = baseline.forced_resync
        else:
            report = self._new_report(cursor)

        wait = self._make_wait(cancel_event)
        attempt = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break

            self._state = SyncState.POLLING
            report.poll_attempts += 1
            applied_before = report.total_changes

            try:
                new_cursor, resynced = self._run_pass(cursor, report, wait)
            except RetryCancelled:
                self._state = SyncState.SETTLED
                report.cancelled = True
                break
            applied = report.total_changes - applied_before

            if applied or resynced or not new_cursor.same_token(cursor):
                report.changes_observed = True
                self._settle(new_cursor, previous=cursor, report=report)
                break

            self._state = SyncState.SETTLED
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                report.cancelled = True
                break

            delay = min(
                compute_backoff_delay(
                    attempt,
                    self._polling.initial_delay,
                    self._polling.max_delay,
                    self._polling.multiplier,
                ),
                remaining,
            )
            self._log.info(
                "no_changes_yet",
                attempt=report.poll_attempts,
                delay_seconds=delay,
            )
            if wait(delay):
                report.cancelled = True
                break
            attempt += 1

        report.end_time = datetime.now(timezone.utc)
        if report.cancelled:
            self._log.info("polling_cancelled", attempts=report.poll_attempts)
        else:
            self._log.info(
                "changes_observed",
                attempts=report.poll_attempts,
                records_upserted=report.records_upserted,
                records_removed=report.records_removed,
            )
        return report

    def discard_cursor(self) -> None:
        """Forget the stored cursor so the next pass is a full snapshot."""
        self._cursor_store.clear()
        self._state = SyncState.START
        self._log.info("cursor_discarded")

    def _run_pass(
        self,
        cursor: DeltaCursor | None,
        report: SyncReport,
        wait: Callable[[float], object],
    ) -> tuple[DeltaCursor, bool]:
        """Traverse once; an expired cursor forces one full resync, a second expiry propagates.

        Returns the terminal cursor and whether a forced resync happened.
        """
        try:
            return self._traverse(cursor, report, wait), False
        except RemoteError as e:
            if not e.is_cursor_expired:
                raise

            self._log.warning(
                "cursor_expired_forcing_full_resync",
                status=e.status,
                code=e.code,
                **describe_cursor(cursor),
            )
            self._cursor_store.clear()
            self._state = SyncState.START
            report.forced_resync = True
            report.mode = SyncMode.FULL
            try:
                return self._traverse(None, report, wait), True
            except RetryCancelled:
                if cursor is not None:
                    self._cursor_store.set(cursor)
                raise

    def _traverse(
        self,
        cursor: DeltaCursor | None,
        report: SyncReport,
        wait: Callable[[float], object],
    ) -> DeltaCursor:
        """Fetch pages sequentially until the terminal page and return its cursor."""
        request: PageRequest
        if cursor is None:
            self._state = SyncState.START
            request = InitialQuery(select=self._select)
            session = SyncSession(mode=SyncMode.FULL, request=request)
        else:
            request = DeltaRequest(cursor=cursor)
            session = SyncSession(mode=SyncMode.INCREMENTAL, request=request)

        self._state = SyncState.PAGING
        while True:
            page = self._fetch(request, wait)
            session.pages_fetched += 1
            report.pages_fetched += 1

            for record in page.records:
                self._apply(record)
                if record.is_removed:
                    session.records_removed += 1
                    report.records_removed += 1
                else:
                    session.records_upserted += 1
                    report.records_upserted += 1

            self._log.debug(
                "page_applied",
                mode=session.mode.value,
                page=session.pages_fetched,
                record_count=len(page.records),
                terminal=page.is_terminal,
            )

            if page.delta_cursor is not None:
                self._log.info(
                    "traversal_completed",
                    mode=session.mode.value,
                    pages=session.pages_fetched,
                    records=session.records_applied,
                )
                return page.delta_cursor

            request = ContinuationRequest(next_link=page.next_link)
            session.request = request

    def _fetch(self, request: PageRequest, wait: Callable[[float], object]) -> Page:
        def fetch_page() -> Page:
            return self._fetcher.fetch(request)

        return retry_call(
            fetch_page,
            max_retries=self._retry.max_retries,
            base_delay=self._retry.base_delay,
            max_delay=self._retry.max_delay,
            exceptions=(TransportError, RemoteError),
            should_retry=_is_transient,
            delay_hint=_retry_after,
            wait=wait,
        )

    def _apply(self, record: ChangeRecord) -> None:
        try:
            self._applier.apply(record)
        except Exception as e:
            self._log.error("failed_to_apply_change", id=record.id, error=str(e))
            raise ChangeApplyError(record.id, e) from e

    def _settle(
        self,
        new_cursor: DeltaCursor,
        previous: DeltaCursor | None,
        report: SyncReport,
    ) -> None:
        changed = not new_cursor.same_token(previous) or report.forced_resync
        if changed:
            self._cursor_store.set(new_cursor)
            self._log.info("cursor_stored", **describe_cursor(new_cursor))
        report.cursor_changed = report.cursor_changed or changed
        self._state = SyncState.SETTLED

    def _make_wait(self, cancel_event: threading.Event | None) -> Callable[[float], bool]:
        """Build a wait function that returns True when cancelled during the wait."""
        if cancel_event is None:

            def sleep_wait(delay: float) -> bool:
                self._sleep(delay)
                return False

            return sleep_wait

        return cancel_event.wait

    def _new_report(self, cursor: DeltaCursor | None) -> SyncReport:
        now = datetime.now(timezone.utc)
        return SyncReport(
            resource=self._resource,
            mode=SyncMode.FULL if cursor is None else SyncMode.INCREMENTAL,
            used_stored_cursor=cursor is not None,
            start_time=now,
            end_time=now,
        )
