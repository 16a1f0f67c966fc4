"""Property-based tests for the sync orchestrator.

Covers completeness of a full traversal, incremental change detection,
no-op polling under replication lag, cursor expiry, retry classification
and cursor safety when the sink fails.
"""

import threading
from typing import Any

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from delta_sync.exceptions import (
    ChangeApplyError,
    ProtocolError,
    RemoteError,
    TransportError,
)
from delta_sync.models.config import PollingConfig, RetryConfig
from delta_sync.models.delta import (
    ChangeKind,
    ChangeRecord,
    ContinuationRequest,
    DeltaCursor,
    DeltaRequest,
    InitialQuery,
    Page,
    SyncMode,
)
from delta_sync.sync.change_applier import ChangeApplier, ProjectionApplier
from delta_sync.sync.cursor_store import InMemoryCursorStore
from delta_sync.sync.models import SyncState
from delta_sync.sync.sync_orchestrator import SyncOrchestrator

log = structlog.stdlib.get_logger()

NO_WAIT_POLLING = PollingConfig(initial_delay=0.0, multiplier=1.0, max_delay=0.0, timeout_seconds=5)
NO_WAIT_RETRY = RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0)


class ScriptedFetcher:
    """Stands in for PageFetcher, returning scripted pages or raising scripted errors."""

    def __init__(self, responses: list[Any] | None = None):
        self.responses: list[Any] = list(responses or [])
        self.requests: list[Any] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def fetch(self, request):
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request!r}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FailingApplier(ChangeApplier):
    """Applier that raises for one specific id."""

    def __init__(self, failing_id: str):
        self.failing_id = failing_id
        self.applied: list[str] = []

    def apply(self, record: ChangeRecord) -> None:
        if record.id == self.failing_id:
            raise RuntimeError("disk full")
        self.applied.append(record.id)


class RecordingApplier(ChangeApplier):
    def __init__(self):
        self.ids: list[str] = []

    def apply(self, record: ChangeRecord) -> None:
        self.ids.append(record.id)


def upsert(entity_id: str, **attributes: Any) -> ChangeRecord:
    return ChangeRecord(id=entity_id, attributes=attributes)


def removed(entity_id: str, reason: str = "deleted") -> ChangeRecord:
    return ChangeRecord(id=entity_id, kind=ChangeKind.REMOVED, removal_reason=reason)


def next_page(records: list[ChangeRecord], link: str) -> Page:
    return Page(records=records, next_link=link)


def last_page(records: list[ChangeRecord], token: str) -> Page:
    return Page(records=records, delta_cursor=DeltaCursor(value=token))


def make_orchestrator(
    fetcher: ScriptedFetcher,
    applier: ChangeApplier | None = None,
    store: InMemoryCursorStore | None = None,
    sleeps: list[float] | None = None,
) -> tuple[SyncOrchestrator, InMemoryCursorStore, ChangeApplier]:
    store = store if store is not None else InMemoryCursorStore()
    applier = applier if applier is not None else ProjectionApplier()
    recorded = sleeps if sleeps is not None else []
    orchestrator = SyncOrchestrator(
        fetcher=fetcher,
        cursor_store=store,
        applier=applier,
        resource="users",
        select_fields=["displayName", "userPrincipalName"],
        retry_config=NO_WAIT_RETRY,
        polling_config=NO_WAIT_POLLING,
        sleep=recorded.append,
    )
    return orchestrator, store, applier


@st.composite
def paged_collection_strategy(draw):
    """Generate a collection split across 1-6 pages with unique ids."""
    ids = draw(
        st.lists(
            st.text(min_size=1, max_size=12, alphabet="abcdefghijklmnopqrstuvwxyz0123456789"),
            min_size=0,
            max_size=40,
            unique=True,
        )
    )
    page_count = draw(st.integers(min_value=1, max_value=6))
    cuts = sorted(draw(st.lists(st.integers(0, len(ids)), min_size=page_count - 1, max_size=page_count - 1)))
    bounds = [0, *cuts, len(ids)]
    return [ids[bounds[i] : bounds[i + 1]] for i in range(page_count)]


class TestFullTraversal:
    """A full pass from START reaches SETTLED and sees every page in order."""

    @given(pages=paged_collection_strategy())
    @settings(max_examples=50, deadline=None)
    def test_completeness_in_page_order(self, pages: list[list[str]]) -> None:
        """Property: identifiers seen equal the union of all pages, in page order."""
        scripted = []
        for index, ids in enumerate(pages):
            records = [upsert(i, displayName=i) for i in ids]
            if index == len(pages) - 1:
                scripted.append(last_page(records, "D1"))
            else:
                scripted.append(next_page(records, f"https://svc/delta?$skiptoken=T{index + 1}"))

        fetcher = ScriptedFetcher(scripted)
        orchestrator, store, applier = make_orchestrator(fetcher, applier=RecordingApplier())

        report = orchestrator.sync()

        expected = [i for ids in pages for i in ids]
        assert applier.ids == expected
        assert store.get().value == "D1"
        assert report.pages_fetched == len(pages)
        assert report.records_upserted == len(expected)
        assert report.mode is SyncMode.FULL
        assert orchestrator.state is SyncState.SETTLED

        # First request selects fields, the rest follow continuation links
        assert isinstance(fetcher.requests[0], InitialQuery)
        assert fetcher.requests[0].select == ("displayName", "userPrincipalName")
        for index, request in enumerate(fetcher.requests[1:], start=1):
            assert request == ContinuationRequest(next_link=f"https://svc/delta?$skiptoken=T{index}")

    def test_empty_intermediate_page_continues_paging(self) -> None:
        fetcher = ScriptedFetcher(
            [
                next_page([upsert("A")], "T1"),
                next_page([], "T2"),
                last_page([upsert("B")], "D1"),
            ]
        )
        orchestrator, store, applier = make_orchestrator(fetcher)

        orchestrator.sync()

        assert set(applier.snapshot()) == {"A", "B"}
        assert len(fetcher.requests) == 3
        assert store.get().value == "D1"

    def test_incremental_pass_uses_stored_cursor(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([upsert("B", displayName="Bee")], "D2")])
        orchestrator, store, applier = make_orchestrator(fetcher, store=store)

        report = orchestrator.sync()

        assert len(fetcher.requests) == 1
        assert isinstance(fetcher.requests[0], DeltaRequest)
        assert fetcher.requests[0].cursor.value == "D1"
        assert report.used_stored_cursor
        assert report.mode is SyncMode.INCREMENTAL
        assert report.cursor_changed
        assert store.get().value == "D2"


class TestExampleScenario:
    """Pages {A,B}+T1, {C}+D1; poll D1 no-op; poll D1 -> {B'}+D2."""

    def test_scenario(self) -> None:
        fetcher = ScriptedFetcher(
            [
                next_page([upsert("A", displayName="a"), upsert("B", displayName="b")], "T1"),
                last_page([upsert("C", displayName="c")], "D1"),
            ]
        )
        sleeps: list[float] = []
        orchestrator, store, applier = make_orchestrator(fetcher, sleeps=sleeps)

        orchestrator.sync()
        assert set(applier.snapshot()) == {"A", "B", "C"}
        assert store.get().value == "D1"

        fetcher.queue(
            last_page([], "D1"),
            last_page([upsert("B", displayName="b-updated")], "D2"),
        )
        report = orchestrator.poll_for_changes()

        assert report.poll_attempts == 2
        assert report.changes_observed
        assert not report.cancelled
        assert len(sleeps) == 1
        assert applier.get("B") == {"displayName": "b-updated"}
        assert store.get().value == "D2"
        assert orchestrator.state is SyncState.SETTLED


class TestPolling:
    """Polling converts "did anything change" into a retried boolean."""

    @given(noop_passes=st.integers(min_value=0, max_value=8))
    @settings(max_examples=20, deadline=None)
    def test_noop_polls_retry_until_token_changes(self, noop_passes: int) -> None:
        """Property: same token + zero records never terminates the loop."""
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([], "D1") for _ in range(noop_passes)])
        fetcher.queue(last_page([], "D2"))
        sleeps: list[float] = []
        orchestrator, store, _ = make_orchestrator(fetcher, store=store, sleeps=sleeps)

        report = orchestrator.poll_for_changes()

        assert report.poll_attempts == noop_passes + 1
        assert len(sleeps) == noop_passes
        assert report.changes_observed
        assert store.get().value == "D2"

    def test_single_mutation_yields_one_record_and_new_token(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([upsert("NEW", displayName="New User")], "D2")])
        orchestrator, store, applier = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes()

        assert report.total_changes == 1
        assert store.get().value == "D2"
        assert not store.get().same_token(DeltaCursor(value="D1"))
        assert applier.snapshot() == {"NEW": {"displayName": "New User"}}

    def test_records_with_same_token_count_as_change(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([removed("A")], "D1")])
        orchestrator, store, _ = make_orchestrator(
            fetcher, store=store, applier=ProjectionApplier({"A": {"displayName": "a"}})
        )

        report = orchestrator.poll_for_changes()

        assert report.changes_observed
        assert report.records_removed == 1
        assert report.poll_attempts == 1

    def test_backoff_grows_and_is_capped(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([], "D1") for _ in range(5)])
        fetcher.queue(last_page([], "D2"))
        sleeps: list[float] = []
        orchestrator = SyncOrchestrator(
            fetcher=fetcher,
            cursor_store=store,
            applier=ProjectionApplier(),
            polling_config=PollingConfig(
                initial_delay=1.0, multiplier=2.0, max_delay=5.0, timeout_seconds=3600
            ),
            sleep=sleeps.append,
        )

        orchestrator.poll_for_changes()

        assert sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_cancel_event_stops_polling_without_touching_cursor(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        cancel = threading.Event()

        class CancellingFetcher(ScriptedFetcher):
            def fetch(self, request):
                page = super().fetch(request)
                if len(self.requests) == 3:
                    cancel.set()
                return page

        fetcher = CancellingFetcher([last_page([], "D1") for _ in range(10)])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes(cancel_event=cancel)

        assert report.cancelled
        assert not report.changes_observed
        assert report.poll_attempts == 3
        assert store.get().value == "D1"

    def test_cancel_during_transient_retry_returns_cancelled(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        cancel = threading.Event()

        class CancelThenFailFetcher(ScriptedFetcher):
            def fetch(self, request):
                self.requests.append(request)
                cancel.set()
                raise TransportError("connection reset")

        fetcher = CancelThenFailFetcher()
        orchestrator = SyncOrchestrator(
            fetcher=fetcher,
            cursor_store=store,
            applier=ProjectionApplier(),
            retry_config=RetryConfig(max_retries=5, base_delay=5.0),
            polling_config=NO_WAIT_POLLING,
        )

        report = orchestrator.poll_for_changes(cancel_event=cancel, timeout=60)

        assert report.cancelled
        assert not report.changes_observed
        assert len(fetcher.requests) == 1
        assert orchestrator.state is SyncState.SETTLED
        assert store.get().value == "D1"

    def test_cancel_during_resync_keeps_stored_cursor(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        cancel = threading.Event()

        class ExpireThenCancelFetcher(ScriptedFetcher):
            def fetch(self, request):
                if len(self.requests) == 1:
                    cancel.set()
                return super().fetch(request)

        fetcher = ExpireThenCancelFetcher([RemoteError(410), TransportError("connection reset")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes(cancel_event=cancel)

        assert report.cancelled
        assert report.forced_resync
        assert len(fetcher.requests) == 2
        assert store.get().value == "D1"

    def test_preset_cancel_event_issues_no_request(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        cancel = threading.Event()
        cancel.set()
        fetcher = ScriptedFetcher()
        orchestrator, _, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes(cancel_event=cancel)

        assert report.cancelled
        assert report.poll_attempts == 0
        assert fetcher.requests == []

    def test_deadline_stops_polling(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([], "D1")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes(timeout=0)

        assert report.cancelled
        assert report.poll_attempts == 1
        assert store.get().value == "D1"

    def test_poll_without_cursor_takes_baseline_first(self) -> None:
        fetcher = ScriptedFetcher(
            [
                last_page([upsert("A")], "D1"),
                last_page([], "D1"),
                last_page([upsert("B")], "D2"),
            ]
        )
        orchestrator, store, applier = make_orchestrator(fetcher)

        report = orchestrator.poll_for_changes()

        assert isinstance(fetcher.requests[0], InitialQuery)
        assert not report.used_stored_cursor
        assert report.poll_attempts == 2
        assert set(applier.snapshot()) == {"A", "B"}
        assert store.get().value == "D2"


class TestCursorExpiry:
    """An expired cursor is discarded and the collection re-enumerated."""

    @pytest.mark.parametrize(
        "error",
        [
            RemoteError(410, code="resyncRequired"),
            RemoteError(400, code="syncStateNotFound"),
        ],
    )
    def test_expired_cursor_forces_full_resync(self, error: RemoteError) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="OLD"))
        fetcher = ScriptedFetcher(
            [
                error,
                next_page([upsert("A")], "T1"),
                last_page([upsert("B")], "D9"),
            ]
        )
        orchestrator, store, applier = make_orchestrator(fetcher, store=store)

        report = orchestrator.sync()

        assert report.forced_resync
        assert report.mode is SyncMode.FULL
        assert isinstance(fetcher.requests[0], DeltaRequest)
        assert isinstance(fetcher.requests[1], InitialQuery)
        assert set(applier.snapshot()) == {"A", "B"}
        assert store.get().value == "D9"

    def test_expired_cursor_is_never_retried(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="OLD"))
        fetcher = ScriptedFetcher([RemoteError(410), last_page([], "D1")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        orchestrator.sync()

        delta_requests = [r for r in fetcher.requests if isinstance(r, DeltaRequest)]
        assert len(delta_requests) == 1

    def test_second_expiry_is_surfaced(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="OLD"))
        fetcher = ScriptedFetcher([RemoteError(410), RemoteError(410)])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        with pytest.raises(RemoteError):
            orchestrator.sync()

        assert store.get() is None

    def test_expiry_while_polling_resyncs(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([RemoteError(410), last_page([upsert("A")], "D5")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes()

        assert report.forced_resync
        assert report.changes_observed
        assert store.get().value == "D5"

    def test_empty_resync_while_polling_restores_cursor(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([RemoteError(410), last_page([], "D1")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        report = orchestrator.poll_for_changes()

        assert report.changes_observed
        assert report.poll_attempts == 1
        assert store.get().value == "D1"


class TestErrorHandling:
    """Transient errors are retried, everything else is surfaced."""

    @pytest.mark.parametrize(
        "error",
        [TransportError("connection reset"), RemoteError(429, retry_after=0), RemoteError(503)],
    )
    def test_transient_errors_are_retried(self, error: Exception) -> None:
        fetcher = ScriptedFetcher([error, last_page([upsert("A")], "D1")])
        orchestrator, store, _ = make_orchestrator(fetcher)

        orchestrator.sync()

        assert len(fetcher.requests) == 2
        assert store.get().value == "D1"

    def test_transient_errors_surface_when_exhausted(self) -> None:
        fetcher = ScriptedFetcher([TransportError("down")] * (NO_WAIT_RETRY.max_retries + 1))
        orchestrator, store, _ = make_orchestrator(fetcher)

        with pytest.raises(TransportError):
            orchestrator.sync()

        assert len(fetcher.requests) == NO_WAIT_RETRY.max_retries + 1
        assert store.get() is None

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_fatal_remote_errors_are_not_retried(self, status: int) -> None:
        fetcher = ScriptedFetcher([RemoteError(status)])
        orchestrator, store, _ = make_orchestrator(fetcher)

        with pytest.raises(RemoteError) as exc_info:
            orchestrator.sync()

        assert exc_info.value.status == status
        assert len(fetcher.requests) == 1

    def test_protocol_errors_are_not_retried(self) -> None:
        fetcher = ScriptedFetcher([ProtocolError("neither link")])
        orchestrator, _, _ = make_orchestrator(fetcher)

        with pytest.raises(ProtocolError):
            orchestrator.sync()

        assert len(fetcher.requests) == 1

    def test_sink_failure_keeps_previous_cursor(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher(
            [
                next_page([upsert("A")], "T1"),
                last_page([upsert("B"), upsert("C")], "D2"),
            ]
        )
        applier = FailingApplier("B")
        orchestrator, store, _ = make_orchestrator(fetcher, store=store, applier=applier)

        with pytest.raises(ChangeApplyError) as exc_info:
            orchestrator.sync()

        assert exc_info.value.record_id == "B"
        assert applier.applied == ["A"]
        assert store.get().value == "D1"

    def test_discard_cursor_forces_full_snapshot(self) -> None:
        store = InMemoryCursorStore(DeltaCursor(value="D1"))
        fetcher = ScriptedFetcher([last_page([upsert("A")], "D2")])
        orchestrator, store, _ = make_orchestrator(fetcher, store=store)

        orchestrator.discard_cursor()
        assert orchestrator.state is SyncState.START

        report = orchestrator.sync()

        assert isinstance(fetcher.requests[0], InitialQuery)
        assert report.mode is SyncMode.FULL
        assert store.get().value == "D2"


def test_independent_orchestrators_share_no_state() -> None:
    users = ScriptedFetcher([last_page([upsert("u1")], "DU")])
    groups = ScriptedFetcher([last_page([upsert("g1")], "DG")])
    users_orchestrator, users_store, users_applier = make_orchestrator(users)
    groups_orchestrator, groups_store, groups_applier = make_orchestrator(groups)

    threads = [
        threading.Thread(target=users_orchestrator.sync),
        threading.Thread(target=groups_orchestrator.sync),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert users_store.get().value == "DU"
    assert groups_store.get().value == "DG"
    assert set(users_applier.snapshot()) == {"u1"}
    assert set(groups_applier.snapshot()) == {"g1"}

    log.info("independent_orchestrators_verified")
