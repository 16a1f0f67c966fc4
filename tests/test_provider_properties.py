"""Tests for the provider factories that wire sync components from config."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from delta_sync.ingestion.page_fetcher import PageFetcher
from delta_sync.models.config import AppConfig, CursorStoreConfig, GraphConfig, RetryConfig
from delta_sync.models.delta import InitialQuery
from delta_sync.providers import get_cursor_store, get_orchestrator, get_page_fetcher, get_session
from delta_sync.sync.change_applier import ProjectionApplier
from delta_sync.sync.cursor_store import FileCursorStore, InMemoryCursorStore
from delta_sync.sync.models import SyncState


def test_session_carries_bearer_token():
    session = get_session(GraphConfig(auth_token="abc"))

    assert isinstance(session, requests.Session)
    assert session.headers["Authorization"] == "Bearer abc"
    assert session.headers["Accept"] == "application/json"


def test_session_without_token_is_unauthenticated():
    session = get_session(GraphConfig())

    assert "Authorization" not in session.headers


def test_page_fetcher_uses_configured_endpoint():
    session = MagicMock()
    response = MagicMock(ok=True, status_code=200)
    response.json.return_value = {"value": [], "@odata.deltaLink": "D"}
    session.get.return_value = response

    fetcher = get_page_fetcher(
        GraphConfig(resource="groups", request_timeout=5, max_page_size=50), session
    )

    assert isinstance(fetcher, PageFetcher)
    fetcher.fetch(InitialQuery(select=("displayName",)))

    url = session.get.call_args.args[0]
    kwargs = session.get.call_args.kwargs
    assert url == "https://graph.microsoft.com/v1.0/groups/delta"
    assert kwargs["timeout"] == 5
    assert kwargs["headers"]["Prefer"] == "odata.maxpagesize=50"


def test_memory_cursor_store_selected():
    assert isinstance(get_cursor_store(CursorStoreConfig(type="memory")), InMemoryCursorStore)


def test_file_cursor_store_selected(tmp_path: Path):
    store = get_cursor_store(CursorStoreConfig(type="file", path=str(tmp_path / "c.json")))

    assert isinstance(store, FileCursorStore)
    assert store.path == tmp_path / "c.json"


def test_unknown_cursor_store_type_raises():
    config = CursorStoreConfig.model_construct(type="redis", path=None)

    with pytest.raises(ValueError, match="redis"):
        get_cursor_store(config)


def test_orchestrator_is_wired_from_config():
    config = AppConfig(
        graph=GraphConfig(resource="users", select_fields=["mail"]),
        retry=RetryConfig(max_retries=0),
    )
    session = MagicMock()
    response = MagicMock(ok=True, status_code=200)
    response.json.return_value = {
        "value": [{"id": "1", "mail": "a@x"}],
        "@odata.deltaLink": "https://graph.microsoft.com/v1.0/users/delta?$deltatoken=D1",
    }
    session.get.return_value = response
    store = InMemoryCursorStore()
    applier = ProjectionApplier()

    orchestrator = get_orchestrator(config, applier, session=session, cursor_store=store)
    report = orchestrator.sync()

    assert orchestrator.resource == "users"
    assert orchestrator.state is SyncState.SETTLED
    assert report.records_upserted == 1
    assert applier.get("1") == {"mail": "a@x"}
    assert store.get().value.endswith("$deltatoken=D1")
    assert session.get.call_args.kwargs["params"] == {"$select": "mail"}
