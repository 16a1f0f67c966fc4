"""Centralized provider module for building sync components from configuration.

This module provides factory functions for the HTTP session, page fetcher,
cursor store and orchestrator. Swap implementations here without changing
the rest of the code.

Default implementations:
- Session: requests.Session with a static bearer token when one is configured
- Cursor store: in-memory, or a JSON file when cursor_store.type is "file"
"""

import requests
import structlog

from delta_sync.ingestion.page_fetcher import PageFetcher
from delta_sync.models.config import AppConfig, CursorStoreConfig, GraphConfig
from delta_sync.sync.change_applier import ChangeApplier
from delta_sync.sync.cursor_store import DeltaCursorStore, FileCursorStore, InMemoryCursorStore
from delta_sync.sync.sync_orchestrator import SyncOrchestrator

log = structlog.stdlib.get_logger()


def get_session(graph_config: GraphConfig) -> requests.Session:
    """Get an HTTP session for the delta endpoint.

    Token acquisition is out of scope: a pre-acquired token from configuration
    is attached as a bearer header, otherwise the session is returned bare
    for the caller to authenticate.

    Args:
        graph_config: Endpoint configuration

    Returns:
        requests.Session
    """
    session = requests.Session()
    session.headers.update({"Accept": "application/json"})
    if graph_config.auth_token:
        session.headers["Authorization"] = f"Bearer {graph_config.auth_token}"

    log.info(
        "session_initialized",
        authenticated=graph_config.auth_token is not None,
    )
    return session


def get_page_fetcher(
    graph_config: GraphConfig, session: requests.Session | None = None
) -> PageFetcher:
    """Get a page fetcher bound to the configured collection's delta endpoint."""
    return PageFetcher(
        session=session or get_session(graph_config),
        delta_url=graph_config.delta_url,
        timeout=graph_config.request_timeout,
        max_page_size=graph_config.max_page_size,
    )


def get_cursor_store(store_config: CursorStoreConfig) -> DeltaCursorStore:
    """Get the configured cursor store.

    Args:
        store_config: Cursor store configuration

    Returns:
        DeltaCursorStore instance

    Raises:
        ValueError: If the store type is unknown
    """
    if store_config.type == "memory":
        log.info("cursor_store_selected", type="memory")
        return InMemoryCursorStore()

    if store_config.type == "file":
        log.info("cursor_store_selected", type="file", path=store_config.path)
        return FileCursorStore(store_config.path)

    raise ValueError(f"Unknown cursor store type: {store_config.type}")


def get_orchestrator(
    config: AppConfig,
    applier: ChangeApplier,
    session: requests.Session | None = None,
    cursor_store: DeltaCursorStore | None = None,
) -> SyncOrchestrator:
    """Build a SyncOrchestrator for the configured collection.

    Args:
        config: Application configuration
        applier: Sink for change records
        session: Optional pre-authenticated session (built from config if None)
        cursor_store: Optional cursor store (built from config if None)

    Returns:
        SyncOrchestrator
    """
    return SyncOrchestrator(
        fetcher=get_page_fetcher(config.graph, session),
        cursor_store=cursor_store or get_cursor_store(config.cursor_store),
        applier=applier,
        resource=config.graph.resource,
        select_fields=config.graph.select_fields,
        retry_config=config.retry,
        polling_config=config.polling,
    )
