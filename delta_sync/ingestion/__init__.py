"""Delta page retrieval from the remote service."""

from delta_sync.ingestion.page_fetcher import PageFetcher

__all__ = ["PageFetcher"]
