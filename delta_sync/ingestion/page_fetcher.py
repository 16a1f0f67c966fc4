"""HTTP page fetcher for delta query endpoints."""

from typing import Any

import requests
import structlog
from requests.exceptions import RequestException

from delta_sync.exceptions import ProtocolError, RemoteError, TransportError
from delta_sync.models.delta import (
    ChangeKind,
    ChangeRecord,
    ContinuationRequest,
    DeltaCursor,
    DeltaRequest,
    InitialQuery,
    Page,
    PageRequest,
)

log = structlog.stdlib.get_logger()

NEXT_LINK_KEY = "@odata.nextLink"
DELTA_LINK_KEY = "@odata.deltaLink"
REMOVED_KEY = "@removed"


class PageFetcher:
    """Fetches one delta page per call over an authenticated requests session.

    The session is owned by the caller, who is responsible for putting the
    bearer token on it.
    """

    def __init__(
        self,
        session: requests.Session,
        delta_url: str,
        timeout: float = 30.0,
        max_page_size: int | None = None,
    ):
        """
        Initialize page fetcher.

        Args:
            session: Authenticated HTTP session
            delta_url: Delta endpoint of the collection, e.g. .../v1.0/users/delta
            timeout: Per-request timeout in seconds
            max_page_size: Optional page size preference sent to the service
        """
        self._session = session
        self._delta_url = delta_url
        self._timeout = timeout
        self._max_page_size = max_page_size
        log.info("page_fetcher_initialized", delta_url=delta_url, max_page_size=max_page_size)

    def fetch(self, request: PageRequest) -> Page:
        """
        Fetch and parse a single page.

        Args:
            request: Initial query, continuation or delta request

        Returns:
            Parsed Page

        Raises:
            TransportError: If no HTTP response was received
            RemoteError: If the service answered with a non-2xx status
            ProtocolError: If the response is not a well-formed delta page
        """
        url, params = self._build_request(request)
        headers = {"Accept": "application/json"}
        if self._max_page_size is not None:
            headers["Prefer"] = f"odata.maxpagesize={self._max_page_size}"

        log.debug("fetching_page", request_type=type(request).__name__, url=url)

        try:
            response = self._session.get(
                url, params=params, headers=headers, timeout=self._timeout
            )
        except RequestException as e:
            log.warning("page_request_failed", url=url, error=str(e))
            raise TransportError(f"Request to {url} failed: {e}") from e

        if not response.ok:
            raise self._remote_error(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError(f"Response from {url} is not JSON: {e}") from e

        page = self.parse_page(payload)
        log.debug(
            "page_fetched",
            record_count=len(page.records),
            terminal=page.is_terminal,
        )
        return page

    def _build_request(self, request: PageRequest) -> tuple[str, dict[str, str] | None]:
        """Resolve a request into a URL and query parameters.

        Links issued by the service are absolute URLs and are followed verbatim.
        Bare tokens are sent as query parameters against the delta endpoint.
        """
        if isinstance(request, InitialQuery):
            params = {"$select": ",".join(request.select)} if request.select else None
            return self._delta_url, params
        if isinstance(request, ContinuationRequest):
            return self._link_or_token(request.next_link, "$skiptoken")
        if isinstance(request, DeltaRequest):
            return self._link_or_token(request.cursor.value, "$deltatoken")
        raise TypeError(f"Unsupported page request: {request!r}")

    def _link_or_token(self, value: str, param: str) -> tuple[str, dict[str, str] | None]:
        if value.startswith(("https://", "http://")):
            return value, None
        return self._delta_url, {param: value}

    @staticmethod
    def parse_page(payload: Any) -> Page:
        """
        Convert a decoded response body into a Page.

        Args:
            payload: Decoded JSON body

        Returns:
            Page with records in response order

        Raises:
            ProtocolError: If the body violates the page contract
        """
        if not isinstance(payload, dict):
            raise ProtocolError("Delta response body must be a JSON object")

        items = payload.get("value", [])
        if not isinstance(items, list):
            raise ProtocolError("Delta response 'value' must be a list")

        next_link = payload.get(NEXT_LINK_KEY)
        delta_link = payload.get(DELTA_LINK_KEY)
        for key, link in ((NEXT_LINK_KEY, next_link), (DELTA_LINK_KEY, delta_link)):
            if link is not None and not isinstance(link, str):
                raise ProtocolError(
                    f"Delta response '{key}' must be a string, got {type(link).__name__}"
                )
        if next_link and delta_link:
            raise ProtocolError("Delta response carries both a next link and a delta link")
        if not next_link and not delta_link:
            raise ProtocolError("Delta response carries neither a next link nor a delta link")

        records = [PageFetcher._to_change_record(item) for item in items]

        return Page(
            records=records,
            next_link=next_link or None,
            delta_cursor=DeltaCursor(value=delta_link) if delta_link else None,
        )

    @staticmethod
    def _to_change_record(item: Any) -> ChangeRecord:
        if not isinstance(item, dict):
            raise ProtocolError(f"Delta entity must be a JSON object, got {type(item).__name__}")

        entity_id = item.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            raise ProtocolError("Delta entity is missing its 'id'")

        attributes = {
            key: value
            for key, value in item.items()
            if key != "id" and not key.startswith("@")
        }

        if REMOVED_KEY not in item:
            return ChangeRecord(id=entity_id, attributes=attributes)

        marker = item[REMOVED_KEY]
        if not isinstance(marker, dict):
            raise ProtocolError(f"Ambiguous tombstone marker for entity {entity_id}: {marker!r}")

        reason = marker.get("reason")
        if reason is not None and not isinstance(reason, str):
            raise ProtocolError(f"Removal reason for entity {entity_id} must be a string: {reason!r}")

        return ChangeRecord(
            id=entity_id,
            attributes=attributes,
            kind=ChangeKind.REMOVED,
            removal_reason=reason,
        )

    @staticmethod
    def _remote_error(response: requests.Response) -> RemoteError:
        body: Any
        code = None
        try:
            body = response.json()
        except ValueError:
            body = response.text

        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            raw_code = body["error"].get("code")
            code = raw_code if isinstance(raw_code, str) else None

        retry_after = None
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                log.debug("unparsable_retry_after", value=header)

        log.warning(
            "remote_error_response",
            status=response.status_code,
            code=code,
            retry_after=retry_after,
        )
        return RemoteError(response.status_code, body=body, code=code, retry_after=retry_after)
