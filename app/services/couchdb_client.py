"""
HealthBridge Core - CouchDB Client
HTTP access to the document store change feed
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from app.config import settings

logger = logging.getLogger(__name__)


class CouchDbError(RuntimeError):
    """Document store request failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _is_retryable(error: BaseException) -> bool:
    """Network failures and 5xx responses are retried, 4xx are not"""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return False


class CouchDbClient:
    """Thin synchronous client for one CouchDB database"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = (base_url or settings.couchdb_url).rstrip("/")
        self.database = database or settings.couchdb_database
        username = username if username is not None else settings.couchdb_username
        password = password if password is not None else settings.couchdb_password

        self.client = httpx.Client(
            base_url=self.base_url,
            auth=(username, password) if username else None,
            timeout=timeout or settings.couchdb_timeout,
            headers={"Accept": "application/json", "User-Agent": "HealthBridgeSync/1.0"},
            transport=transport
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "CouchDbClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # Transport
    # =========================================================================

    @retry(
        stop=stop_after_attempt(settings.couchdb_max_retries),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True
    )
    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Send one request with retry logic; raises on non-2xx"""
        response = self.client.request(method, f"/{self.database}{path}", params=params)
        response.raise_for_status()
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return self._request("GET", path, params=params).json()
        except httpx.HTTPStatusError as e:
            logger.error(f"CouchDB request {path or '/'} failed: HTTP {e.response.status_code}")
            raise CouchDbError(f"CouchDB returned HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.TransportError as e:
            logger.error(f"CouchDB unreachable at {self.base_url}: {e}")
            raise CouchDbError(f"CouchDB unreachable: {e}") from e

    # =========================================================================
    # Database
    # =========================================================================

    def database_exists(self) -> bool:
        try:
            self._get_json("")
            return True
        except CouchDbError as e:
            if e.status_code == 404:
                return False
            raise

    def get_database_info(self) -> Dict[str, Any]:
        return self._get_json("")

    def get_document(self, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._get_json(f"/{doc_id}")
        except CouchDbError as e:
            if e.status_code == 404:
                return None
            raise

    def get_changes(self, since: Optional[str] = None, limit: Optional[int] = None, include_docs: bool = True) -> Dict[str, Any]:
        """
        Fetch one page of the change feed

        Args:
            since: Sequence to resume after ("0" or None for the beginning)
            limit: Maximum number of rows
            include_docs: Embed full documents in each row

        Returns:
            Parsed `_changes` response with `results` and `last_seq`
        """
        params: Dict[str, Any] = {"include_docs": "true" if include_docs else "false"}
        if since is not None:
            params["since"] = since
        if limit is not None:
            params["limit"] = limit

        changes = self._get_json("/_changes", params=params)
        changes.setdefault("results", [])
        logger.debug(f"Fetched {len(changes['results'])} changes since {since}")
        return changes
