"""Upload capability backed by the collector's HTTP API.

Each file is written with ``PUT {api_base_url}/raw/{path}`` and a bearer
token.  Any 2xx response confirms delivery; anything else, or a transport
failure, raises UploadError for the retry layer to judge.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from src.config import Settings, get_settings
from src.healthsync.base import Uploader
from src.healthsync.errors import UploadError

logger = logging.getLogger("healthsync.services.api_upload")


class ApiUploader(Uploader):
    """PUT raw files to the backend.

    Args:
        base_url:    API root, e.g. ``https://my.example.com``.
        token:       Bearer token; omitted from requests when empty.
        http_client: Optional shared client (tests pass one with a MockTransport).
        timeout:     Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ApiUploader":
        s = settings or get_settings()
        return cls(s.api_base_url, s.api_token, timeout=s.upload_timeout_seconds)

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/raw/{quote(path.lstrip('/'), safe='/')}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def upload_file(self, path: str, data: bytes) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            response = await self._get_client().put(self.url_for(path), content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise UploadError(path, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise UploadError(
                path, f"HTTP {response.status_code}", status_code=response.status_code
            )
        logger.debug("Uploaded %s (%d bytes)", path, len(data))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
