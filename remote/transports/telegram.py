"""Telegram Bot API blob store: chunks are sent as documents to a chat."""

import logging
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from common.constants import DEFAULT_TELEGRAM_API_URL, TELEGRAM_MAX_CHUNK_SIZE_BYTES
from common.exceptions import FatalTransportError, RetriableTransportError, TransportError
from remote.transports.base import BlobTransport

logger = logging.getLogger(__name__)


class TelegramTransport(BlobTransport):
    """
    Uploads chunks with sendDocument and downloads them with getFile.

    The returned document file_id is the blob id. Error descriptions the
    Bot API uses for transient conditions are matched case-insensitively.
    """

    DOWNLOAD_ERRORS: Tuple[str, ...] = (
        "wrong file_id or the file is temporarily unavailable",
    )
    UPLOAD_ERRORS: Tuple[str, ...] = (
        "too many requests: retry after ",
        "internal server error during file upload",
    )
    COMMON_ERRORS: Tuple[str, ...] = (
        "gateway timeout",
    )

    def __init__(
        self,
        token: str,
        chat_id: Union[int, str],
        api_url: str = DEFAULT_TELEGRAM_API_URL,
        timeout_seconds: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize transport with a lazily created HTTP client.

        Args:
            token: Bot token ("<id>:<secret>")
            chat_id: Chat the documents are sent to
            api_url: Bot API base URL
            timeout_seconds: Per-request timeout
            client: Pre-built client (tests inject one with a MockTransport)
        """
        self._token = token
        self._chat_id = chat_id
        self._api_url = api_url.rstrip('/')
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure the HTTP client is created."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
            logger.info(f"Created HTTP client for {self._api_url}")
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _method_url(self, method: str) -> str:
        return f"{self._api_url}/bot{self._token}/{method}"

    def _file_url(self, file_path: str) -> str:
        return f"{self._api_url}/file/bot{self._token}/{file_path}"

    async def _send(
        self,
        method: str,
        url: str,
        known_errors: Tuple[str, ...],
        **kwargs
    ) -> httpx.Response:
        """
        Perform one HTTP request and classify any failure.

        Raises:
            RetriableTransportError: Connectivity problems, timeouts, 429, 5xx,
                or a known transient API description
            FatalTransportError: Any other unsuccessful response
        """
        client = self._ensure_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RetriableTransportError(f"{type(e).__name__}: {e}") from e

        if response.is_success:
            return response
        raise self._classify(response, known_errors)

    def _classify(self, response: httpx.Response, known_errors: Tuple[str, ...]) -> TransportError:
        description = response.reason_phrase or ""
        retry_after = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            description = body.get("description") or description
            parameters = body.get("parameters") or {}
            retry_after = parameters.get("retry_after")

        message = f"Telegram API returned {response.status_code}: {description}"
        if response.status_code == 429 or response.status_code >= 500:
            return RetriableTransportError(message, retry_after=retry_after)

        lowered = description.lower()
        if any(error in lowered for error in known_errors + self.COMMON_ERRORS):
            return RetriableTransportError(message, retry_after=retry_after)
        return FatalTransportError(message)

    @staticmethod
    def _result(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise FatalTransportError(f"Malformed Bot API response: {e}") from e
        if not isinstance(body, dict) or not body.get("ok"):
            raise FatalTransportError(f"Bot API request failed: {body!r}")
        return body.get("result") or {}

    async def upload_blob(self, name: str, payload: bytes) -> str:
        if len(payload) > TELEGRAM_MAX_CHUNK_SIZE_BYTES:
            raise FatalTransportError(
                f"Blob {name} is {len(payload)} bytes, limit is {TELEGRAM_MAX_CHUNK_SIZE_BYTES}"
            )
        response = await self._send(
            "POST",
            self._method_url("sendDocument"),
            self.UPLOAD_ERRORS,
            data={"chat_id": str(self._chat_id)},
            files={"document": (name, payload, "application/octet-stream")},
        )
        result = self._result(response)
        try:
            return result["document"]["file_id"]
        except (KeyError, TypeError) as e:
            raise FatalTransportError(f"sendDocument response has no document file_id: {result!r}") from e

    async def download_blob(self, blob_id: str) -> bytes:
        response = await self._send(
            "GET",
            self._method_url("getFile"),
            self.DOWNLOAD_ERRORS,
            params={"file_id": blob_id},
        )
        file_path = self._result(response).get("file_path")
        if not file_path:
            raise FatalTransportError(f"getFile returned no file_path for {blob_id}")

        response = await self._send("GET", self._file_url(file_path), self.DOWNLOAD_ERRORS)
        return response.content

    def max_blob_size(self) -> int:
        return TELEGRAM_MAX_CHUNK_SIZE_BYTES
