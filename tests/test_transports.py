"""Unit tests for the Telegram and local directory blob transports."""

import httpx
import pytest

from common.constants import TELEGRAM_MAX_CHUNK_SIZE_BYTES
from common.exceptions import FatalTransportError, RetriableTransportError
from remote.transports import LocalDirectoryTransport, TelegramTransport

TOKEN = '123456:secret-token'
API = 'https://api.test'


def make_telegram(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramTransport(TOKEN, chat_id=-100, api_url=API, client=client)


def error_response(status, description, retry_after=None):
    body = {'ok': False, 'error_code': status, 'description': description}
    if retry_after is not None:
        body['parameters'] = {'retry_after': retry_after}
    return httpx.Response(status, json=body)


class TestTelegramUpload:
    """Test sendDocument uploads."""

    @pytest.mark.asyncio
    async def test_upload_returns_file_id(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'ok': True, 'result': {'document': {'file_id': 'FILE-1'}}})

        transport = make_telegram(handler)

        assert await transport.upload_blob('chunk-1', b"payload") == 'FILE-1'
        assert seen[0].method == 'POST'
        assert seen[0].url.path == f'/bot{TOKEN}/sendDocument'
        assert b'chunk-1' in seen[0].content
        assert b'payload' in seen[0].content

    @pytest.mark.asyncio
    async def test_rate_limit_is_retriable_with_hint(self):
        transport = make_telegram(
            lambda request: error_response(429, 'Too Many Requests: retry after 3', retry_after=3)
        )

        with pytest.raises(RetriableTransportError) as exc_info:
            await transport.upload_blob('chunk-1', b"x")
        assert exc_info.value.retry_after == 3

    @pytest.mark.asyncio
    async def test_server_error_is_retriable(self):
        transport = make_telegram(lambda request: error_response(502, 'Bad Gateway'))

        with pytest.raises(RetriableTransportError):
            await transport.upload_blob('chunk-1', b"x")

    @pytest.mark.asyncio
    async def test_unknown_client_error_is_fatal(self):
        transport = make_telegram(lambda request: error_response(400, 'Bad Request: chat not found'))

        with pytest.raises(FatalTransportError):
            await transport.upload_blob('chunk-1', b"x")

    @pytest.mark.asyncio
    async def test_connection_error_is_retriable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_telegram(handler)

        with pytest.raises(RetriableTransportError):
            await transport.upload_blob('chunk-1', b"x")

    @pytest.mark.asyncio
    async def test_not_ok_body_is_fatal(self):
        transport = make_telegram(lambda request: httpx.Response(200, json={'ok': False}))

        with pytest.raises(FatalTransportError):
            await transport.upload_blob('chunk-1', b"x")

    @pytest.mark.asyncio
    async def test_oversized_upload_rejected(self):
        transport = make_telegram(lambda request: httpx.Response(500))

        with pytest.raises(FatalTransportError):
            await transport.upload_blob('chunk-1', bytes(TELEGRAM_MAX_CHUNK_SIZE_BYTES + 1))

    def test_max_blob_size_is_fixed(self):
        assert make_telegram(lambda request: httpx.Response(200)).max_blob_size() == 20 * 1024 * 1024


class TestTelegramDownload:
    """Test getFile downloads."""

    @pytest.mark.asyncio
    async def test_download_resolves_file_path(self):
        def handler(request):
            if request.url.path == f'/bot{TOKEN}/getFile':
                assert request.url.params['file_id'] == 'FILE-1'
                return httpx.Response(200, json={'ok': True, 'result': {'file_path': 'documents/file_7'}})
            if request.url.path == f'/file/bot{TOKEN}/documents/file_7':
                return httpx.Response(200, content=b"chunk bytes")
            return httpx.Response(404)

        transport = make_telegram(handler)

        assert await transport.download_blob('FILE-1') == b"chunk bytes"

    @pytest.mark.asyncio
    async def test_temporarily_unavailable_is_retriable(self):
        transport = make_telegram(lambda request: error_response(
            400, 'Bad Request: wrong file_id or the file is temporarily unavailable'
        ))

        with pytest.raises(RetriableTransportError):
            await transport.download_blob('FILE-1')

    @pytest.mark.asyncio
    async def test_upload_only_error_is_fatal_for_download(self):
        transport = make_telegram(lambda request: error_response(
            400, 'Bad Request: internal server error during file upload'
        ))

        with pytest.raises(FatalTransportError):
            await transport.download_blob('FILE-1')

    @pytest.mark.asyncio
    async def test_gateway_timeout_description_is_retriable(self):
        transport = make_telegram(lambda request: error_response(400, 'Gateway Timeout'))

        with pytest.raises(RetriableTransportError):
            await transport.download_blob('FILE-1')

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        transport = TelegramTransport(TOKEN, chat_id=1, api_url=API, client=client)

        await transport.close()

        assert not client.is_closed
        await client.aclose()


class TestLocalDirectoryTransport:
    """Test file-backed blobs."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        transport = LocalDirectoryTransport(tmp_path / 'blobs', max_blob_size=16)

        blob_id = await transport.upload_blob('chunk-1', b"contents")

        assert (tmp_path / 'blobs' / f'{blob_id}.chk').exists()
        assert await transport.download_blob(blob_id) == b"contents"
        assert transport.list_blobs() == [blob_id]

    @pytest.mark.asyncio
    async def test_reupload_gets_new_id(self, tmp_path):
        transport = LocalDirectoryTransport(tmp_path, max_blob_size=16)

        first = await transport.upload_blob('chunk-1', b"v1")
        second = await transport.upload_blob('chunk-1', b"v2")

        assert first != second
        assert await transport.download_blob(first) == b"v1"

    @pytest.mark.asyncio
    async def test_missing_blob_is_fatal(self, tmp_path):
        transport = LocalDirectoryTransport(tmp_path, max_blob_size=16)

        with pytest.raises(FatalTransportError):
            await transport.download_blob('0' * 32)

    @pytest.mark.asyncio
    async def test_oversized_blob_rejected(self, tmp_path):
        transport = LocalDirectoryTransport(tmp_path, max_blob_size=4)

        with pytest.raises(FatalTransportError):
            await transport.upload_blob('chunk-1', b"too large")

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, tmp_path):
        transport = LocalDirectoryTransport(tmp_path, max_blob_size=16)

        with pytest.raises(FatalTransportError):
            await transport.download_blob('../etc/passwd')

    def test_list_blobs_without_directory(self, tmp_path):
        assert LocalDirectoryTransport(tmp_path / 'absent', max_blob_size=16).list_blobs() == []
