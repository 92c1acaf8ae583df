"""Tests for the local and remote storage backends."""

import json

import httpx
import pytest

from surwhen.config import Settings
from surwhen.errors import BlobNotFound, StorageError
from surwhen.storage import (
    BlobStorageBackend,
    LocalStorageBackend,
    backoff_delay,
    select_storage_backend,
)


API = "https://blob.test"
CDN_URL = "https://cdn.test/surveys.json"


class FakeBlobStore:
    """MockTransport handler emulating the blob API, with scripted failures."""

    def __init__(self, content=None, head_failures=(), fetch_failures=(), put_failures=()):
        self.content = content
        self.head_failures = list(head_failures)
        self.fetch_failures = list(fetch_failures)
        self.put_failures = list(put_failures)
        self.requests = []

    def _fail(self, failure, request):
        if isinstance(failure, int):
            return httpx.Response(failure, json={"error": {"code": "server_error"}})
        raise failure("simulated", request=request)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, str(request.url)))
        if request.method == "GET" and request.url.host == "blob.test":
            if self.head_failures:
                return self._fail(self.head_failures.pop(0), request)
            if self.content is None:
                return httpx.Response(404, json={"error": {"code": "not_found"}})
            return httpx.Response(200, json={"url": CDN_URL, "pathname": "surveys.json"})
        if request.method == "GET":
            if self.fetch_failures:
                return self._fail(self.fetch_failures.pop(0), request)
            return httpx.Response(200, text=self.content)
        if request.method == "PUT":
            if self.put_failures:
                return self._fail(self.put_failures.pop(0), request)
            self.content = request.content.decode("utf-8")
            return httpx.Response(200, json={"url": CDN_URL})
        return httpx.Response(405)

    def count(self, method):
        return sum(1 for m, _ in self.requests if m == method)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def blob_backend(store, sleep=None):
    return BlobStorageBackend(
        "token-123",
        api_url=API,
        transport=httpx.MockTransport(store),
        sleep=sleep or SleepRecorder(),
    )


@pytest.mark.anyio
class TestLocalStorageBackend:
    async def test_write_then_read(self, tmp_path):
        backend = LocalStorageBackend(tmp_path)
        await backend.write("surveys.json", '{"a": 1}')
        assert await backend.read("surveys.json") == '{"a": 1}'
        assert (tmp_path / "surveys.json").read_text(encoding="utf-8") == '{"a": 1}'

    async def test_write_overwrites_and_leaves_no_temp_files(self, tmp_path):
        backend = LocalStorageBackend(tmp_path)
        await backend.write("surveys.json", "one")
        await backend.write("surveys.json", "two")
        assert await backend.read("surveys.json") == "two"
        assert [p.name for p in tmp_path.iterdir()] == ["surveys.json"]

    async def test_write_creates_missing_directory(self, tmp_path):
        backend = LocalStorageBackend(tmp_path / "nested" / "dir")
        await backend.write("surveys.json", "x")
        assert await backend.exists("surveys.json")

    async def test_missing_key(self, tmp_path):
        backend = LocalStorageBackend(tmp_path)
        assert not await backend.exists("surveys.json")
        with pytest.raises(BlobNotFound):
            await backend.read("surveys.json")

    async def test_unreadable_path_is_storage_error(self, tmp_path):
        (tmp_path / "surveys.json").mkdir()
        backend = LocalStorageBackend(tmp_path)
        with pytest.raises(StorageError):
            await backend.read("surveys.json")


@pytest.mark.anyio
class TestBlobStorageBackend:
    async def test_read_resolves_metadata_then_fetches(self):
        store = FakeBlobStore(content='{"surveys": []}')
        assert await blob_backend(store).read("surveys.json") == '{"surveys": []}'
        assert store.requests[0] == ("GET", f"{API}/?url=surveys.json")
        assert store.requests[1] == ("GET", CDN_URL)

    async def test_sends_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"url": CDN_URL}) if request.url.host == "blob.test" else httpx.Response(200, text="x")

        backend = BlobStorageBackend("token-123", api_url=API, transport=httpx.MockTransport(handler))
        await backend.read("surveys.json")
        assert seen[0] == "Bearer token-123"

    async def test_not_found_is_not_retried(self):
        store = FakeBlobStore(content=None)
        sleep = SleepRecorder()
        with pytest.raises(BlobNotFound):
            await blob_backend(store, sleep).read("surveys.json")
        assert len(store.requests) == 1
        assert sleep.delays == []

    async def test_transient_failure_then_success(self):
        store = FakeBlobStore(content="ok", fetch_failures=[503, httpx.ReadTimeout])
        sleep = SleepRecorder()
        assert await blob_backend(store, sleep).read("surveys.json") == "ok"
        assert sleep.delays == [0.1, 0.2]

    async def test_retries_exhausted_raise_one_terminal_error(self):
        store = FakeBlobStore(content="ok", head_failures=[500, 502, httpx.ConnectError])
        sleep = SleepRecorder()
        with pytest.raises(StorageError) as excinfo:
            await blob_backend(store, sleep).read("surveys.json")
        assert not isinstance(excinfo.value, BlobNotFound)
        assert "after 3 attempts" in str(excinfo.value)
        assert store.count("GET") == 3
        assert store.count("PUT") == 0
        assert sleep.delays == [0.1, 0.2]

    async def test_write_uploads_with_overwrite(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"url": CDN_URL})

        backend = BlobStorageBackend("t", api_url=API, transport=httpx.MockTransport(handler))
        await backend.write("surveys.json", json.dumps({"a": "ü"}))
        request = seen[0]
        assert request.method == "PUT"
        assert str(request.url) == f"{API}/surveys.json"
        assert request.headers["x-allow-overwrite"] == "1"
        assert request.headers["x-add-random-suffix"] == "0"
        assert json.loads(request.content) == {"a": "ü"}

    async def test_write_retries_transient_failures(self):
        store = FakeBlobStore(content="old", put_failures=[429])
        await blob_backend(store).write("surveys.json", "new")
        assert store.count("PUT") == 2
        assert store.content == "new"

    async def test_write_gives_up_after_three_attempts(self):
        store = FakeBlobStore(content="old", put_failures=[500, 500, 500, 500])
        with pytest.raises(StorageError):
            await blob_backend(store).write("surveys.json", "new")
        assert store.count("PUT") == 3
        assert store.content == "old"

    async def test_exists(self):
        assert await blob_backend(FakeBlobStore(content="x")).exists("surveys.json")
        assert not await blob_backend(FakeBlobStore(content=None)).exists("surveys.json")

    async def test_non_json_metadata_is_retried_then_surfaced(self):
        def gateway_page(request):
            return httpx.Response(200, text="<html>gateway</html>")

        sleep = SleepRecorder()
        backend = BlobStorageBackend("t", api_url=API, transport=httpx.MockTransport(gateway_page), sleep=sleep)
        with pytest.raises(StorageError):
            await backend.read("surveys.json")
        assert sleep.delays == [0.1, 0.2]
        with pytest.raises(StorageError):
            await backend.exists("surveys.json")

    async def test_exists_propagates_other_errors(self):
        store = FakeBlobStore(content="x", head_failures=[500])
        with pytest.raises(StorageError):
            await blob_backend(store).exists("surveys.json")


class TestBackoff:
    def test_doubles_from_100ms_and_caps_at_2s(self):
        assert [backoff_delay(i) for i in range(7)] == [0.1, 0.2, 0.4, 0.8, 1.6, 2.0, 2.0]


class TestSelectStorageBackend:
    def test_local_override_wins(self, tmp_path):
        settings = Settings(STORAGE_BACKEND="local", BLOB_READ_WRITE_TOKEN="tok", LOCAL_STORAGE_DIR=str(tmp_path))
        backend = select_storage_backend(settings)
        assert isinstance(backend, LocalStorageBackend)
        assert backend.base_dir == tmp_path

    def test_token_selects_blob(self):
        settings = Settings(STORAGE_BACKEND="", BLOB_READ_WRITE_TOKEN="tok")
        backend = select_storage_backend(settings)
        assert isinstance(backend, BlobStorageBackend)
        assert backend.token == "tok"

    def test_defaults_to_local(self):
        settings = Settings(STORAGE_BACKEND="", BLOB_READ_WRITE_TOKEN="")
        assert isinstance(select_storage_backend(settings), LocalStorageBackend)
