"""Blob storage for the surveys document.

Two interchangeable backends implement :class:`StorageBackend`: a local one
writing into a scratch directory, and a remote one talking to a Vercel Blob
style object store over HTTP. Retries live only in the remote backend.
"""
from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import anyio
import httpx

from .config import Settings
from .errors import BlobNotFound, NotFound, StorageError, TransientStorageError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_ATTEMPTS = 3
BACKOFF_BASE = 0.1
BACKOFF_CAP = 2.0
FETCH_TIMEOUT = 10.0
BLOB_API_VERSION = "7"


class StorageBackend(ABC):
    name = "abstract"

    @abstractmethod
    async def read(self, key: str) -> str:
        """Return the content stored under ``key``; raise BlobNotFound if absent."""

    @abstractmethod
    async def write(self, key: str, content: str) -> None:
        """Replace (or create) the object at ``key``."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...


def _write_file_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class LocalStorageBackend(StorageBackend):
    name = "local"

    def __init__(self, base_dir: Union[str, Path] = "/tmp") -> None:
        self.base_dir = Path(base_dir)

    def _path(self, key: str) -> Path:
        return self.base_dir / key

    async def read(self, key: str) -> str:
        path = self._path(key)
        try:
            return await anyio.Path(path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise BlobNotFound(key) from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    async def write(self, key: str, content: str) -> None:
        path = self._path(key)
        try:
            await anyio.to_thread.run_sync(_write_file_atomic, path, content)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        return await anyio.Path(self._path(key)).is_file()


def backoff_delay(attempt: int) -> float:
    """Delay before retry number ``attempt + 1``: 100ms doubling, capped at 2s."""
    return min(BACKOFF_BASE * (2 ** attempt), BACKOFF_CAP)


class BlobStorageBackend(StorageBackend):
    """Remote object store addressed with a bearer read/write token.

    Every HTTP failure other than a definitive "not found" is treated as
    transient and retried with exponential backoff, ``attempts`` times in
    total. Once attempts run out a single :class:`StorageError` is raised.
    """

    name = "blob"

    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://blob.vercel-storage.com",
        attempts: int = RETRY_ATTEMPTS,
        timeout: float = FETCH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "authorization": f"Bearer {self.token}",
            "x-api-version": BLOB_API_VERSION,
        }

    @staticmethod
    def _is_not_found(resp: httpx.Response) -> bool:
        if resp.status_code == 404:
            return True
        try:
            body = resp.json()
        except ValueError:
            return False
        error = body.get("error") if isinstance(body, dict) else None
        return isinstance(error, dict) and error.get("code") in ("not_found", "blob_not_found")

    async def _retrying(self, action: str, key: str, op: Callable[[], Awaitable[T]]) -> T:
        last_exc: Optional[TransientStorageError] = None
        for attempt in range(self.attempts):
            try:
                return await op()
            except NotFound:
                raise
            except TransientStorageError as exc:
                last_exc = exc
                if attempt + 1 < self.attempts:
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "Blob %s of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        action, key, attempt + 1, self.attempts, exc, delay,
                    )
                    await self._sleep(delay)
        logger.error("Blob %s of %s failed after %d attempts: %s", action, key, self.attempts, last_exc)
        raise StorageError(
            f"Failed to {action} blob {key} after {self.attempts} attempts: {last_exc}"
        ) from last_exc

    async def _head(self, client: httpx.AsyncClient, key: str) -> Dict[str, Any]:
        try:
            resp = await client.get(f"{self.api_url}/", params={"url": key}, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransientStorageError(f"metadata request for {key} failed: {exc!r}") from exc
        if self._is_not_found(resp):
            raise BlobNotFound(key)
        if resp.is_error:
            raise TransientStorageError(f"metadata request for {key} returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientStorageError(f"metadata response for {key} is not JSON") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected metadata response for {key}")
        return data

    async def read(self, key: str) -> str:
        async def _attempt() -> str:
            async with self._client() as client:
                meta = await self._head(client, key)
                url = meta.get("url") or meta.get("downloadUrl")
                if not url:
                    raise StorageError(f"Metadata for {key} has no url")
                try:
                    resp = await client.get(url, headers={"cache-control": "no-cache"})
                except httpx.HTTPError as exc:
                    raise TransientStorageError(f"fetch of {key} failed: {exc!r}") from exc
                if resp.status_code == 404:
                    raise BlobNotFound(key)
                if resp.is_error:
                    raise TransientStorageError(f"fetch of {key} returned HTTP {resp.status_code}")
                return resp.text

        return await self._retrying("read", key, _attempt)

    async def write(self, key: str, content: str) -> None:
        headers = {
            **self._headers(),
            "x-content-type": "application/json",
            "x-add-random-suffix": "0",
            "x-allow-overwrite": "1",
        }

        async def _attempt() -> None:
            async with self._client() as client:
                try:
                    resp = await client.put(
                        f"{self.api_url}/{key}",
                        content=content.encode("utf-8"),
                        headers=headers,
                    )
                except httpx.HTTPError as exc:
                    raise TransientStorageError(f"upload of {key} failed: {exc!r}") from exc
                if resp.is_error:
                    raise TransientStorageError(f"upload of {key} returned HTTP {resp.status_code}")

        await self._retrying("write", key, _attempt)

    async def exists(self, key: str) -> bool:
        async with self._client() as client:
            try:
                await self._head(client, key)
            except NotFound:
                return False
            except TransientStorageError as exc:
                raise StorageError(str(exc)) from exc
        return True


def select_storage_backend(settings: Settings) -> StorageBackend:
    """Pick the backend from STORAGE_BACKEND and BLOB_READ_WRITE_TOKEN."""
    if settings.storage_backend.strip().lower() == "local":
        return LocalStorageBackend(settings.local_storage_dir)
    if settings.blob_read_write_token:
        return BlobStorageBackend(settings.blob_read_write_token, api_url=settings.blob_api_url)
    return LocalStorageBackend(settings.local_storage_dir)


_backend: Optional[StorageBackend] = None


def get_storage_backend(settings: Optional[Settings] = None) -> StorageBackend:
    """Process-wide backend, chosen once on first use."""
    global _backend
    if _backend is None:
        _backend = select_storage_backend(settings or Settings())
        logger.info("Using %s storage backend", _backend.name)
    return _backend
