"""
Text extractors: turn a project file into raw text.

Every loader exposes the same two operations:
- get_file_text(file) -> bytes of decoded plain text (UTF-8)
- get_base64(file)    -> Base64File(base64, mime_prefix) of the raw file

Loaders:
- LocalFileLoader: files under the storage root, keyed by storage_key
- HttpLoader: web pages fetched with httpx, markup stripped with lxml
- ImageLoader: images described in text by the AI capability
- RoutingTextExtractor: picks one of the above per file
- CachedTextExtractor: wraps any loader with single-flight request
  coalescing and a Redis cache (in-memory fallback when Redis is down)
"""

import asyncio
import base64
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import httpx
import redis.asyncio as aioredis
from lxml import etree, html
from redis.exceptions import RedisError

from src.core.config import settings
from src.core.exceptions import ExtractionError, TransientError
from src.core.logging import get_logger
from src.db.enums import FileType
from src.db.models import ProjectFile
from src.services.ai_client import BaseAIClient

logger = get_logger(__name__)

TEXT_CACHE_PREFIX = "kgforge:text:"

IMAGE_PROMPT = (
    "Describe this image in detail. Transcribe any visible text verbatim and "
    "name the people, organisations, places and objects it shows."
)


@dataclass
class Base64File:
    """Base64 payload plus the data-URL prefix for its mime type."""

    base64: str
    mime_prefix: str


def data_url_prefix(mime_type: str | None) -> str:
    return f"data:{mime_type or 'application/octet-stream'};base64,"


class TextExtractor(ABC):
    """Capability turning a project file into text."""

    @abstractmethod
    async def get_file_text(self, file: ProjectFile) -> bytes:
        pass

    @abstractmethod
    async def get_base64(self, file: ProjectFile) -> Base64File:
        pass

    def cache_key(self, file: ProjectFile) -> str:
        return f"{type(self).__name__}:{file.storage_key}"

    async def aclose(self) -> None:
        """Release connections held by the extractor."""
        return None


# =============================================================================
# Loaders
# =============================================================================


class LocalFileLoader(TextExtractor):
    """Reads files from a directory standing in for object storage."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.storage_root).resolve()

    def _path(self, file: ProjectFile) -> Path:
        path = (self.root / file.storage_key).resolve()
        if not path.is_relative_to(self.root):
            raise ExtractionError(f"Storage key escapes storage root: {file.storage_key}")
        return path

    async def _read(self, file: ProjectFile) -> bytes:
        path = self._path(file)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise ExtractionError(f"File not found in storage: {file.storage_key}") from e

    async def get_file_text(self, file: ProjectFile) -> bytes:
        data = await self._read(file)
        try:
            data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionError(f"{file.name} is not UTF-8 text") from e
        return data

    async def get_base64(self, file: ProjectFile) -> Base64File:
        data = await self._read(file)
        mime_type = file.mime_type or mimetypes.guess_type(file.name)[0]
        return Base64File(base64.b64encode(data).decode("ascii"), data_url_prefix(mime_type))


class HttpLoader(TextExtractor):
    """Fetches a URL (the storage key) and strips HTML to text."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def _fetch(self, url: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransientError(f"Fetching {url} failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"Fetching {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise ExtractionError(f"Fetching {url} returned {response.status_code}")
        return response

    @staticmethod
    def html_to_text(markup: str) -> str:
        """Visible text of an HTML document, one block per line."""
        try:
            document = html.fromstring(markup)
        except (etree.ParserError, ValueError) as e:
            raise ExtractionError(f"Unparseable HTML: {e}") from e
        for element in document.xpath("//script|//style|//noscript|//template"):
            element.drop_tree()
        lines = (" ".join(line.split()) for line in document.text_content().splitlines())
        return "\n".join(line for line in lines if line)

    async def get_file_text(self, file: ProjectFile) -> bytes:
        response = await self._fetch(file.storage_key)
        content_type = response.headers.get("content-type", "")
        text = self.html_to_text(response.text) if "html" in content_type else response.text
        return text.encode("utf-8")

    async def get_base64(self, file: ProjectFile) -> Base64File:
        response = await self._fetch(file.storage_key)
        mime_type = response.headers.get("content-type", "").split(";")[0] or file.mime_type
        return Base64File(base64.b64encode(response.content).decode("ascii"), data_url_prefix(mime_type))


class ImageLoader(TextExtractor):
    """Describes images with the AI capability; raw bytes come from `source`."""

    def __init__(self, source: TextExtractor, ai_client: BaseAIClient, prompt: str = IMAGE_PROMPT):
        self.source = source
        self.ai = ai_client
        self.prompt = prompt

    async def get_file_text(self, file: ProjectFile) -> bytes:
        payload = await self.source.get_base64(file)
        description = await self.ai.generate_image_description(self.prompt, payload.base64, payload.mime_prefix)
        return description.encode("utf-8")

    async def get_base64(self, file: ProjectFile) -> Base64File:
        return await self.source.get_base64(file)


# =============================================================================
# Cache with single-flight
# =============================================================================


class TextCache:
    """
    Async text cache in Redis.

    Falls back to process memory if Redis is unavailable (for testing and
    single-process development).
    """

    def __init__(self, url: str | None = None, ttl_seconds: int | None = None, use_redis: bool = True):
        self.url = url or settings.redis_dsn
        self.ttl = settings.text_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._use_redis = use_redis
        self._redis: aioredis.Redis | None = None
        self._memory: dict[str, bytes] = {}

    async def _client(self) -> aioredis.Redis | None:
        if not self._use_redis:
            return None
        if self._redis is None:
            client = aioredis.Redis.from_url(self.url, socket_connect_timeout=2)
            try:
                await client.ping()
            except (RedisError, OSError) as e:
                self._use_redis = False
                logger.warning("Text cache: Redis unavailable, using in-memory fallback", error=str(e))
                await client.aclose()
                return None
            self._redis = client
        return self._redis

    async def get(self, key: str) -> bytes | None:
        client = await self._client()
        if client is None:
            return self._memory.get(key)
        return await client.get(TEXT_CACHE_PREFIX + key)

    async def set(self, key: str, value: bytes) -> None:
        client = await self._client()
        if client is None:
            self._memory[key] = value
            return
        await client.set(TEXT_CACHE_PREFIX + key, value, ex=self.ttl or None)

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class CachedTextExtractor(TextExtractor):
    """
    Wraps an extractor so each file is extracted at most once at a time.

    The extraction of a key runs in its own task; every concurrent caller
    awaits it through `asyncio.shield`, so cancelling one caller never
    cancels the shared work. Finished results are stored in the cache for
    later callers.
    """

    def __init__(self, inner: TextExtractor, cache: TextCache | None = None):
        self.inner = inner
        self.cache = cache or TextCache()
        self._in_flight: dict[str, asyncio.Task[bytes]] = {}

    async def get_file_text(self, file: ProjectFile) -> bytes:
        key = self.inner.cache_key(file)

        task = self._in_flight.get(key)
        if task is None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached
            # Re-check: another caller may have started while we awaited the cache
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._extract(key, file))
                self._in_flight[key] = task
                task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    async def _extract(self, key: str, file: ProjectFile) -> bytes:
        text = await self.inner.get_file_text(file)
        await self.cache.set(key, text)
        return text

    def _forget(self, key: str, task: asyncio.Task[bytes]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark retrieved; callers that were cancelled never observe it
            task.exception()

    async def get_base64(self, file: ProjectFile) -> Base64File:
        return await self.inner.get_base64(file)

    async def aclose(self) -> None:
        """Cancel unfinished extractions and close the cache connection."""
        pending = list(self._in_flight.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.inner.aclose()
        await self.cache.aclose()


# =============================================================================
# Selection
# =============================================================================


class RoutingTextExtractor(TextExtractor):
    """
    Picks the loader per file.

    URLs are fetched over HTTP, images are described by the AI capability,
    everything else is read from storage.
    """

    def __init__(self, ai_client: BaseAIClient, storage: TextExtractor | None = None, http: TextExtractor | None = None):
        self.storage = storage or LocalFileLoader()
        self.http = http or HttpLoader()
        self.images = ImageLoader(self.storage, ai_client)
        self.remote_images = ImageLoader(self.http, ai_client)

    def route(self, file: ProjectFile) -> TextExtractor:
        remote = file.storage_key.startswith(("http://", "https://"))
        if file.file_type == FileType.IMAGE:
            return self.remote_images if remote else self.images
        return self.http if remote else self.storage

    async def get_file_text(self, file: ProjectFile) -> bytes:
        return await self.route(file).get_file_text(file)

    async def get_base64(self, file: ProjectFile) -> Base64File:
        return await self.route(file).get_base64(file)

    def cache_key(self, file: ProjectFile) -> str:
        loader = self.route(file)
        if isinstance(loader, ImageLoader):
            return f"ImageLoader:{file.storage_key}"
        return loader.cache_key(file)
