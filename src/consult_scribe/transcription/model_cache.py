"""On-disk cache of downloaded model assets, keyed by source URL."""

import hashlib
import json
import shutil
import time
from pathlib import Path
from typing import Any

import httpx

from .cache_utils import clear_models_cache, format_cache_size, get_cache_size, get_models_cache_dir
from .config import (
    MODEL_CACHE_MAX_AGE,
    MODEL_CACHE_QUOTA_MARGIN,
    MODEL_DOWNLOAD_CHUNK_SIZE,
    MODEL_DOWNLOAD_TIMEOUT,
)
from .exceptions import ModelAssetError
from .logging_utils import get_logger

logger = get_logger(__name__)

INDEX_FILE = "index.json"


def url_key(url: str) -> str:
    """Stable directory-safe key for a URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]


class ModelAssetCache:
    """Downloads model files once and serves them from disk afterwards.

    Every cached file is recorded in ``index.json`` with its source URL, size
    and download timestamp. Entries older than ``max_age`` or whose file is
    missing or truncated are downloaded again.
    """

    def __init__(
        self,
        cache_dir: Path | None = None,
        max_age: float = MODEL_CACHE_MAX_AGE,
        timeout: float = MODEL_DOWNLOAD_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cache_dir = cache_dir or get_models_cache_dir()
        self.max_age = max_age
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._index: dict[str, dict[str, Any]] = {}
        self._opened = False

    @property
    def index_path(self) -> Path:
        return self.cache_dir / INDEX_FILE

    async def open(self) -> None:
        if self._opened:
            return
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            self._owns_client = True
        self._opened = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._opened = False

    def _load_index(self) -> dict[str, dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        try:
            return json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Model cache index unreadable, starting fresh: {e}")
            return {}

    def _save_index(self) -> None:
        tmp_path = self.index_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._index, indent=2), encoding="utf-8")
        tmp_path.replace(self.index_path)

    def lookup(self, url: str) -> Path | None:
        """
        Return the cached file for a URL if it is present and fresh.

        Args:
            url: Source URL of the asset

        Returns:
            Path to the cached file, or None on a miss
        """
        entry = self._index.get(url)
        if entry is None:
            return None

        path = Path(entry["path"])
        if not path.exists():
            logger.debug(f"Cached asset missing on disk: {path}")
            return None
        if entry.get("size") is not None and path.stat().st_size != entry["size"]:
            logger.debug(f"Cached asset size mismatch: {path}")
            return None
        if time.time() - entry.get("timestamp", 0) > self.max_age:
            logger.debug(f"Cached asset expired: {url}")
            return None
        return path

    async def fetch(self, url: str, destination: Path) -> Path:
        """
        Fetch a single asset, reusing the cached copy when possible.

        Args:
            url: Source URL of the asset
            destination: File path to store the asset at

        Returns:
            Path to the local file
        """
        await self.open()

        cached = self.lookup(url)
        if cached is not None:
            logger.trace(f"Reusing cached asset {cached.name}")
            return cached

        expected_size = await self._probe_size(url)
        self._check_quota(expected_size)

        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        logger.info(f"⬇️ Downloading {url}")

        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                with partial.open("wb") as f:
                    async for block in response.aiter_bytes(MODEL_DOWNLOAD_CHUNK_SIZE):
                        f.write(block)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise ModelAssetError(f"Failed to download {url}: {e}") from e

        partial.replace(destination)
        size = destination.stat().st_size
        self._index[url] = {"path": str(destination), "size": size, "timestamp": time.time()}
        self._save_index()
        logger.debug(f"✅ Cached {destination.name} ({format_cache_size(size)})")
        return destination

    async def fetch_model(self, base_url: str, files: tuple[str, ...] | list[str]) -> Path:
        """
        Fetch every file of a model into one directory.

        Args:
            base_url: URL the file names are appended to
            files: Model file names

        Returns:
            Directory holding the model files
        """
        model_dir = self.cache_dir / url_key(base_url)
        for name in files:
            await self.fetch(f"{base_url.rstrip('/')}/{name}", model_dir / name)
        return model_dir

    async def _probe_size(self, url: str) -> int | None:
        try:
            response = await self._client.head(url)
        except httpx.HTTPError as e:
            logger.debug(f"HEAD request failed for {url}: {e}")
            return None
        length = response.headers.get("content-length")
        if response.is_success and length and length.isdigit():
            return int(length)
        return None

    def _check_quota(self, expected_size: int | None) -> None:
        if not expected_size:
            return
        free = shutil.disk_usage(self.cache_dir).free
        required = int(expected_size * MODEL_CACHE_QUOTA_MARGIN)
        if free < required:
            raise ModelAssetError(
                f"Insufficient storage for model asset: need {format_cache_size(required)}, "
                f"have {format_cache_size(free)}"
            )

    def invalidate(self, url: str) -> None:
        entry = self._index.pop(url, None)
        if entry is not None:
            Path(entry["path"]).unlink(missing_ok=True)
            self._save_index()

    def clear(self) -> bool:
        """Remove every cached asset."""
        self._index = {}
        return clear_models_cache(self.cache_dir)

    def info(self) -> dict[str, Any]:
        size = get_cache_size(self.cache_dir)
        index = self._index or self._load_index()
        return {
            "cache_dir": str(self.cache_dir),
            "entries": len(index),
            "size_bytes": size,
            "size": format_cache_size(size),
        }
