"""
Durable storage for processed transaction references.

Two backends share one contract:
1. Redis set (safe for several instances sharing one store)
2. Local line-delimited file (single instance only)

Stores are written through by ProcessedSet and read once at startup; they
are never consulted on the request path.
"""
import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Set

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from x402_gate.config import Settings

from .types import canonicalize_reference

logger = structlog.get_logger(__name__)


class DedupStoreError(Exception):
    """Raised when the backing store cannot be read or written."""

    pass


class DedupStore(ABC):
    """Contract shared by every processed-reference backend."""

    backend_name = "abstract"

    @abstractmethod
    async def load_all(self) -> Set[str]:
        """Return every stored reference (lower-case)."""

    @abstractmethod
    async def add(self, reference: str) -> None:
        """Store a reference. Adding a present reference is a no-op."""

    @abstractmethod
    async def add_if_absent(self, reference: str) -> bool:
        """Store a reference, returning False if it was already present."""

    @abstractmethod
    async def remove(self, reference: str) -> None:
        """Delete a reference. Removing an absent reference is a no-op."""

    @abstractmethod
    async def clear(self) -> None:
        """Delete every reference."""

    @abstractmethod
    async def ping(self) -> None:
        """Check that the store is reachable, raising DedupStoreError if not."""

    async def close(self) -> None:
        """Release connections held by the store."""


class RedisDedupStore(DedupStore):
    """
    Processed references kept in one Redis set.

    SADD's return value makes add_if_absent atomic across instances.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str,
        key: str = "x402:processed_txs",
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            key: Name of the set holding processed references
            redis_client: Optional Redis client (creates one if not provided)
        """
        self.redis_url = redis_url
        self.key = key
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    async def _execute(self, operation: str, command: Callable[[aioredis.Redis], Any]) -> Any:
        try:
            redis = await self._ensure_redis()
            return await command(redis)
        except (RedisError, OSError) as e:
            raise DedupStoreError(f"Redis {operation} failed on {self.key}: {e}") from e

    async def load_all(self) -> Set[str]:
        members = await self._execute("smembers", lambda r: r.smembers(self.key))
        return {canonicalize_reference(member) for member in members if member}

    async def add(self, reference: str) -> None:
        await self.add_if_absent(reference)

    async def add_if_absent(self, reference: str) -> bool:
        added = await self._execute(
            "sadd", lambda r: r.sadd(self.key, canonicalize_reference(reference))
        )
        return bool(added)

    async def remove(self, reference: str) -> None:
        await self._execute("srem", lambda r: r.srem(self.key, canonicalize_reference(reference)))

    async def clear(self) -> None:
        await self._execute("delete", lambda r: r.delete(self.key))

    async def ping(self) -> None:
        await self._execute("ping", lambda r: r.ping())

    async def close(self) -> None:
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()
            self._redis_initialized = False


class FileDedupStore(DedupStore):
    """
    Processed references kept one per line in a local file.

    add appends a line; remove rewrites the file without the reference.
    Blocking file I/O runs in the default executor, serialized by a lock so
    a rewrite never interleaves with an append. Not safe for several
    processes sharing one file.
    """

    backend_name = "file"

    def __init__(self, path: str):
        """
        Initialize file store.

        Args:
            path: File holding processed references; its directory is created
        """
        self.path = path
        self._lock = asyncio.Lock()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, func, *args)
            except OSError as e:
                raise DedupStoreError(f"File {operation} failed on {self.path}: {e}") from e

    def _read_all(self) -> Set[str]:
        if not os.path.exists(self.path):
            return set()
        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
        return {canonicalize_reference(line) for line in lines if line.strip()}

    def _append(self, reference: str) -> None:
        with open(self.path, "ab+") as f:
            f.seek(0, os.SEEK_END)
            prefix = b""
            if f.tell() > 0:
                # Files rewritten by older releases may lack a trailing newline
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    prefix = b"\n"
            f.write(prefix + reference.encode("utf-8") + b"\n")

    def _append_if_absent(self, reference: str) -> bool:
        if reference in self._read_all():
            return False
        self._append(reference)
        return True

    def _rewrite_without(self, reference: str) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
        kept = [
            line for line in lines
            if line.strip() and canonicalize_reference(line) != reference
        ]
        self._replace_contents("".join(f"{line}\n" for line in kept))

    def _replace_contents(self, content: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".processed_txs.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _truncate(self) -> None:
        if os.path.exists(self.path):
            self._replace_contents("")

    def _check_writable(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        if not os.access(directory, os.W_OK):
            raise PermissionError(f"Directory {directory} is not writable")

    async def load_all(self) -> Set[str]:
        return await self._run("read", self._read_all)

    async def add(self, reference: str) -> None:
        await self._run("append", self._append, canonicalize_reference(reference))

    async def add_if_absent(self, reference: str) -> bool:
        return await self._run(
            "append", self._append_if_absent, canonicalize_reference(reference)
        )

    async def remove(self, reference: str) -> None:
        await self._run("rewrite", self._rewrite_without, canonicalize_reference(reference))

    async def clear(self) -> None:
        await self._run("truncate", self._truncate)

    async def ping(self) -> None:
        await self._run("access check", self._check_writable)


def create_dedup_store(
    settings: Settings, redis_client: Optional[aioredis.Redis] = None
) -> DedupStore:
    """
    Select the backend configured by `dedup_backend`.

    Args:
        settings: Application settings
        redis_client: Optional Redis client for the redis backend

    Returns:
        DedupStore: Configured store
    """
    if settings.dedup_backend == "redis":
        store: DedupStore = RedisDedupStore(
            settings.redis_url, key=settings.dedup_redis_key, redis_client=redis_client
        )
        logger.info("dedup_store_selected", backend="redis", key=settings.dedup_redis_key)
    else:
        store = FileDedupStore(settings.processed_txs_path)
        logger.info("dedup_store_selected", backend="file", path=settings.processed_txs_path)
    return store
