"""
Modul dedup: Dedup window untuk identifier visit yang sudah pernah dilihat.

Window ini menjamin visit yang sama tidak dipublish dua kali oleh siklus
yang berbeda. Ukurannya dibatasi agar proses yang berjalan lama tidak
kehabisan memori:

- MemoryDedupWindow: set berurutan dengan kapasitas tetap, yang paling lama
  dibuang duluan. Hilang saat restart.
- RedisDedupWindow: sorted set di Redis (score = waktu dilihat), anggota yang
  lebih tua dari TTL dibuang. Bertahan saat restart.

Konsekuensi yang diterima: identifier yang sudah dibuang (karena kapasitas
atau TTL) bisa dipublish lagi jika API analytics mengembalikannya lagi.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Iterable
from typing import Protocol, cast

import redis.asyncio as redis

from .config import settings

logger: logging.Logger = logging.getLogger(__name__)


class DedupWindow(Protocol):
    """Kontrak dedup window yang dipakai poller."""

    async def seen(self, ids: Iterable[str]) -> set[str]:
        """Kembalikan subset ids yang sudah ada di window."""
        ...

    async def add(self, ids: Iterable[str]) -> None:
        """Tambahkan ids ke window."""
        ...

    async def size(self) -> int:
        """Jumlah identifier di window saat ini."""
        ...

    async def close(self) -> None:
        """Lepaskan resource milik window."""
        ...


class MemoryDedupWindow:
    """
    Dedup window in-memory dengan kapasitas tetap.

    OrderedDict dipakai sebagai ordered set: urutan insert dijaga sehingga
    eviksi selalu membuang identifier yang paling lama.
    """

    def __init__(self, capacity: int = 100_000) -> None:
        if capacity < 1:
            raise ValueError("capacity harus >= 1")
        self._capacity: int = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()

    async def seen(self, ids: Iterable[str]) -> set[str]:
        return {i for i in ids if i in self._ids}

    async def add(self, ids: Iterable[str]) -> None:
        evicted: int = 0
        for i in ids:
            if i in self._ids:
                self._ids.move_to_end(i)
                continue
            self._ids[i] = None
            if len(self._ids) > self._capacity:
                _ = self._ids.popitem(last=False)
                evicted += 1
        if evicted:
            logger.debug("Dedup window penuh, %d identifier lama dibuang", evicted)

    async def size(self) -> int:
        return len(self._ids)

    async def close(self) -> None:
        pass

    def __contains__(self, item: object) -> bool:
        return item in self._ids


class RedisDedupWindow:
    """
    Dedup window berbasis Redis sorted set.

    Setiap identifier disimpan sebagai member dengan score = epoch detik saat
    ditambahkan. Member yang lebih tua dari ttl_seconds dibuang setiap kali
    window ditulis.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str = "visit-relay:seen",
        ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self._redis: redis.Redis = client
        self._key: str = key
        self._ttl: int = ttl_seconds

    async def seen(self, ids: Iterable[str]) -> set[str]:
        members: list[str] = list(ids)
        if not members:
            return set()
        scores = cast(
            list[float | None],
            await self._redis.zmscore(self._key, members),  # pyright: ignore[reportUnknownMemberType]
        )
        cutoff: float = time.time() - self._ttl
        return {
            member
            for member, score in zip(members, scores)
            if score is not None and score >= cutoff
        }

    async def add(self, ids: Iterable[str]) -> None:
        now: float = time.time()
        mapping: dict[str, float] = {i: now for i in ids}
        if mapping:
            _ = await self._redis.zadd(self._key, mapping)  # pyright: ignore[reportUnknownMemberType]
        removed = await self._redis.zremrangebyscore(self._key, "-inf", now - self._ttl)  # pyright: ignore[reportUnknownMemberType]
        if removed:
            logger.debug("Dedup window Redis: %d identifier kedaluwarsa dibuang", removed)

    async def size(self) -> int:
        return cast(int, await self._redis.zcard(self._key))  # pyright: ignore[reportUnknownMemberType]

    async def close(self) -> None:
        await self._redis.aclose()


def create_dedup_window() -> MemoryDedupWindow | RedisDedupWindow:
    """Buat dedup window sesuai settings.dedup_backend."""
    if settings.dedup_backend == "redis":
        logger.info("Dedup window memakai Redis: %s", settings.redis_url)
        client: redis.Redis = redis.from_url(  # pyright: ignore[reportUnknownMemberType]
            settings.redis_url, decode_responses=True
        )
        return RedisDedupWindow(
            client, key=settings.dedup_redis_key, ttl_seconds=settings.dedup_ttl_seconds
        )
    logger.info("Dedup window in-memory, kapasitas %d", settings.dedup_capacity)
    return MemoryDedupWindow(settings.dedup_capacity)
