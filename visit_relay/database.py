"""
Modul database: Penyimpanan raw visit dan daftar URL per visitor dengan asyncpg.

Modul ini menangani:
- Connection pooling ke PostgreSQL
- Pembuatan schema (idempotent) saat startup
- Insert raw visit (append-only, tidak pernah dihapus)
- Upsert atomik daftar URL per visitor
"""

import json
import logging
from datetime import datetime
from typing import Any, cast

import asyncpg
from asyncpg import Pool, Record
from pydantic import JsonValue

from .config import settings
from .models import VisitorUrls, VisitRecord

logger: logging.Logger = logging.getLogger(__name__)

SCHEMA: str = """
    CREATE TABLE IF NOT EXISTS visits (
        id BIGSERIAL PRIMARY KEY,
        visitor_id TEXT NOT NULL,
        user_id TEXT,
        action_details JSONB,
        visit_info JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS visits_visitor_id_idx ON visits (visitor_id);

    CREATE TABLE IF NOT EXISTS visitor_urls (
        id BIGSERIAL PRIMARY KEY,
        visitor_id TEXT NOT NULL UNIQUE,
        user_id TEXT,
        url JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
"""


def _load_json(raw: Any) -> JsonValue:
    # Kolom JSONB dikembalikan sebagai string kecuali ada codec terdaftar
    if isinstance(raw, str):
        return cast(JsonValue, json.loads(raw))
    return cast(JsonValue, raw)


def _visit_from_row(row: Record) -> VisitRecord:
    return VisitRecord(
        id=cast(int, row["id"]),
        visitor_id=cast(str, row["visitor_id"]),
        user_id=cast(str | None, row["user_id"]),
        action_details=_load_json(row["action_details"]),
        visit_info=_load_json(row["visit_info"]),
        created_at=cast(datetime, row["created_at"]),
        updated_at=cast(datetime, row["updated_at"]),
    )


def _urls_from_row(row: Record) -> VisitorUrls:
    return VisitorUrls(
        id=cast(int, row["id"]),
        visitor_id=cast(str, row["visitor_id"]),
        user_id=cast(str | None, row["user_id"]),
        url=cast(list[str], _load_json(row["url"])),
        created_at=cast(datetime, row["created_at"]),
        updated_at=cast(datetime, row["updated_at"]),
    )


class Database:
    """
    Manager database PostgreSQL dengan connection pooling.

    Pool diinisialisasi sekali saat startup dan dipakai bersama oleh
    poller (insert raw visit) dan HTTP routes (query dan upsert).
    """

    def __init__(self) -> None:
        self._pool: Pool | None = None

    async def connect(self) -> None:
        """Inisialisasi connection pool dan pastikan schema ada."""
        logger.info("Menghubungkan ke database: %s", settings.database_url)
        self._pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        async with self._pool.acquire() as conn:
            _ = await conn.execute(SCHEMA)
        logger.info("Connection pool database berhasil dibuat")

    async def disconnect(self) -> None:
        """Tutup connection pool saat shutdown."""
        if self._pool:
            await self._pool.close()
            logger.info("Connection pool database ditutup")

    def _require_pool(self) -> Pool:
        if not self._pool:
            raise RuntimeError("Database belum terkoneksi")
        return self._pool

    async def create_raw_event(
        self,
        visitor_id: str | None,
        user_id: str | None,
        action_details: JsonValue,
        visit_info: dict[str, Any],
    ) -> VisitRecord:
        """
        Simpan satu raw visit.

        actionDetails disimpan terpisah dari visit_info. Visit tanpa
        visitor_id ditolak oleh constraint NOT NULL.

        Raises:
            asyncpg.PostgresError: Jika insert gagal
        """
        pool = self._require_pool()
        query: str = """
            INSERT INTO visits (visitor_id, user_id, action_details, visit_info)
            VALUES ($1, $2, $3, $4)
            RETURNING id, visitor_id, user_id, action_details, visit_info,
                      created_at, updated_at
        """
        async with pool.acquire() as conn:
            row: Record | None = await conn.fetchrow(
                query,
                visitor_id,
                user_id,
                json.dumps(action_details),
                json.dumps(visit_info),
            )
        if row is None:
            raise RuntimeError("INSERT visits tidak mengembalikan row")
        logger.debug("Raw visit disimpan untuk visitorId: %s", visitor_id)
        return _visit_from_row(row)

    async def find_by_visitor_id(self, visitor_id: str) -> list[VisitRecord]:
        """Ambil semua raw visit milik satu visitor, yang paling lama duluan."""
        pool = self._require_pool()
        query: str = """
            SELECT id, visitor_id, user_id, action_details, visit_info,
                   created_at, updated_at
            FROM visits
            WHERE visitor_id = $1
            ORDER BY created_at, id
        """
        async with pool.acquire() as conn:
            rows: list[Record] = await conn.fetch(query, visitor_id)
        return [_visit_from_row(row) for row in rows]

    async def upsert_url_list(
        self, visitor_id: str, urls: list[str], user_id: str | None
    ) -> VisitorUrls:
        """
        Simpan atau ganti daftar URL milik satu visitor.

        Memakai INSERT ... ON CONFLICT DO UPDATE sehingga dua request
        bersamaan untuk visitor yang sama tidak membuat dua record.
        created_at tetap dari insert pertama.
        """
        pool = self._require_pool()
        query: str = """
            INSERT INTO visitor_urls (visitor_id, user_id, url)
            VALUES ($1, $2, $3)
            ON CONFLICT (visitor_id) DO UPDATE
            SET url = EXCLUDED.url,
                user_id = EXCLUDED.user_id,
                updated_at = now()
            RETURNING id, visitor_id, user_id, url, created_at, updated_at
        """
        async with pool.acquire() as conn:
            row: Record | None = await conn.fetchrow(
                query, visitor_id, user_id, json.dumps(urls)
            )
        if row is None:
            raise RuntimeError("UPSERT visitor_urls tidak mengembalikan row")
        logger.info("Daftar URL disimpan untuk visitorId: %s (%d url)", visitor_id, len(urls))
        return _urls_from_row(row)


# Instance global database - digunakan di seluruh aplikasi
db: Database = Database()
