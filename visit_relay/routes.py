"""
Modul routes: API routes untuk service visit-relay.

Modul ini mendefinisikan endpoint HTTP yang tersedia:
- GET /visits/{visitor_id}: Ambil raw visit milik satu visitor
- POST /visits/save-visits: Upsert daftar URL milik satu visitor
- GET /stats: Statistik poller dan status broker
- GET /health: Health check untuk container orchestration

Endpoint visits hanya membaca/menulis database dan tidak menyentuh broker.
"""

import logging

from fastapi import APIRouter, HTTPException

from .broker import broker
from .database import db
from .models import SaveVisitsRequest, StatsResponse, VisitorUrls, VisitRecord
from .poller import poller

logger: logging.Logger = logging.getLogger(__name__)

router: APIRouter = APIRouter()


@router.get("/visits/{visitor_id}", response_model=list[VisitRecord])
async def get_visits_by_visitor_id(visitor_id: str) -> list[VisitRecord]:
    """
    Ambil semua raw visit untuk satu visitorId.

    Returns:
        List VisitRecord, yang paling lama duluan

    Raises:
        HTTPException 404: Jika visitor belum punya visit tersimpan
    """
    visits = await db.find_by_visitor_id(visitor_id)
    if not visits:
        raise HTTPException(
            status_code=404, detail=f"No visits found for visitorId: {visitor_id}"
        )
    return visits


@router.post("/visits/save-visits", response_model=VisitorUrls)
async def save_visits(body: SaveVisitsRequest) -> VisitorUrls:
    """
    Simpan daftar URL untuk satu visitor.

    Jika visitor sudah punya record, url dan userId diganti; jika belum,
    record baru dibuat. Mengirim request yang sama berkali-kali aman.

    Contoh request:
        POST /visits/save-visits
        {"visitorId": "abc123", "url": ["https://..."], "userId": "u-1"}
    """
    return await db.upsert_url_list(body.visitor_id, body.url, body.user_id)


@router.get("/stats", response_model=StatsResponse)
async def get_stats() -> StatsResponse:
    """Statistik siklus fetch terakhir, ukuran dedup window, dan state broker."""
    return StatsResponse(
        broker_state=broker.state.value,
        dedup_size=await poller.window.size(),
        cycles_completed=poller.cycles_completed,
        last_success_at=poller.last_success_at,
        last_report=poller.last_report,
    )


@router.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint untuk container orchestration.

    Selalu 200 selama proses hidup: broker yang sedang reconnect bukan
    kondisi fatal, jadi state-nya hanya dilaporkan.
    """
    return {"status": "healthy", "broker": broker.state.value}
