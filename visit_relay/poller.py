"""
Modul poller: Siklus fetch-dedup-publish terhadap Matomo Live API.

Satu siklus:
1. Tentukan rentang waktu query (today, atau lastN menit sejak siklus
   sukses terakhir)
2. Ambil visit dari Matomo (timeout 5 detik). Gagal -> siklus dibatalkan
   tanpa mengubah state apa pun
3. Simpan setiap visit ke database; kegagalan satu visit tidak
   menghentikan visit lainnya
4. Hitung delta: visit yang identifier-nya belum ada di dedup window
5. Filter action setiap visit baru, publish yang punya action relevan
6. Catat semua identifier delta di window dan majukan timestamp siklus

Siklus dijalankan terjadwal setiap N menit (sejajar batas menit seperti
cron "*/N"). Siklus tidak pernah berjalan bersamaan: scheduler menunggu
setiap siklus selesai, dan run_cycle() punya guard eksplisit untuk trigger
yang tumpang tindih.
"""

import asyncio
import json
import logging
import math
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, cast

import httpx
from pydantic import JsonValue, ValidationError

from .broker import BrokerConnection, broker
from .config import settings
from .database import db
from .dedup import DedupWindow, create_dedup_window
from .errors import AnalyticsError, BrokerError, MalformedResponseError
from .filters import filter_relevant
from .models import CycleReport, FilteredMessage, RawEvent

logger: logging.Logger = logging.getLogger(__name__)


class RawEventStore(Protocol):
    async def create_raw_event(
        self,
        visitor_id: str | None,
        user_id: str | None,
        action_details: JsonValue,
        visit_info: dict[str, Any],
    ) -> Any: ...


def seconds_until_next_tick(now: datetime, interval_minutes: int) -> float:
    """
    Detik menuju tick berikutnya dengan semantik cron "0 */N * * * *".

    Tick jatuh di detik 0 pada menit yang habis dibagi N, dihitung ulang
    setiap jam (sama seperti field menit di cron).
    """
    if interval_minutes < 1:
        raise ValueError("interval_minutes harus >= 1")
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    next_minute = (now.minute // interval_minutes + 1) * interval_minutes
    target = hour_start + timedelta(minutes=min(next_minute, 60))
    return (target - now).total_seconds()


def _as_text(value: Any) -> str | None:
    """Kolom teks menerima string apa adanya; nilai lain disimpan sebagai JSON."""
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def compute_date_param(last_success_at: datetime | None, now: datetime) -> str:
    """
    Nilai parameter "date" untuk Matomo.

    Belum ada siklus sukses -> "today". Selain itu "last<N>" dengan N
    pembulatan ke atas dari menit yang berlalu, minimal 1.
    """
    if last_success_at is None:
        return "today"
    elapsed_minutes = (now - last_success_at).total_seconds() / 60
    return f"last{max(1, math.ceil(elapsed_minutes))}"


class VisitPoller:
    """
    Fetch-dedup-publish loop.

    DedupWindow dan timestamp siklus terakhir hanya diubah di dalam
    run_cycle(), yang tidak pernah berjalan paralel dengan dirinya sendiri,
    sehingga tidak perlu lock.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        store: RawEventStore,
        window: DedupWindow,
        client: httpx.AsyncClient | None = None,
        pattern: re.Pattern[str] | None = None,
        interval_minutes: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._broker: BrokerConnection = broker
        self._store: RawEventStore = store
        self.window: DedupWindow = window
        self._client: httpx.AsyncClient | None = client
        self._owns_client: bool = client is None
        self._pattern: re.Pattern[str] | None = pattern
        self.interval_minutes: int = interval_minutes or settings.fetch_interval_minutes
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

        self._in_progress: bool = False
        self._task: asyncio.Task[None] | None = None
        self.last_success_at: datetime | None = None
        self.last_report: CycleReport | None = None
        self.cycles_completed: int = 0

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def build_form(self, date_param: str) -> dict[str, str | int]:
        """Form body untuk Live.getLastVisitsDetails."""
        return {
            "module": "API",
            "method": "Live.getLastVisitsDetails",
            "idSite": settings.matomo_site_id,
            "period": "day",
            "date": date_param,
            "format": "json",
            "filter_limit": settings.matomo_filter_limit,
            "token_auth": settings.matomo_token_auth,
        }

    async def fetch_visits(self, date_param: str) -> list[JsonValue]:
        """
        Ambil visit dari Matomo.

        Raises:
            AnalyticsError: Timeout, error jaringan, atau status non-2xx
            MalformedResponseError: Body bukan JSON array
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.matomo_timeout)
        try:
            response = await self._client.post(
                settings.matomo_url,
                data=self.build_form(date_param),
                timeout=settings.matomo_timeout,
            )
            _ = response.raise_for_status()
            data: JsonValue = cast(JsonValue, response.json())
        except httpx.HTTPError as e:
            raise AnalyticsError(f"Request Matomo gagal: {e!r}") from e
        except ValueError as e:
            raise MalformedResponseError(f"Response Matomo bukan JSON: {e}") from e

        if not isinstance(data, list):
            detail = data.get("message") if isinstance(data, dict) else None
            raise MalformedResponseError(
                f"Response Matomo bukan array: {detail or type(data).__name__}"
            )
        return data

    async def run_cycle(self) -> CycleReport | None:
        """
        Jalankan satu siklus, kecuali siklus lain masih berjalan.

        Returns:
            CycleReport jika siklus selesai, None jika dilewati atau
            dibatalkan karena fetch gagal
        """
        if self._in_progress:
            logger.warning("Siklus sebelumnya masih berjalan, trigger ini dilewati")
            return None
        self._in_progress = True
        try:
            return await self._run_cycle()
        finally:
            self._in_progress = False

    async def _run_cycle(self) -> CycleReport | None:
        started_at: datetime = self._clock()
        date_param: str = compute_date_param(self.last_success_at, started_at)
        logger.info("Menjalankan siklus fetch (date=%s)...", date_param)

        try:
            items = await self.fetch_visits(date_param)
        except AnalyticsError as e:
            logger.error("Error fetching data: %s", e)
            return None

        report = CycleReport(
            started_at=started_at, date_param=date_param, fetched=len(items)
        )
        visits: list[dict[str, Any]] = []
        for item in items:
            if isinstance(item, dict):
                visits.append(item)
            else:
                logger.warning("Item response bukan object, dilewati: %r", item)

        await self._persist(visits, report)
        events: list[RawEvent] = self._parse(visits)

        delta: list[RawEvent] = await self._compute_delta(events)
        report.new = len(delta)
        if delta:
            logger.info("Ditemukan %d visit baru! Mengirim ke RabbitMQ...", len(delta))
            await self._publish(delta, report)

        await self.window.add([cast(str, event.id) for event in delta])
        self.last_success_at = started_at
        self.last_report = report
        self.cycles_completed += 1
        return report

    def _parse(self, visits: list[dict[str, Any]]) -> list[RawEvent]:
        events: list[RawEvent] = []
        for visit in visits:
            try:
                events.append(RawEvent.model_validate(visit))
            except ValidationError as e:
                logger.warning("Visit tidak valid, tidak ikut dedup/publish: %s", e)
        return events

    async def _persist(self, visits: list[dict[str, Any]], report: CycleReport) -> None:
        # Disimpan dari object mentah, sebelum validasi model
        for visit in visits:
            visitor_id = _as_text(visit.get("visitorId"))
            try:
                _ = await self._store.create_raw_event(
                    visitor_id,
                    _as_text(visit.get("userId")),
                    cast(JsonValue, visit.get("actionDetails")),
                    {k: v for k, v in visit.items() if k != "actionDetails"},
                )
                report.saved += 1
                logger.debug("Raw data disimpan untuk visitorId: %s", visitor_id)
            except Exception as e:
                report.save_failed += 1
                logger.error("Error menyimpan raw data visitorId %s: %s", visitor_id, e)

    async def _compute_delta(self, events: list[RawEvent]) -> list[RawEvent]:
        identified: list[RawEvent] = []
        for event in events:
            if event.id is None:
                logger.warning(
                    "Visit tanpa identifier tidak bisa dideduplikasi, tidak dipublish (visitorId: %s)",
                    event.visitor_id,
                )
                continue
            identified.append(event)

        seen: set[str] = await self.window.seen(cast(str, e.id) for e in identified)
        return [event for event in identified if event.id not in seen]

    async def _publish(self, delta: list[RawEvent], report: CycleReport) -> None:
        considered: int = 0
        sent: int = 0
        try:
            for event in delta:
                considered += 1
                valid_actions = filter_relevant(event.action_details, self._pattern)
                if not valid_actions:
                    continue
                message = FilteredMessage(
                    visitor_id=event.visitor_id,
                    user_id=event.user_id,
                    action_details=valid_actions,
                )
                await self._broker.publish(message.to_body())
                sent += 1
                logger.debug(
                    "Pesan dipublish dengan %d URL domestic flights", len(valid_actions)
                )
        except BrokerError as e:
            report.publish_failed = True
            logger.error("RabbitMQ error: %s", e)
        finally:
            report.considered = considered
            report.published = sent
            logger.info(
                "Total visit: %d, difilter dan dikirim: %d pesan ke RabbitMQ",
                considered,
                sent,
            )

    async def run_forever(self) -> None:
        """Satu siklus langsung saat start, lalu setiap tick terjadwal."""
        while True:
            try:
                _ = await self.run_cycle()
            except Exception:
                logger.exception("Siklus fetch gagal dengan error tak terduga")
            delay = seconds_until_next_tick(datetime.now(), self.interval_minutes)
            logger.debug("Siklus berikutnya dalam %.1f detik", delay)
            await asyncio.sleep(delay)

    async def start(self) -> None:
        """Mulai scheduler di background."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run_forever())
        logger.info("Scheduler fetch dimulai (setiap %d menit)", self.interval_minutes)

    async def stop(self) -> None:
        """Hentikan scheduler dan tutup resource milik poller."""
        if self._task:
            _ = self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        await self.window.close()
        logger.info("Scheduler fetch berhenti")


# Instance global poller - digunakan di seluruh aplikasi
poller: VisitPoller = VisitPoller(broker=broker, store=db, window=create_dedup_window())
