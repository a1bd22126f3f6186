"""
Modul consumer: Konsumsi queue RabbitMQ dengan ack/reject berbasis filter.

Setiap pesan yang diterima diperiksa ulang dengan filter URL yang sama
dengan yang dipakai poller. Hasil akhirnya selalu permanen:

- Body tidak bisa di-parse -> reject (tanpa requeue)
- Tidak ada action yang lolos filter -> reject (tanpa requeue)
- Minimal satu action lolos -> ack

Tidak ada pesan yang di-requeue, sehingga redelivery storm tidak mungkin
terjadi dari sisi consumer ini.
"""

import asyncio
import json
import logging
import re
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage

from .broker import BROKER_EXCEPTIONS, BrokerConnection, broker
from .config import settings
from .filters import filter_relevant

logger: logging.Logger = logging.getLogger(__name__)


class Consumer:
    """
    Consumer untuk queue visit yang sudah difilter.

    Consumer mendaftarkan subscribe() sebagai listener "on connected" di
    BrokerConnection, sehingga setelah setiap reconnect queue di-declare
    ulang dan konsumsi dimulai lagi di channel yang baru.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        queue_name: str | None = None,
        pattern: re.Pattern[str] | None = None,
        settle_timeout: float | None = None,
    ) -> None:
        self._broker: BrokerConnection = broker
        self.queue_name: str = queue_name or broker.queue_name
        self._pattern: re.Pattern[str] | None = pattern
        self._settle_timeout: float = (
            settings.rabbitmq_operation_timeout
            if settle_timeout is None
            else settle_timeout
        )
        self._started: bool = False
        self.acked: int = 0
        self.rejected: int = 0

    async def start(self) -> None:
        """Daftarkan consumer ke broker; subscribe langsung jika channel sudah ada."""
        if self._started:
            return
        self._started = True
        self._broker.add_connected_listener(self.subscribe)
        channel = self._broker.get_channel()
        if channel is not None:
            await self.subscribe(channel)
        else:
            logger.info("Channel belum tersedia, consumer menunggu koneksi broker")

    async def subscribe(self, channel: AbstractChannel) -> None:
        """Pastikan queue ada (durable) lalu mulai konsumsi."""
        queue = await asyncio.wait_for(
            channel.declare_queue(self.queue_name, durable=True),
            timeout=self._settle_timeout,
        )
        _ = await asyncio.wait_for(
            queue.consume(self.handle_message), timeout=self._settle_timeout
        )
        logger.info("Consumer aktif di queue %s", self.queue_name)

    async def handle_message(self, message: AbstractIncomingMessage) -> bool:
        """
        Proses satu pesan dan selesaikan dengan tepat satu ack atau reject.

        Returns:
            True jika pesan di-ack, False jika di-reject
        """
        try:
            payload: Any = json.loads(message.body.decode("utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"body bukan JSON object: {type(payload).__name__}")
        except (UnicodeDecodeError, ValueError) as e:
            logger.error("Error memproses pesan: %s", e)
            await self._settle(message, ack=False)
            return False

        visitor_id: Any = payload.get("visitorId")
        logger.debug("Memproses visitorId: %s", visitor_id)

        valid_actions = filter_relevant(payload.get("actionDetails"), self._pattern)
        if not valid_actions:
            logger.debug(
                "Pesan dilewati - tidak ada URL domestic flights untuk visitorId: %s",
                visitor_id,
            )
            await self._settle(message, ack=False)
            return False

        logger.info(
            "Pesan diproses untuk visitorId: %s dengan %d URL domestic flights",
            visitor_id,
            len(valid_actions),
        )
        await self._settle(message, ack=True)
        return True

    async def _settle(self, message: AbstractIncomingMessage, ack: bool) -> None:
        try:
            if ack:
                await asyncio.wait_for(message.ack(), timeout=self._settle_timeout)
                self.acked += 1
            else:
                await asyncio.wait_for(
                    message.reject(requeue=False), timeout=self._settle_timeout
                )
                self.rejected += 1
        except BROKER_EXCEPTIONS as e:
            # Channel sudah hilang: broker akan redeliver setelah reconnect
            logger.error("Gagal %s pesan: %r", "ack" if ack else "reject", e)


# Instance global consumer - digunakan di seluruh aplikasi
consumer: Consumer = Consumer(broker)
