"""
Modul broker: Satu koneksi logis + satu channel ke RabbitMQ.

BrokerConnection memiliki koneksi dan channel yang dipakai bersama oleh
poller (publisher) dan consumer. Tanggung jawabnya:

- Membuat koneksi, membuka channel, dan men-declare topologi (exchange
  direct + queue, keduanya durable, di-bind dengan routing key kosong)
- Reconnect otomatis dengan delay tetap jika koneksi/channel ditutup atau
  error, tanpa batas percobaan
- Menjalankan listener "on connected" setelah topologi siap, agar consumer
  bisa subscribe ulang setelah reconnect

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED (error/close) -> CONNECTING ...

Tidak ada state terminal selain close() saat shutdown.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from .config import settings
from .errors import BrokerError, BrokerUnavailableError

logger: logging.Logger = logging.getLogger(__name__)

ConnectedListener = Callable[[AbstractChannel], Awaitable[None]]

# Error yang dianggap gangguan infrastruktur sementara
BROKER_EXCEPTIONS: tuple[type[BaseException], ...] = (
    AMQPError,
    ChannelInvalidStateError,
    ConnectionError,
    OSError,
    RuntimeError,
    asyncio.TimeoutError,
)


class ConnectionState(str, Enum):
    """State koneksi broker."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BrokerConnection:
    """
    Manager koneksi RabbitMQ dengan auto-reconnect.

    connect() tidak pernah melempar exception ke pemanggil: kegagalan apa pun
    dicatat di log lalu seluruh urutan connect dijadwalkan ulang setelah
    reconnect_delay detik.

    Hanya boleh ada satu percobaan connect yang berjalan (single-flight,
    dijaga asyncio.Lock) dan maksimal satu retry yang terjadwal.
    """

    def __init__(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        queue_name: str | None = None,
        reconnect_delay: float | None = None,
        operation_timeout: float | None = None,
    ) -> None:
        self.url: str = url or settings.rabbitmq_url
        self.exchange_name: str = exchange_name or settings.rabbitmq_exchange
        self.queue_name: str = queue_name or settings.rabbitmq_queue
        self._reconnect_delay: float = (
            settings.rabbitmq_reconnect_delay
            if reconnect_delay is None
            else reconnect_delay
        )
        self._timeout: float = (
            settings.rabbitmq_operation_timeout
            if operation_timeout is None
            else operation_timeout
        )

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._state: ConnectionState = ConnectionState.DISCONNECTED

        self._lock: asyncio.Lock = asyncio.Lock()
        self._retry_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._listeners: list[ConnectedListener] = []
        self._stopped: bool = False
        self.reconnect_count: int = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_connected_listener(self, listener: ConnectedListener) -> None:
        """
        Daftarkan callback yang dijalankan setiap kali topologi siap.

        Listener dijalankan di dalam urutan connect; jika listener gagal,
        percobaan connect dianggap gagal dan dijadwalkan ulang.
        """
        self._listeners.append(listener)

    def get_channel(self) -> AbstractChannel | None:
        """
        Channel aktif, atau None jika sedang tidak tersedia.

        None berarti "sementara tidak tersedia", bukan kondisi fatal.
        Channel yang sudah tertutup tidak pernah dikembalikan.
        """
        channel = self._channel
        if channel is None or channel.is_closed:
            return None
        return channel

    async def connect(self) -> None:
        """Hubungkan ke RabbitMQ dan declare topologi. Tidak pernah raise."""
        if self._stopped:
            return
        if self._lock.locked():
            logger.debug("Percobaan connect lain sedang berjalan, dilewati")
            return
        async with self._lock:
            if self._state is ConnectionState.CONNECTED and self.get_channel():
                return
            await self._connect_locked()

    async def reconnect(self) -> None:
        """Bersihkan koneksi lama lalu connect ulang."""
        if self._stopped:
            return
        if self._lock.locked():
            logger.debug("Reconnect sudah berjalan, dilewati")
            return
        async with self._lock:
            self.reconnect_count += 1
            logger.warning("Reconnect ke RabbitMQ (ke-%d)", self.reconnect_count)
            await self._cleanup()
            await self._connect_locked()

    async def cleanup(self) -> None:
        """Tutup channel lalu koneksi. Error sekunder hanya dicatat."""
        async with self._lock:
            await self._cleanup()

    async def close(self) -> None:
        """Shutdown: hentikan retry dan tutup koneksi."""
        self._stopped = True
        if self._retry_task and not self._retry_task.done():
            _ = self._retry_task.cancel()
        for task in list(self._background):
            _ = task.cancel()
        await self.cleanup()
        logger.info("Koneksi RabbitMQ ditutup")

    async def publish(self, body: bytes) -> None:
        """
        Publish satu pesan persistent ke exchange dengan routing key kosong.

        Raises:
            BrokerUnavailableError: Tidak ada channel aktif
            BrokerError: Broker menolak, koneksi putus, atau timeout
        """
        channel = self.get_channel()
        exchange = self._exchange
        if channel is None or exchange is None:
            raise BrokerUnavailableError("Channel RabbitMQ tidak tersedia")

        message = Message(
            body,
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
        )
        try:
            _ = await asyncio.wait_for(
                exchange.publish(message, routing_key=""), timeout=self._timeout
            )
        except BROKER_EXCEPTIONS as e:
            raise BrokerError(f"Publish ke {self.exchange_name} gagal: {e!r}") from e

    async def _connect_locked(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            connection = await asyncio.wait_for(
                aio_pika.connect(self.url), timeout=self._timeout
            )
            self._connection = connection
            connection.close_callbacks.add(
                functools.partial(self._on_closed, "koneksi", connection)
            )
            logger.info("Terhubung ke RabbitMQ")

            channel = await asyncio.wait_for(connection.channel(), timeout=self._timeout)
            self._channel = channel
            channel.close_callbacks.add(
                functools.partial(self._on_closed, "channel", channel)
            )
            logger.info("Channel RabbitMQ dibuat")

            exchange = await asyncio.wait_for(
                channel.declare_exchange(
                    self.exchange_name, ExchangeType.DIRECT, durable=True
                ),
                timeout=self._timeout,
            )
            queue = await asyncio.wait_for(
                channel.declare_queue(self.queue_name, durable=True),
                timeout=self._timeout,
            )
            _ = await asyncio.wait_for(
                queue.bind(exchange, routing_key=""), timeout=self._timeout
            )
            self._exchange = exchange

            for listener in self._listeners:
                await listener(channel)

            if channel.is_closed or connection.is_closed:
                raise BrokerError("Koneksi tertutup saat inisialisasi topologi")

            self._state = ConnectionState.CONNECTED
            logger.info(
                "Topologi siap: exchange=%s, queue=%s",
                self.exchange_name,
                self.queue_name,
            )
        except asyncio.CancelledError:
            await self._cleanup()
            raise
        except Exception as e:
            logger.error(
                "Gagal inisialisasi RabbitMQ: %r. Coba lagi dalam %.1fs",
                e,
                self._reconnect_delay,
            )
            await self._cleanup()
            self._schedule_retry()

    async def _cleanup(self) -> None:
        channel, connection = self._channel, self._connection
        # Handle di-reset dulu agar callback close dari handle lama diabaikan
        self._channel = None
        self._connection = None
        self._exchange = None
        self._state = ConnectionState.DISCONNECTED
        try:
            if channel is not None and not channel.is_closed:
                await channel.close()
            if connection is not None and not connection.is_closed:
                await connection.close()
        except Exception as e:
            logger.error("Error saat cleanup RabbitMQ: %r", e)

    def _schedule_retry(self) -> None:
        if self._stopped:
            return
        if self._retry_task and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry_later())

    async def _retry_later(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        # connect() dipanggil dari task ini; slot retry dibebaskan dulu agar
        # kegagalan berikutnya bisa menjadwalkan retry baru
        self._retry_task = None
        await self.connect()

    def _on_closed(self, kind: str, target: Any, *_args: Any) -> None:
        if self._stopped:
            return
        if target is not self._connection and target is not self._channel:
            return
        exc: Any = _args[-1] if _args else None
        logger.error("RabbitMQ %s ditutup: %r", kind, exc)
        task = asyncio.get_running_loop().create_task(self.reconnect())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# Instance global broker - dipakai bersama oleh poller dan consumer
broker: BrokerConnection = BrokerConnection()
