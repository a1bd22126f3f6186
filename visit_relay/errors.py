"""Exception yang dipakai di seluruh visit-relay."""


class RelayError(Exception):
    """Base class untuk semua error visit-relay."""


class BrokerError(RelayError):
    """Operasi broker gagal (error AMQP, koneksi putus, atau timeout)."""


class BrokerUnavailableError(BrokerError):
    """Tidak ada channel aktif; sifatnya sementara, bukan fatal."""


class AnalyticsError(RelayError):
    """Request ke API analytics gagal."""


class MalformedResponseError(AnalyticsError):
    """Response API analytics bukan JSON array."""
