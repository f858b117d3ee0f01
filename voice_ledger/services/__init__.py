"""External services: storage, API clients, audio object storage, connectivity."""

from voice_ledger.services.network import ConnectivityMonitor

__all__ = ["ConnectivityMonitor"]
