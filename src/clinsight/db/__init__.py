"""Backend service clients."""

from clinsight.db.clients import ServiceClients, close_service_clients, init_service_clients

__all__ = ["ServiceClients", "close_service_clients", "init_service_clients"]
