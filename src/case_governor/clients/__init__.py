"""HTTP clients for services the governor depends on."""

from case_governor.clients.base import BaseServiceClient
from case_governor.clients.record_service_client import RecordServiceClient

__all__ = ["BaseServiceClient", "RecordServiceClient"]
