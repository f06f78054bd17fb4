"""Python client for the curation backend: REST client, job socket and sync controller."""

from app.client.api_client import ApiClient
from app.client.errors import ApiError, AuthRequired, NetworkError, RequestTimeout
from app.client.job_socket import JobSocket
from app.client.sync_controller import SyncController

__all__ = [
    "ApiClient",
    "ApiError",
    "AuthRequired",
    "JobSocket",
    "NetworkError",
    "RequestTimeout",
    "SyncController",
]
