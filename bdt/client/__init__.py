"""
Export protocol client for Bulk Data Tester.

This package provides the server settings model, the HTTP exchange models,
JWT client assertions and the BulkDataClient that drives an export.
"""

from .settings import AuthType, AuthenticationOptions, NormalizedConfig, RequestSettings
from .models import HttpError, HttpRequest, HttpResponse, RequestResult
from .auth import create_auth_token
from .bulk_data_client import BulkDataClient

__all__ = [
    "AuthType",
    "AuthenticationOptions",
    "NormalizedConfig",
    "RequestSettings",
    "HttpError",
    "HttpRequest",
    "HttpResponse",
    "RequestResult",
    "create_auth_token",
    "BulkDataClient",
]
