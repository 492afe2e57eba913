"""
Bulk Data Tester

Runs conformance test suites against asynchronous bulk-data export servers:
kick-off, status polling, downloads and cancellation, with SMART
backend-services authorization.
"""

__version__ = "0.1.0"
__author__ = "Bulk Data Tester Team"

from .core.config import Config
from .core.exceptions import BDTError
from .core.logging_config import setup_logging
from .client.bulk_data_client import BulkDataClient
from .client.settings import NormalizedConfig
from .execution.runner import TestRunner, run_tests

__all__ = [
    "Config",
    "BDTError",
    "setup_logging",
    "BulkDataClient",
    "NormalizedConfig",
    "TestRunner",
    "run_tests",
]
