"""
Client side of the operations tracker: HTTP clients and the backoff poller.
"""

from optracker.client.http_client import AsyncOperationsClient, OperationsClient
from optracker.client.poller import AsyncPoller, Poller, PollingConfig, backoff_delays, unwrap

__all__ = [
    "AsyncOperationsClient",
    "AsyncPoller",
    "OperationsClient",
    "Poller",
    "PollingConfig",
    "backoff_delays",
    "unwrap",
]
