"""Consumer-side SDK for the VaultSync API.

Learn: Three pieces keep a client in step with the server:
1. ApiClient — authenticated HTTP calls with single-flight token refresh
2. EventStream — the /ws connection delivering `asset_processed` events
3. StateSynchronizer — applies those events to the local QueryCache

error_messages turns any ApiError into a stable, localized message plus
a recoverability flag.
"""

from vaultsync.client.api_client import ApiClient, ApiError
from vaultsync.client.cache import QueryCache
from vaultsync.client.session import SessionStore
from vaultsync.client.sync import Notification, NotificationLog, StateSynchronizer

__all__ = [
    "ApiClient",
    "ApiError",
    "Notification",
    "NotificationLog",
    "QueryCache",
    "SessionStore",
    "StateSynchronizer",
]
