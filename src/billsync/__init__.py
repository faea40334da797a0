# ABOUTME: billsync package for syncing household bills with a shared-expense ledger
# ABOUTME: Exports create_server, SyncEngine, and version info

from billsync.engine import SyncEngine
from billsync.server import create_server

__version__ = "0.1.0"
__all__ = ["SyncEngine", "create_server", "__version__"]
