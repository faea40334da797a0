# ABOUTME: Push and pull syncers between local bills and the remote ledger
# ABOUTME: Exports PushSyncer, PullSyncer, and HouseholdLocks

from billsync.sync.locks import HouseholdLocks
from billsync.sync.pull import PullSyncer
from billsync.sync.push import PushSyncer

__all__ = ["HouseholdLocks", "PullSyncer", "PushSyncer"]
