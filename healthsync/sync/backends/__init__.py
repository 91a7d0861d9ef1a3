"""Backend implementations for the sync engine."""

from healthsync.sync.backends.base import HealthBackend, ManualActivity, RecentActivity
from healthsync.sync.backends.memory import InMemoryHealthBackend, InMemoryStore
from healthsync.sync.backends.supabase import SupabaseBackend

__all__ = [
    "HealthBackend",
    "InMemoryHealthBackend",
    "InMemoryStore",
    "ManualActivity",
    "RecentActivity",
    "SupabaseBackend",
]
