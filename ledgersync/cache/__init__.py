"""Local cache tiers."""

from ledgersync.cache.freshness import FRESHNESS_AREA, FreshnessCache
from ledgersync.cache.index import RecordIndex
from ledgersync.cache.record_store import PersistentRecordStore
from ledgersync.cache.ttl_cache import TTLListCache, create_list_cache, ttl_area

__all__ = [
    "FRESHNESS_AREA",
    "FreshnessCache",
    "PersistentRecordStore",
    "RecordIndex",
    "TTLListCache",
    "create_list_cache",
    "ttl_area",
]
