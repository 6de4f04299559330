"""
Cache Models for LedgerSync

Defines the logical tables the cache knows about and the list-level
entry that decides whether a read can be served locally.

DESIGN DECISION: Cached records themselves are plain dicts.
The cache never interprets record fields beyond `id` and the
ownership columns, so the ledger schema can evolve independently.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# A cached record: arbitrary fields plus a stable `id`
Record = dict[str, Any]


class CacheNamespace(str, Enum):
    """
    Logical tables held in the local cache.

    Values match the remote table names.
    """
    TRANSACTIONS = "transactions"
    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    SUBCATEGORIES = "subcategories"
    TAGS = "tags"
    TEMPLATES = "templates"
    FILTERS = "filters"
    CONTACTS = "contacts"
    CONTACT_TAGS = "contact_tags"
    DEBTS = "debts"
    DEBT_PAYMENTS = "debt_payments"
    SCHEDULED_PAYMENTS = "scheduled_payments"
    PRODUCTS = "products"
    USER_SETTINGS = "user_settings"
    DASHBOARD_CARDS = "dashboard_cards"


# Tables inspected at start-up to decide whether the UI can render from cache
PRIMARY_NAMESPACES = (
    CacheNamespace.TRANSACTIONS,
    CacheNamespace.ACCOUNTS,
    CacheNamespace.CATEGORIES,
    CacheNamespace.CONTACTS,
    CacheNamespace.DEBTS,
)


def make_cache_key(user_id: str, logical_key: str) -> str:
    """
    Build a user-scoped cache key.

    Format: `{user_id}:{logical_key}`
    """
    if not user_id:
        raise ValueError("A cache key requires a user id")
    return f"{user_id}:{logical_key}"


class CacheEntry(BaseModel):
    """
    A list-level cache entry.

    Trustworthy for reads only while `now - last_updated < ttl`.
    """

    data: Any = Field(
        ...,
        description="The cached value (usually a list of records)"
    )
    last_updated: float = Field(
        ...,
        description="When the value was stored (epoch seconds)"
    )
    ttl: float = Field(
        ...,
        gt=0,
        description="How long the value is trusted (seconds)"
    )

    def age(self, now: float) -> float:
        return now - self.last_updated

    def is_fresh(self, now: float) -> bool:
        """Check whether the entry may still be served without a fetch."""
        return self.age(now) < self.ttl

    @property
    def expires_at(self) -> float:
        return self.last_updated + self.ttl


class CacheSummary(BaseModel):
    """Record counts per table, used at start-up."""

    counts: dict[str, int] = Field(default_factory=dict)

    @property
    def has_cached_data(self) -> bool:
        return any(count > 0 for count in self.counts.values())

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())


def record_id_of(record: Optional[Record]) -> Optional[str]:
    """Get a record's id as a string, or None if it has none."""
    if not record:
        return None
    record_id = record.get("id")
    if record_id is None:
        return None
    return str(record_id)
