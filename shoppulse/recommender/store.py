"""Event store adapter for the recommendation pipeline.

The pipeline treats persistence as an external collaborator. ``EventStore``
is the contract it relies on: point lookups, filtered range scans and
grouped aggregations (the equivalent of SQL ``GROUP BY``). All methods are
coroutines so a database-backed implementation can await its driver.

``InMemoryEventStore`` is the reference implementation used by the API,
the CLI and the tests. Grouped aggregations are computed with pandas.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from shoppulse.recommender.models import (
    ActivityEvent,
    ActivityType,
    BrowsingHistoryEntry,
    Order,
    OrderItem,
    OrderStatus,
    PreferenceVector,
    Product,
    Recommendation,
    RecommendationBatch,
    RecommendationType,
    utcnow,
)

# Configure module logger
logger = logging.getLogger(__name__)

# Tables purged by the cleanup job
ACTIVITY_TABLE = "user_activities"
BROWSING_HISTORY_TABLE = "browsing_history"
RECOMMENDATION_TABLE = "product_recommendations"

# CSV seed filenames
PRODUCTS_FILENAME = "products.csv"
ACTIVITIES_FILENAME = "activities.csv"
ORDERS_FILENAME = "orders.csv"
ORDER_ITEMS_FILENAME = "order_items.csv"


class EventStore(ABC):
    """Queryable store of activity, catalog, order and recommendation records.

    Implementations backed by a database or remote service must wrap driver
    and connection failures in ``PersistenceError``. The strategy resolver
    treats it as a cue to try the next strategy. Preference reads start from
    an empty vector on it, and the trend endpoint answers 503. Any other
    exception is treated as a bug and propagates.
    """

    # Catalog
    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    async def find_products(
        self,
        ids: Optional[Iterable[str]] = None,
        category_id: Optional[str] = None,
        listed_only: bool = True,
    ) -> List[Product]: ...

    # Activity
    @abstractmethod
    async def record_activity(self, event: ActivityEvent) -> None: ...

    @abstractmethod
    async def find_activities(
        self,
        user_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        activity_types: Optional[Sequence[ActivityType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[ActivityEvent]: ...

    @abstractmethod
    async def count_activities(self, **filters) -> int: ...

    @abstractmethod
    async def activity_stats_by_entity(
        self,
        since: datetime,
        entity_type: str = "product",
        activity_types: Optional[Sequence[ActivityType]] = None,
    ) -> pd.DataFrame:
        """Group activity by entity: columns ``entity_id, activity_count, first_seen``."""

    @abstractmethod
    async def distinct_entities(self, entity_type: str, since: datetime) -> List[str]: ...

    @abstractmethod
    async def active_user_ids(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        """Users with activity since ``since``, most recently active first."""

    @abstractmethod
    async def last_activity_at(self, user_id: str) -> Optional[datetime]: ...

    # Orders
    @abstractmethod
    async def find_orders(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[OrderStatus]] = None,
        since: Optional[datetime] = None,
    ) -> List[Order]: ...

    @abstractmethod
    async def order_item_stats(
        self,
        since: datetime,
        exclude_statuses: Sequence[OrderStatus] = (),
    ) -> pd.DataFrame:
        """Group order items by product: ``product_id, quantity, total_price, order_count``."""

    @abstractmethod
    async def order_product_pairs(self) -> pd.DataFrame:
        """Distinct ``(order_id, product_id)`` rows across all orders."""

    # Browsing history
    @abstractmethod
    async def browsing_history(
        self, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> List[BrowsingHistoryEntry]:
        """History for an actor, most recently viewed first."""

    @abstractmethod
    async def upsert_browsing_history(self, event: ActivityEvent) -> BrowsingHistoryEntry: ...

    @abstractmethod
    async def mark_conversion(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> int: ...

    # Recommendations
    @abstractmethod
    async def find_recommendations(
        self,
        recommendation_type: RecommendationType,
        now: datetime,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        product_id: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Recommendation]:
        """Non-expired records for exactly this scope, highest score first."""

    @abstractmethod
    async def save_recommendations(self, records: Sequence[Recommendation]) -> int:
        """Persist records, replacing any existing records of the same scope."""

    @abstractmethod
    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]: ...

    @abstractmethod
    async def update_recommendation(self, record: Recommendation) -> None: ...

    @abstractmethod
    async def create_batch(self, batch: RecommendationBatch) -> RecommendationBatch: ...

    @abstractmethod
    async def complete_batch(self, batch_id: str, total_generated: int, now: datetime) -> None: ...

    # Preferences
    @abstractmethod
    async def load_preferences(self, actor_id: str) -> Optional[PreferenceVector]: ...

    @abstractmethod
    async def save_preferences(self, vector: PreferenceVector) -> None: ...

    # Maintenance
    @abstractmethod
    async def purge(self, table: str, cutoff: datetime) -> int: ...


def _scope(record: Recommendation) -> tuple:
    return (
        record.recommendation_type,
        record.user_id,
        record.session_id,
        record.product_id,
        record.metadata.get("category_id"),
    )


class InMemoryEventStore(EventStore):
    """Reference ``EventStore`` backed by Python lists and pandas."""

    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.activities: List[ActivityEvent] = []
        self.orders: Dict[str, Order] = {}
        self.history: List[BrowsingHistoryEntry] = []
        self.recommendations: Dict[str, Recommendation] = {}
        self.batches: Dict[str, RecommendationBatch] = {}
        self.preferences: Dict[str, PreferenceVector] = {}

    # ------------------------------------------------------------------
    # Seeding helpers (synchronous, used by fixtures and the CLI)
    # ------------------------------------------------------------------

    def add_products(self, products: Iterable[Product]) -> None:
        for product in products:
            self.products[product.id] = product

    def add_orders(self, orders: Iterable[Order]) -> None:
        for order in orders:
            self.orders[order.id] = order

    def add_activities(self, events: Iterable[ActivityEvent]) -> None:
        self.activities.extend(events)

    def add_history(self, entries: Iterable[BrowsingHistoryEntry]) -> None:
        self.history.extend(entries)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def get_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    async def find_products(
        self,
        ids: Optional[Iterable[str]] = None,
        category_id: Optional[str] = None,
        listed_only: bool = True,
    ) -> List[Product]:
        if ids is not None:
            wanted = set(ids)
            candidates = [p for pid, p in self.products.items() if pid in wanted]
        else:
            candidates = list(self.products.values())
        return [
            p
            for p in candidates
            if (not listed_only or p.is_listed)
            and (category_id is None or p.category_id == category_id)
        ]

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def record_activity(self, event: ActivityEvent) -> None:
        self.activities.append(event)

    def _filter_activities(
        self,
        user_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        activity_types: Optional[Sequence[ActivityType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ActivityEvent]:
        types = set(activity_types) if activity_types is not None else None
        return [
            e
            for e in self.activities
            if (user_id is None or e.user_id == user_id)
            and (actor_id is None or e.actor_id == actor_id)
            and (entity_id is None or e.entity_id == entity_id)
            and (entity_type is None or e.entity_type == entity_type)
            and (types is None or e.activity_type in types)
            and (since is None or e.timestamp >= since)
            and (until is None or e.timestamp < until)
        ]

    async def find_activities(
        self,
        user_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        activity_types: Optional[Sequence[ActivityType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[ActivityEvent]:
        events = self._filter_activities(
            user_id=user_id,
            actor_id=actor_id,
            entity_id=entity_id,
            entity_type=entity_type,
            activity_types=activity_types,
            since=since,
            until=until,
        )
        events.sort(key=lambda e: e.timestamp, reverse=newest_first)
        if limit is not None:
            events = events[:limit]
        return events

    async def count_activities(self, **filters) -> int:
        return len(self._filter_activities(**filters))

    async def activity_stats_by_entity(
        self,
        since: datetime,
        entity_type: str = "product",
        activity_types: Optional[Sequence[ActivityType]] = None,
    ) -> pd.DataFrame:
        events = self._filter_activities(
            entity_type=entity_type, activity_types=activity_types, since=since
        )
        rows = [
            {"entity_id": e.entity_id, "timestamp": e.timestamp}
            for e in events
            if e.entity_id is not None
        ]
        if not rows:
            return pd.DataFrame(columns=["entity_id", "activity_count", "first_seen"])

        df = pd.DataFrame(rows)
        stats = (
            df.groupby("entity_id")
            .agg(activity_count=("timestamp", "size"), first_seen=("timestamp", "min"))
            .reset_index()
        )
        return stats

    async def distinct_entities(self, entity_type: str, since: datetime) -> List[str]:
        seen: Dict[str, None] = {}
        for e in self._filter_activities(entity_type=entity_type, since=since):
            if e.entity_id is not None:
                seen.setdefault(e.entity_id, None)
        return list(seen)

    async def active_user_ids(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        latest: Dict[str, datetime] = {}
        for e in self._filter_activities(since=since):
            if e.user_id is None:
                continue
            if e.user_id not in latest or e.timestamp > latest[e.user_id]:
                latest[e.user_id] = e.timestamp
        ordered = sorted(latest, key=lambda uid: latest[uid], reverse=True)
        return ordered[:limit] if limit is not None else ordered

    async def last_activity_at(self, user_id: str) -> Optional[datetime]:
        timestamps = [e.timestamp for e in self.activities if e.user_id == user_id]
        return max(timestamps) if timestamps else None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def find_orders(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[OrderStatus]] = None,
        since: Optional[datetime] = None,
    ) -> List[Order]:
        wanted = set(statuses) if statuses is not None else None
        orders = [
            o
            for o in self.orders.values()
            if (user_id is None or o.user_id == user_id)
            and (wanted is None or o.status in wanted)
            and (since is None or o.placed_at >= since)
        ]
        orders.sort(key=lambda o: o.placed_at)
        return orders

    async def order_item_stats(
        self,
        since: datetime,
        exclude_statuses: Sequence[OrderStatus] = (),
    ) -> pd.DataFrame:
        excluded = set(exclude_statuses)
        rows = [
            {
                "order_id": order.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "total_price": item.total_price,
            }
            for order in self.orders.values()
            if order.placed_at >= since and order.status not in excluded
            for item in order.items
        ]
        if not rows:
            return pd.DataFrame(columns=["product_id", "quantity", "total_price", "order_count"])

        df = pd.DataFrame(rows)
        return (
            df.groupby("product_id")
            .agg(
                quantity=("quantity", "sum"),
                total_price=("total_price", "sum"),
                order_count=("order_id", "nunique"),
            )
            .reset_index()
        )

    async def order_product_pairs(self) -> pd.DataFrame:
        rows = [
            {"order_id": order.id, "product_id": item.product_id}
            for order in self.orders.values()
            for item in order.items
        ]
        if not rows:
            return pd.DataFrame(columns=["order_id", "product_id"])
        return pd.DataFrame(rows).drop_duplicates().reset_index(drop=True)

    # ------------------------------------------------------------------
    # Browsing history
    # ------------------------------------------------------------------

    async def browsing_history(
        self, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> List[BrowsingHistoryEntry]:
        if user_id is not None:
            entries = [h for h in self.history if h.user_id == user_id]
        else:
            entries = [h for h in self.history if h.session_id == session_id]
        return sorted(entries, key=lambda h: h.last_viewed_at, reverse=True)

    async def upsert_browsing_history(self, event: ActivityEvent) -> BrowsingHistoryEntry:
        existing = None
        if event.user_id is not None:
            existing = next(
                (
                    h
                    for h in self.history
                    if h.user_id == event.user_id and h.product_id == event.entity_id
                ),
                None,
            )

        if existing is not None:
            existing.view_count += 1
            existing.last_viewed_at = event.timestamp
            existing.time_spent += event.duration_seconds or 0.0
            existing.source = event.metadata.get("source") or existing.source
            existing.device_type = event.device_type or existing.device_type
            return existing

        entry = BrowsingHistoryEntry(
            user_id=event.user_id,
            session_id=event.session_id,
            product_id=event.entity_id,
            time_spent=event.duration_seconds or 0.0,
            source=event.metadata.get("source"),
            device_type=event.device_type,
            last_viewed_at=event.timestamp,
            created_at=event.timestamp,
        )
        self.history.append(entry)
        return entry

    async def mark_conversion(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> int:
        updated = 0
        for entry in self.history:
            owner_matches = entry.user_id == user_id if user_id else entry.session_id == session_id
            if owner_matches and (product_id is None or entry.product_id == product_id):
                entry.conversion = True
                entry.conversion_at = utcnow()
                updated += 1
        return updated

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def find_recommendations(
        self,
        recommendation_type: RecommendationType,
        now: datetime,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        product_id: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Recommendation]:
        wanted = (recommendation_type, user_id, session_id, product_id, category_id)
        matches = [
            r
            for r in self.recommendations.values()
            if _scope(r) == wanted and (r.expires_at is None or r.expires_at > now)
        ]
        matches.sort(key=lambda r: r.score, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [replace(r, metadata=dict(r.metadata)) for r in matches]

    async def save_recommendations(self, records: Sequence[Recommendation]) -> int:
        scopes = {_scope(r) for r in records}
        stale = [rid for rid, r in self.recommendations.items() if _scope(r) in scopes]
        for rid in stale:
            del self.recommendations[rid]
        for record in records:
            self.recommendations[record.id] = record
        return len(records)

    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        return self.recommendations.get(recommendation_id)

    async def update_recommendation(self, record: Recommendation) -> None:
        self.recommendations[record.id] = record

    async def create_batch(self, batch: RecommendationBatch) -> RecommendationBatch:
        self.batches[batch.id] = batch
        return batch

    async def complete_batch(self, batch_id: str, total_generated: int, now: datetime) -> None:
        batch = self.batches[batch_id]
        batch.status = "completed"
        batch.total_generated = total_generated
        batch.completed_at = now

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def load_preferences(self, actor_id: str) -> Optional[PreferenceVector]:
        return self.preferences.get(actor_id)

    async def save_preferences(self, vector: PreferenceVector) -> None:
        self.preferences[vector.actor_id] = vector

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge(self, table: str, cutoff: datetime) -> int:
        if table == ACTIVITY_TABLE:
            before = len(self.activities)
            self.activities = [e for e in self.activities if e.timestamp >= cutoff]
            return before - len(self.activities)

        if table == BROWSING_HISTORY_TABLE:
            before = len(self.history)
            self.history = [h for h in self.history if h.created_at >= cutoff]
            return before - len(self.history)

        if table == RECOMMENDATION_TABLE:
            stale = [
                rid
                for rid, r in self.recommendations.items()
                if r.created_at < cutoff and not r.viewed and not r.clicked
            ]
            for rid in stale:
                del self.recommendations[rid]
            return len(stale)

        logger.warning(f"Unknown table '{table}' requested for purge")
        return 0

    # ------------------------------------------------------------------
    # CSV loading
    # ------------------------------------------------------------------

    @classmethod
    def from_csv_dir(cls, data_dir: str) -> "InMemoryEventStore":
        """Build a store from CSV exports.

        Expects ``products.csv`` and optionally ``activities.csv``,
        ``orders.csv`` and ``order_items.csv`` in ``data_dir``.

        Raises:
            FileNotFoundError: If the directory or ``products.csv`` is missing.
        """
        data_path = Path(data_dir)
        products_file = data_path / PRODUCTS_FILENAME
        if not products_file.exists():
            raise FileNotFoundError(f"Products CSV not found: {products_file}")

        store = cls()

        products_df = pd.read_csv(products_file, parse_dates=["created_at"])
        products_df["created_at"] = pd.to_datetime(products_df["created_at"], utc=True)
        store.add_products(
            Product(
                id=str(row.id),
                title=row.title,
                slug=str(row.slug) if not pd.isna(row.slug) else "",
                price=float(row.price),
                category_id=None if pd.isna(row.category_id) else str(row.category_id),
                brand_id=None if pd.isna(row.brand_id) else str(row.brand_id),
                average_rating=float(row.average_rating),
                review_count=int(row.review_count),
                is_active=bool(row.is_active),
                visibility=row.visibility,
                created_at=row.created_at.to_pydatetime(),
            )
            for row in products_df.itertuples(index=False)
        )

        activities_file = data_path / ACTIVITIES_FILENAME
        if activities_file.exists():
            df = pd.read_csv(activities_file)
            df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
            store.add_activities(
                ActivityEvent(
                    activity_type=ActivityType(row.activity_type),
                    session_id=str(row.session_id),
                    timestamp=row.timestamp.to_pydatetime(),
                    user_id=None if pd.isna(row.user_id) else str(row.user_id),
                    entity_id=None if pd.isna(row.entity_id) else str(row.entity_id),
                    entity_type=None if pd.isna(row.entity_type) else row.entity_type,
                    device_type=None if pd.isna(row.device_type) else row.device_type,
                )
                for row in df.itertuples(index=False)
            )

        orders_file = data_path / ORDERS_FILENAME
        items_file = data_path / ORDER_ITEMS_FILENAME
        if orders_file.exists():
            orders_df = pd.read_csv(orders_file)
            orders_df["placed_at"] = pd.to_datetime(orders_df["placed_at"], utc=True)
            items_by_order: Dict[str, List[OrderItem]] = {}
            if items_file.exists():
                items_df = pd.read_csv(items_file)
                for row in items_df.itertuples(index=False):
                    items_by_order.setdefault(str(row.order_id), []).append(
                        OrderItem(
                            product_id=str(row.product_id),
                            quantity=int(row.quantity),
                            total_price=float(row.total_price),
                        )
                    )
            store.add_orders(
                Order(
                    id=str(row.id),
                    user_id=str(row.user_id),
                    status=OrderStatus(row.status),
                    total=float(row.total),
                    placed_at=row.placed_at.to_pydatetime(),
                    items=items_by_order.get(str(row.id), []),
                )
                for row in orders_df.itertuples(index=False)
            )

        logger.info(
            f"Loaded store from {data_dir}",
            extra={
                "products": len(store.products),
                "activities": len(store.activities),
                "orders": len(store.orders),
            },
        )
        return store
