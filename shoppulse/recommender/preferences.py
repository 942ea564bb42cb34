"""Preference vector engine.

Maintains a weighted preference vector per actor (user id, or session id for
anonymous shoppers) over five dimensions: categories, brands, price ranges,
time-of-day slots and devices. Product events add the activity's weight to
the product's category, brand and price-range buckets; every event counts
once towards its time slot and device.
"""

import logging
import random
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from shoppulse.config import Settings
from shoppulse.exceptions import PersistenceError
from shoppulse.recommender.cache import StateCache
from shoppulse.recommender.models import ActivityEvent, PreferenceVector, Product, utcnow
from shoppulse.recommender.store import EventStore
from shoppulse.recommender.utils import activity_weight

# Configure module logger
logger = logging.getLogger(__name__)


def price_range_label(price: float, settings: Settings) -> str:
    for upper_bound, label in settings.price_ranges:
        if price < upper_bound:
            return label
    return settings.price_range_fallback


def time_slot_label(hour: int, settings: Settings) -> str:
    for upper_bound, label in settings.time_slots:
        if hour < upper_bound:
            return label
    return settings.time_slot_fallback


class PreferenceEngine:
    """Keeps per-actor preference vectors current as events arrive."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.rng = rng or random.Random()
        self.cache: StateCache[PreferenceVector] = StateCache(
            "preferences", ttl_seconds=settings.preference_cache_ttl, clock=clock
        )

    def apply_event(
        self,
        vector: PreferenceVector,
        event: ActivityEvent,
        product: Optional[Product] = None,
    ) -> None:
        """Add one event's contribution to ``vector`` in place."""
        if product is not None:
            weight = activity_weight(
                event.activity_type,
                self.settings.activity_weights,
                self.settings.default_activity_weight,
            )
            if product.category_id:
                vector.add("categories", product.category_id, weight)
            if product.brand_id:
                vector.add("brands", product.brand_id, weight)
            vector.add("price_ranges", price_range_label(product.price, self.settings), weight)

        vector.add("time_slots", time_slot_label(event.timestamp.hour, self.settings), 1.0)
        if event.device_type:
            vector.add("devices", event.device_type, 1.0)

    async def _product_for(
        self, event: ActivityEvent, products: Optional[Dict[str, Product]] = None
    ) -> Optional[Product]:
        if not event.is_product_event:
            return None
        if products is not None and event.entity_id in products:
            return products[event.entity_id]
        return await self.store.get_product(event.entity_id)

    async def get_preferences(self, actor_id: str) -> PreferenceVector:
        """Return the cached vector, loading it from the store or creating it if absent."""
        vector = self.cache.get(actor_id)
        if vector is not None:
            return vector

        try:
            vector = await self.store.load_preferences(actor_id)
        except PersistenceError as e:
            logger.warning(
                "Could not load stored preferences, starting empty",
                extra={"actor_id": actor_id, "error": e.message},
            )
            vector = None

        if vector is None:
            vector = PreferenceVector(actor_id=actor_id, last_updated=self.clock())
        self.cache.set(actor_id, vector)
        return vector

    async def update_on_event(self, event: ActivityEvent) -> PreferenceVector:
        """Fold a single activity event into its actor's vector."""
        actor_id = event.actor_id
        product = await self._product_for(event)

        async with self.cache.lock(actor_id):
            vector = await self.get_preferences(actor_id)
            self.apply_event(vector, event, product)
            vector.last_updated = self.clock()
            self.cache.set(actor_id, vector)

            if self.rng.random() < self.settings.preference_persist_probability:
                await self._persist(vector)

        return vector

    async def _persist(self, vector: PreferenceVector) -> None:
        try:
            await self.store.save_preferences(vector)
            logger.debug("Persisted preference vector", extra={"actor_id": vector.actor_id})
        except PersistenceError as e:
            logger.warning(
                "Failed to persist preference vector",
                extra={"actor_id": vector.actor_id, "error": e.message},
            )

    async def build_from_events(
        self, actor_id: str, events: Iterable[ActivityEvent]
    ) -> PreferenceVector:
        """Build a fresh vector from a window of events without touching the cache."""
        events = list(events)
        product_ids = {e.entity_id for e in events if e.is_product_event}
        products = {
            p.id: p
            for p in await self.store.find_products(ids=product_ids, listed_only=False)
        }

        vector = PreferenceVector(actor_id=actor_id, last_updated=self.clock())
        for event in events:
            self.apply_event(vector, event, await self._product_for(event, products))
        return vector
