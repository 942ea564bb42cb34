"""Generate fake storefront data for testing and development.

Creates the CSV seed files read by ``InMemoryEventStore.from_csv_dir``:
``products.csv``, ``activities.csv``, ``orders.csv`` and ``order_items.csv``.
Shoppers browse products in sessions and a share of sessions end in an order,
so the data exercises the trending, bestseller, market-basket and
personalization paths.

Example:
    Run the script directly to generate default data:
        $ python scripts/generate_fake_data.py --output-dir data

    Or import and use programmatically:
        from scripts.generate_fake_data import generate_dataset
        frames = generate_dataset(num_users=100, num_products=200)
"""

import argparse
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from shoppulse.recommender.models import ActivityType, OrderStatus

# Default configuration constants
DEFAULT_NUM_USERS = 50
DEFAULT_NUM_PRODUCTS = 100
DEFAULT_NUM_SESSIONS = 600
DEFAULT_DAYS_BACK = 90
NUM_CATEGORIES = 8
NUM_BRANDS = 12
ANONYMOUS_SHARE = 0.3
ORDER_SHARE = 0.25
DEVICES = ("desktop", "mobile", "tablet")
BROWSE_TYPES = (
    ActivityType.PRODUCT_VIEW,
    ActivityType.PRODUCT_VIEW,
    ActivityType.PRODUCT_VIEW,
    ActivityType.PRODUCT_CLICK,
    ActivityType.ADD_TO_WISHLIST,
)
ORDER_STATUS_WEIGHTS = {
    OrderStatus.DELIVERED: 0.7,
    OrderStatus.SHIPPED: 0.1,
    OrderStatus.PROCESSING: 0.05,
    OrderStatus.CANCELLED: 0.1,
    OrderStatus.REFUNDED: 0.05,
}


def generate_products(num_products: int, now: datetime, rng: random.Random) -> pd.DataFrame:
    rows = []
    for i in range(1, num_products + 1):
        rows.append(
            {
                "id": f"p-{i}",
                "title": f"Product {i}",
                "slug": f"product-{i}",
                "price": round(rng.uniform(5, 900), 2),
                "category_id": f"c-{rng.randint(1, NUM_CATEGORIES)}",
                "brand_id": f"b-{rng.randint(1, NUM_BRANDS)}",
                "average_rating": round(rng.uniform(2.5, 5.0), 1),
                "review_count": rng.randint(0, 200),
                "is_active": rng.random() > 0.05,
                "visibility": "public",
                "created_at": now - timedelta(days=rng.randint(0, 365)),
            }
        )
    return pd.DataFrame(rows)


def generate_dataset(
    num_users: int = DEFAULT_NUM_USERS,
    num_products: int = DEFAULT_NUM_PRODUCTS,
    num_sessions: int = DEFAULT_NUM_SESSIONS,
    days_back: int = DEFAULT_DAYS_BACK,
    now: Optional[datetime] = None,
    seed: Optional[int] = None,
) -> Dict[str, pd.DataFrame]:
    """Generate a synthetic catalog with browsing sessions and orders.

    Args:
        num_users: Number of registered shoppers. Must be positive.
        num_products: Catalog size. Must be at least 2.
        num_sessions: Number of browsing sessions to simulate. Must be positive.
        days_back: Sessions are spread over this many days before ``now``.
        now: End of the simulated period (defaults to the current UTC time).
        seed: Random seed for reproducible data.

    Returns:
        Dictionary of DataFrames keyed by ``products``, ``activities``,
        ``orders`` and ``order_items``.

    Raises:
        ValueError: If any size parameter is out of range.
    """
    if num_users <= 0 or num_sessions <= 0 or days_back <= 0:
        raise ValueError("num_users, num_sessions and days_back must be positive")
    if num_products < 2:
        raise ValueError("num_products must be at least 2")

    rng = random.Random(seed)
    now = now or datetime.now(timezone.utc)
    products = generate_products(num_products, now, rng)
    prices = dict(zip(products["id"], products["price"]))
    product_ids = list(prices)

    activities = []
    orders = []
    order_items = []

    for s in range(1, num_sessions + 1):
        session_id = f"s-{s}"
        user_id = None if rng.random() < ANONYMOUS_SHARE else f"u-{rng.randint(1, num_users)}"
        device = rng.choice(DEVICES)
        started = now - timedelta(days=rng.randrange(days_back), seconds=rng.randrange(86400))
        timestamp = started

        def track(activity_type: ActivityType, entity_id: Optional[str], entity_type: Optional[str]):
            activities.append(
                {
                    "activity_type": activity_type.value,
                    "session_id": session_id,
                    "user_id": user_id,
                    "entity_id": entity_id,
                    "entity_type": entity_type,
                    "device_type": device,
                    "timestamp": timestamp,
                }
            )

        browsed = rng.sample(product_ids, k=min(len(product_ids), rng.randint(1, 6)))
        for product_id in browsed:
            track(rng.choice(BROWSE_TYPES), product_id, "product")
            timestamp += timedelta(seconds=rng.randint(10, 300))

        if user_id is None or rng.random() > ORDER_SHARE:
            continue

        basket = browsed[: rng.randint(1, len(browsed))]
        for product_id in basket:
            track(ActivityType.ADD_TO_CART, product_id, "product")
            timestamp += timedelta(seconds=rng.randint(5, 60))
        track(ActivityType.CHECKOUT_START, None, None)
        timestamp += timedelta(seconds=rng.randint(30, 300))
        track(ActivityType.CHECKOUT_COMPLETE, None, None)

        order_id = f"o-{len(orders) + 1}"
        total = 0.0
        for product_id in basket:
            quantity = rng.randint(1, 3)
            line_total = round(prices[product_id] * quantity, 2)
            total += line_total
            order_items.append(
                {
                    "order_id": order_id,
                    "product_id": product_id,
                    "quantity": quantity,
                    "total_price": line_total,
                }
            )
        orders.append(
            {
                "id": order_id,
                "user_id": user_id,
                "status": rng.choices(
                    list(ORDER_STATUS_WEIGHTS), weights=list(ORDER_STATUS_WEIGHTS.values())
                )[0].value,
                "total": round(total, 2),
                "placed_at": timestamp,
            }
        )

    activities_df = pd.DataFrame(activities).sort_values("timestamp").reset_index(drop=True)
    return {
        "products": products,
        "activities": activities_df,
        "orders": pd.DataFrame(orders, columns=["id", "user_id", "status", "total", "placed_at"]),
        "order_items": pd.DataFrame(
            order_items, columns=["order_id", "product_id", "quantity", "total_price"]
        ),
    }


def main() -> None:
    """Generate a dataset and write it as CSV files."""
    parser = argparse.ArgumentParser(description="Generate fake ShopPulse seed data")
    parser.add_argument("--output-dir", default="data", help="Directory for the CSV files")
    parser.add_argument("--users", type=int, default=DEFAULT_NUM_USERS)
    parser.add_argument("--products", type=int, default=DEFAULT_NUM_PRODUCTS)
    parser.add_argument("--sessions", type=int, default=DEFAULT_NUM_SESSIONS)
    parser.add_argument("--days-back", type=int, default=DEFAULT_DAYS_BACK)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    print(f"Generating {args.sessions} sessions...")
    print(f"Users: {args.users}, Products: {args.products}")

    try:
        frames = generate_dataset(
            num_users=args.users,
            num_products=args.products,
            num_sessions=args.sessions,
            days_back=args.days_back,
            seed=args.seed,
        )
    except ValueError as e:
        print(f"Error generating data: {e}")
        return

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for name, df in frames.items():
        df.to_csv(output_dir / f"{name}.csv", index=False)

    activities = frames["activities"]
    print(f"\nData generated successfully!")
    print(f"Saved to: {output_dir}")
    print(f"\nData summary:")
    print(f"  Products: {len(frames['products'])}")
    print(f"  Activities: {len(activities)}")
    print(f"  Orders: {len(frames['orders'])} ({len(frames['order_items'])} items)")
    print(f"  Date range: {activities['timestamp'].min()} to {activities['timestamp'].max()}")


if __name__ == "__main__":
    main()
