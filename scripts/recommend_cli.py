"""CLI script for getting product recommendations.

Useful for testing and evaluation. Loads CSV seed data into an in-memory
store, optionally trains the SVD models, resolves a recommendation request
and prints the ranked list to the console.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from shoppulse.config import Settings
from shoppulse.engine import build_engine
from shoppulse.exceptions import ShopPulseException
from shoppulse.recommender.models import RecommendationType
from shoppulse.recommender.strategies import RecommendationRequest, parse_type

# Setup logging
logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


async def run(
    recommendation_type: str,
    data_dir: str,
    model_dir: Optional[str],
    user_id: Optional[str],
    session_id: Optional[str],
    product_id: Optional[str],
    category_id: Optional[str],
    limit: int,
    train: bool,
    explain: bool,
) -> int:
    settings = Settings(data_dir=data_dir, model_dir=model_dir, scheduler_enabled=False)
    engine = build_engine(settings)

    if train:
        for model_type in ("similarity", "personalization"):
            try:
                await engine.trainer.train(model_type, data_window="monthly", force=True)
            except ValueError as e:
                logger.warning(f"Skipping {model_type} training: {e}")
        if user_id:
            await engine.tasks.generate_personalized(user_id)

    resolution = await engine.resolve(
        RecommendationRequest(
            recommendation_type=parse_type(recommendation_type),
            user_id=user_id,
            session_id=session_id,
            product_id=product_id,
            category_id=category_id,
            limit=limit,
        )
    )

    if not resolution.recommendations:
        print("No recommendations available")
        return 0

    print(f"Strategy: {resolution.strategy}{' (fallback)' if resolution.fallback else ''}")
    for rec in resolution.recommendations:
        title = rec.recommended_product["title"] if rec.recommended_product else ""
        print(f"{rec.position:>3}. {rec.recommended_product_id:<12} {rec.score:.3f}  {title}")
        if explain:
            print(f"       {rec.algorithm_version} {rec.metadata}")
    return len(resolution.recommendations)


def main() -> None:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Get product recommendations from seed data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/recommend_cli.py trending --data-dir data
  python scripts/recommend_cli.py personalized --user-id u-7 --train
  python scripts/recommend_cli.py frequently_bought_together --product-id p-3 --explain
        """,
    )
    parser.add_argument(
        "type",
        choices=[t.value for t in RecommendationType],
        help="Recommendation type",
    )
    parser.add_argument("--data-dir", default="data", help="Directory with the CSV seed files")
    parser.add_argument("--model-dir", default=None, help="Directory for model artifacts")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--session-id", default=None)
    parser.add_argument("--product-id", default=None)
    parser.add_argument("--category-id", default=None)
    parser.add_argument(
        "--limit", type=int, default=10, help="Number of recommendations (default: 10)"
    )
    parser.add_argument("--train", action="store_true", help="Train the SVD models first")
    parser.add_argument("--explain", action="store_true", help="Show algorithm and metadata")
    args = parser.parse_args()

    try:
        asyncio.run(
            run(
                args.type,
                data_dir=args.data_dir,
                model_dir=args.model_dir,
                user_id=args.user_id,
                session_id=args.session_id,
                product_id=args.product_id,
                category_id=args.category_id,
                limit=args.limit,
                train=args.train,
                explain=args.explain,
            )
        )
    except FileNotFoundError as e:
        print(f"Error: seed data not found in {args.data_dir}", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        sys.exit(1)
    except ShopPulseException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
