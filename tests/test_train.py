"""Tests for the model training module.

Covers the SVD training helper, the interaction matrix builder and the
``ModelTrainer`` that persists similarity records and model artifacts.
"""

import random
from pathlib import Path

import pytest
from scipy.sparse import csr_matrix
from sklearn.decomposition import TruncatedSVD

from conftest import days_ago, event, fixed_clock, make_products, view
from shoppulse.config import Settings
from shoppulse.recommender.models import ActivityType, RecommendationType
from shoppulse.recommender.store import InMemoryEventStore
from shoppulse.recommender.train import ModelTrainer, train_svd_model
from shoppulse.recommender.trends import TrendEngine
from shoppulse.recommender.utils import (
    build_interaction_matrix,
    load_model_artifacts,
    save_model_artifacts,
)


@pytest.fixture
def training_store() -> InMemoryEventStore:
    """Store with eight shoppers browsing and buying across the catalog.

    Returns:
        Seeded in-memory store.
    """
    rng = random.Random(42)
    store = InMemoryEventStore()
    store.add_products(make_products())
    product_ids = ["p1", "p2", "p3", "p4", "p5"]
    for user in range(8):
        for _ in range(6):
            store.add_activities(
                [
                    event(
                        rng.choice([ActivityType.PRODUCT_VIEW, ActivityType.ADD_TO_CART]),
                        rng.choice(product_ids),
                        session_id=f"s-{user}",
                        user_id=f"u{user}",
                        at=days_ago(rng.randint(0, 5)),
                    )
                ]
            )
    return store


def make_trainer(store: InMemoryEventStore, model_dir=None) -> ModelTrainer:
    settings = Settings(scheduler_enabled=False, model_dir=model_dir, svd_components=3)
    trends = TrendEngine(store, settings, clock=fixed_clock)
    return ModelTrainer(store, settings, trends, clock=fixed_clock)


def test_train_svd_model_reduces_components() -> None:
    """Test that oversized n_components is clamped to the matrix rank."""
    matrix = csr_matrix([[1.0, 0.0, 2.0], [0.0, 3.0, 1.0], [4.0, 1.0, 0.0]])

    model = train_svd_model(matrix, n_components=10, n_iter=5)

    assert isinstance(model, TruncatedSVD)
    assert model.n_components == 2


def test_train_svd_model_rejects_empty_matrix() -> None:
    with pytest.raises(ValueError):
        train_svd_model(csr_matrix((3, 3)))


def test_interaction_matrix_sums_weighted_events() -> None:
    events = [
        view("p1", user_id="u1"),
        event(ActivityType.ADD_TO_CART, "p1", user_id="u1"),
        view("p2", user_id="u2"),
        # anonymous and non-product events are ignored
        view("p3"),
        event(ActivityType.SEARCH, user_id="u1"),
    ]
    weights = {"product_view": 1.0, "add_to_cart": 3.0}

    matrix, user_idx, product_idx = build_interaction_matrix(events, weights, 0.1)

    assert matrix.shape == (2, 2)
    assert matrix[user_idx["u1"], product_idx["p1"]] == pytest.approx(4.0)
    assert "p3" not in product_idx


def test_interaction_matrix_requires_product_events() -> None:
    with pytest.raises(ValueError):
        build_interaction_matrix([view("p1")], {}, 0.1)


def test_model_artifacts_round_trip(tmp_path: Path) -> None:
    path = save_model_artifacts("demo", {"answer": 42}, str(tmp_path))

    assert path.exists()
    assert load_model_artifacts("demo", str(tmp_path)) == {"answer": 42}
    assert load_model_artifacts("missing", str(tmp_path)) is None


@pytest.mark.asyncio
async def test_similarity_training_persists_records(training_store) -> None:
    trainer = make_trainer(training_store)

    saved = await trainer.train_similarity_model()

    assert saved > 0
    records = list(training_store.recommendations.values())
    assert all(r.recommendation_type == RecommendationType.SIMILAR_PRODUCTS for r in records)
    assert all(r.product_id != r.recommended_product_id for r in records)
    assert all(0.0 <= r.score <= 1.0 for r in records)
    batch = next(iter(training_store.batches.values()))
    assert batch.status == "completed"
    assert batch.total_generated == saved


@pytest.mark.asyncio
async def test_train_skips_recent_models(training_store) -> None:
    trainer = make_trainer(training_store)

    assert await trainer.train("personalization") is True
    assert await trainer.train("personalization") is False
    assert await trainer.train("personalization", force=True) is True


@pytest.mark.asyncio
async def test_train_rejects_unknown_model(training_store) -> None:
    with pytest.raises(ValueError):
        await make_trainer(training_store).train("clustering")


@pytest.mark.asyncio
async def test_personalization_model_saved_and_reloaded(training_store, tmp_path: Path) -> None:
    """Test that a trained personalization model is loaded by a new trainer.

    Args:
        training_store: Seeded store.
        tmp_path: Directory for model artifacts.
    """
    trainer = make_trainer(training_store, model_dir=str(tmp_path))
    await trainer.train("personalization")

    assert (tmp_path / "personalization.joblib").exists()

    reloaded = make_trainer(training_store, model_dir=str(tmp_path))
    assert reloaded.personalizer.knows_user("u0")
    assert "personalization" in reloaded.trained_at
