"""Model training module.

Trains the models behind the weekly retraining job using matrix
factorization via Truncated SVD over the weighted user-product interaction
matrix:

- ``similarity``: item latent factors compared with cosine similarity; the
  top matches per product are persisted as ``similar_products`` records.
- ``personalization``: the SVD model used by the hybrid personalized
  recommender.
- ``trending``: a full trend detection pass.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from scipy.sparse import csr_matrix
from sklearn.decomposition import TruncatedSVD
from sklearn.metrics.pairwise import cosine_similarity

from shoppulse.config import Settings
from shoppulse.recommender.models import (
    Recommendation,
    RecommendationBatch,
    RecommendationType,
    utcnow,
)
from shoppulse.recommender.personalize import PersonalizedRecommender
from shoppulse.recommender.store import EventStore
from shoppulse.recommender.trends import TrendEngine
from shoppulse.recommender.utils import (
    build_interaction_matrix,
    clamp,
    load_model_artifacts,
    save_model_artifacts,
)

# Configure module logger
logger = logging.getLogger(__name__)

# Model configuration constants
DEFAULT_N_COMPONENTS = 20
DEFAULT_N_ITERATIONS = 10
DEFAULT_RANDOM_STATE = 42

MODEL_TYPES = ("similarity", "trending", "personalization")
SIMILARITY_ALGORITHM = "svd-similarity-v1.0"
RETRAIN_AFTER = timedelta(days=6)
SIMILARITY_TTL = timedelta(days=7)
# Days of activity used as training data per data window
DATA_WINDOWS = {"daily": 1, "weekly": 7, "monthly": 30}


def train_svd_model(
    user_product_matrix: csr_matrix,
    n_components: int = DEFAULT_N_COMPONENTS,
    n_iter: int = DEFAULT_N_ITERATIONS,
    random_state: int = DEFAULT_RANDOM_STATE,
) -> TruncatedSVD:
    """Train a Truncated SVD model for collaborative filtering.

    Uses matrix factorization to learn latent features from user-product
    interactions. ``n_components`` is reduced automatically when the matrix
    is too small for the requested rank.

    Args:
        user_product_matrix: Sparse matrix of user-product interactions.
        n_components: Number of latent features to extract.
        n_iter: Number of iterations for randomized SVD solver.
        random_state: Random seed for reproducibility.

    Returns:
        Trained TruncatedSVD model.

    Raises:
        ValueError: If the matrix is empty or too small to factorize.
    """
    n_users, n_products = user_product_matrix.shape

    if user_product_matrix.nnz == 0:
        raise ValueError("Cannot train on empty interaction matrix")

    max_components = min(n_users, n_products) - 1
    if max_components < 1:
        raise ValueError(
            f"Interaction matrix {n_users}x{n_products} is too small to factorize"
        )
    if n_components > max_components:
        logger.warning(
            f"Requested n_components ({n_components}) is too large for "
            f"matrix size ({n_users}x{n_products}). "
            f"Adjusting to {max_components}."
        )
        n_components = max_components

    logger.info(f"Training SVD model with {n_components} components")
    logger.info(f"Random state: {random_state}, Iterations: {n_iter}")

    model = TruncatedSVD(
        n_components=n_components,
        n_iter=n_iter,
        random_state=random_state,
    )
    model.fit(user_product_matrix)

    logger.info("Model training completed")
    logger.info(f"Explained variance ratio: {model.explained_variance_ratio_.sum():.4f}")

    return model


class ModelTrainer:
    """Trains, persists and serves the recommendation models."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        trends: TrendEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.trends = trends
        self.clock = clock
        self.trained_at: Dict[str, datetime] = {}
        self.personalizer = PersonalizedRecommender(
            settings,
            cf_weight=settings.cf_weight,
            preference_weight=settings.preference_weight,
        )
        if settings.model_dir:
            self._load_personalization()

    def _load_personalization(self) -> None:
        artifacts = load_model_artifacts("personalization", self.settings.model_dir)
        if artifacts is None:
            return
        self.personalizer = self._build_personalizer(
            artifacts["model"],
            artifacts["matrix"],
            artifacts["user_id_to_idx"],
            artifacts["product_id_to_idx"],
        )
        self.trained_at["personalization"] = artifacts["trained_at"]

    def _build_personalizer(self, model, matrix, user_idx, product_idx) -> PersonalizedRecommender:
        return PersonalizedRecommender(
            self.settings,
            model=model,
            user_product_matrix=matrix,
            user_id_to_idx=user_idx,
            product_id_to_idx=product_idx,
            cf_weight=self.settings.cf_weight,
            preference_weight=self.settings.preference_weight,
        )

    def needs_retrain(self, model_type: str, force: bool = False) -> bool:
        """Retrain when forced, never trained, or last trained over six days ago."""
        if force:
            return True
        trained_at = self.trained_at.get(model_type)
        return trained_at is None or self.clock() - trained_at > RETRAIN_AFTER

    async def _fit(
        self, data_window: str
    ) -> Tuple[TruncatedSVD, csr_matrix, Dict[str, int], Dict[str, int]]:
        days = DATA_WINDOWS.get(data_window, self.settings.retention_days)
        events = await self.store.find_activities(
            since=self.clock() - timedelta(days=days)
        )
        matrix, user_idx, product_idx = build_interaction_matrix(
            events,
            self.settings.activity_weights,
            self.settings.default_activity_weight,
        )
        model = train_svd_model(
            matrix,
            n_components=self.settings.svd_components,
            n_iter=self.settings.svd_iterations,
            random_state=self.settings.random_state,
        )
        return model, matrix, user_idx, product_idx

    async def train(
        self, model_type: str, data_window: str = "weekly", force: bool = False
    ) -> bool:
        """Train one model if it is due.

        Returns:
            True if the model was trained, False if retraining was skipped.

        Raises:
            ValueError: For unknown model types or insufficient training data.
        """
        if model_type not in MODEL_TYPES:
            raise ValueError(f"Unknown model type: {model_type}")
        if not self.needs_retrain(model_type, force):
            logger.info(f"Model {model_type} does not need retraining")
            return False

        logger.info(f"Starting model training: {model_type} with {data_window} data")
        if model_type == "similarity":
            await self.train_similarity_model(data_window)
        elif model_type == "personalization":
            await self.train_personalization_model(data_window)
        else:
            await self.trends.detect_trends()

        self.trained_at[model_type] = self.clock()
        logger.info(f"Completed model training: {model_type}")
        return True

    async def train_similarity_model(self, data_window: str = "weekly") -> int:
        """Persist the top-k most similar products for every product in the matrix."""
        model, _, _, product_idx = await self._fit(data_window)
        idx_to_product = {idx: pid for pid, idx in product_idx.items()}

        item_factors = model.components_.T
        similarities = cosine_similarity(item_factors)

        listed = {p.id for p in await self.store.find_products(ids=product_idx.keys())}
        now = self.clock()
        batch = await self.store.create_batch(
            RecommendationBatch(
                batch_type=RecommendationType.SIMILAR_PRODUCTS,
                algorithm_version=SIMILARITY_ALGORITHM,
                started_at=now,
            )
        )

        records: List[Recommendation] = []
        for idx, product_id in idx_to_product.items():
            ranked = [
                j
                for j in similarities[idx].argsort()[::-1]
                if j != idx and idx_to_product[j] in listed
            ][: self.settings.similar_top_k]
            for position, j in enumerate(ranked, start=1):
                records.append(
                    Recommendation(
                        product_id=product_id,
                        recommended_product_id=idx_to_product[j],
                        recommendation_type=RecommendationType.SIMILAR_PRODUCTS,
                        score=clamp(float(similarities[idx, j])),
                        position=position,
                        algorithm_version=SIMILARITY_ALGORITHM,
                        metadata={"batch_id": batch.id, "similarity_type": "latent_factors"},
                        expires_at=now + SIMILARITY_TTL,
                        created_at=now,
                    )
                )

        saved = await self.store.save_recommendations(records)
        await self.store.complete_batch(batch.id, saved, self.clock())
        logger.info(f"Stored {saved} similarity recommendations for {len(product_idx)} products")

        if self.settings.model_dir:
            save_model_artifacts(
                "similarity",
                {"model": model, "product_id_to_idx": product_idx, "trained_at": now},
                self.settings.model_dir,
            )
        return saved

    async def train_personalization_model(self, data_window: str = "weekly") -> PersonalizedRecommender:
        model, matrix, user_idx, product_idx = await self._fit(data_window)
        self.personalizer = self._build_personalizer(model, matrix, user_idx, product_idx)

        if self.settings.model_dir:
            save_model_artifacts(
                "personalization",
                {
                    "model": model,
                    "matrix": matrix,
                    "user_id_to_idx": user_idx,
                    "product_id_to_idx": product_idx,
                    "trained_at": self.clock(),
                },
                self.settings.model_dir,
            )
        return self.personalizer
