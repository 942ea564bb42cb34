"""Hybrid personalized recommendation module.

Combines collaborative filtering scores from the SVD personalization model
with preference-vector affinity scores.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from sklearn.decomposition import TruncatedSVD

from shoppulse.config import Settings
from shoppulse.recommender.models import Product
from shoppulse.recommender.preferences import price_range_label

# Configure module logger
logger = logging.getLogger(__name__)

# Default weights for hybrid scoring
DEFAULT_CF_WEIGHT = 0.7  # 70% collaborative filtering
DEFAULT_PREFERENCE_WEIGHT = 0.3  # 30% preference affinity
DEFAULT_TOP_N = 10


class PersonalizedRecommender:
    """Combines CF and preference-affinity recommendations.

    The SVD model is optional: without it, or for users the model has not
    seen, scores come from preference affinity alone.
    """

    def __init__(
        self,
        settings: Settings,
        model: Optional[TruncatedSVD] = None,
        user_product_matrix: Optional[csr_matrix] = None,
        user_id_to_idx: Optional[Dict[str, int]] = None,
        product_id_to_idx: Optional[Dict[str, int]] = None,
        cf_weight: float = DEFAULT_CF_WEIGHT,
        preference_weight: float = DEFAULT_PREFERENCE_WEIGHT,
    ):
        self.settings = settings
        self.model = model
        self.user_product_matrix = user_product_matrix
        self.user_id_to_idx = user_id_to_idx or {}
        self.product_id_to_idx = product_id_to_idx or {}
        self.idx_to_product_id = {idx: pid for pid, idx in self.product_id_to_idx.items()}

        # Normalize weights
        total_weight = cf_weight + preference_weight
        self.cf_weight = cf_weight / total_weight if total_weight > 0 else 0.0
        self.preference_weight = preference_weight / total_weight if total_weight > 0 else 0.0

        logger.info(
            f"Initialized PersonalizedRecommender: "
            f"CF weight={self.cf_weight:.2f}, "
            f"Preference weight={self.preference_weight:.2f}, "
            f"Model={'enabled' if model is not None else 'disabled'}"
        )

    @staticmethod
    def _normalize_scores(scores: Dict[str, float]) -> Dict[str, float]:
        """Normalize scores to 0-1 range."""
        if not scores:
            return {}

        values = list(scores.values())
        min_score = min(values)
        max_score = max(values)

        if max_score == min_score:
            # All scores are the same, return equal weights
            return {pid: 0.5 for pid in scores}

        return {
            pid: (score - min_score) / (max_score - min_score)
            for pid, score in scores.items()
        }

    def knows_user(self, user_id: str) -> bool:
        return self.model is not None and user_id in self.user_id_to_idx

    def _get_cf_scores(self, user_id: str) -> Dict[str, float]:
        """Reconstructed interaction scores for every product the model knows."""
        if not self.knows_user(user_id) or self.user_product_matrix is None:
            return {}

        user_vector = self.user_product_matrix[self.user_id_to_idx[user_id]]
        user_latent = self.model.transform(user_vector)[0]
        predicted_scores = np.dot(user_latent, self.model.components_)

        return {
            self.idx_to_product_id[idx]: float(predicted_scores[idx])
            for idx in range(len(predicted_scores))
        }

    def _get_preference_scores(
        self,
        preferences: Mapping[str, Mapping[str, float]],
        products: Iterable[Product],
    ) -> Dict[str, float]:
        """Affinity of each product to the user's normalized preference weights."""
        categories = preferences.get("categories", {})
        brands = preferences.get("brands", {})
        price_ranges = preferences.get("price_ranges", {})
        if not (categories or brands or price_ranges):
            return {}

        return {
            product.id: (
                categories.get(product.category_id, 0.0)
                + brands.get(product.brand_id, 0.0)
                + price_ranges.get(price_range_label(product.price, self.settings), 0.0)
            )
            / 3
            for product in products
        }

    def recommend(
        self,
        user_id: str,
        products: List[Product],
        preferences: Optional[Mapping[str, Mapping[str, float]]] = None,
        purchased_product_ids: Iterable[str] = (),
        top_n: int = DEFAULT_TOP_N,
    ) -> List[Tuple[str, float, Dict[str, float]]]:
        """Get recommendations for a user.

        Args:
            user_id: User to recommend for.
            products: Candidate (listed) products.
            preferences: The user's normalized preference weights.
            purchased_product_ids: Products never recommended back.
            top_n: Number of recommendations to return.

        Returns:
            ``(product_id, hybrid_score, breakdown)`` tuples, best first.
        """
        candidates = {p.id: p for p in products}
        excluded = set(purchased_product_ids)

        cf_scores = {
            pid: score for pid, score in self._get_cf_scores(user_id).items() if pid in candidates
        }
        preference_scores = self._get_preference_scores(preferences or {}, candidates.values())

        # Normalize them
        cf_norm = self._normalize_scores(cf_scores)
        preference_norm = self._normalize_scores(
            {pid: s for pid, s in preference_scores.items() if s > 0}
        )

        if not cf_norm and not preference_norm:
            logger.info(f"No personalization signal for user {user_id}")
            return []

        # Mix them together; a single available signal carries the full weight
        cf_weight = self.cf_weight if preference_norm else 1.0
        preference_weight = self.preference_weight if cf_norm else 1.0

        hybrid = {}
        for pid in set(cf_norm) | set(preference_norm):
            if pid in excluded:
                continue
            cf_score = cf_norm.get(pid, 0.0)
            preference_score = preference_norm.get(pid, 0.0)
            hybrid[pid] = (
                cf_weight * cf_score + preference_weight * preference_score,
                {"cf_score": cf_score, "preference_score": preference_score},
            )

        ranked = sorted(hybrid.items(), key=lambda item: (-item[1][0], item[0]))
        recommendations = [(pid, score, breakdown) for pid, (score, breakdown) in ranked[:top_n]]

        logger.info(f"Generated {len(recommendations)} personalized recommendations for user {user_id}")
        return recommendations
