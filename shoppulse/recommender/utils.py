"""Utility functions for the recommendation models.

This module provides helper functions for building interaction matrices from
activity events, model artifact management and small numeric helpers shared
by the engines.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import joblib
import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from shoppulse.recommender.models import ActivityEvent

# Configure module logger
logger = logging.getLogger(__name__)

# Model artifact filename template: one joblib bundle per model name
ARTIFACT_SUFFIX = ".joblib"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp ``value`` into ``[low, high]``; NaN collapses to ``low``."""
    if value != value:
        return low
    return max(low, min(high, value))


def activity_weight(
    activity_type: str,
    weights: Mapping[str, float],
    default: float,
) -> float:
    """Look up the weight of an activity type in the configured table."""
    key = getattr(activity_type, "value", activity_type)
    return float(weights.get(key, default))


def build_interaction_matrix(
    events: Iterable[ActivityEvent],
    weights: Mapping[str, float],
    default_weight: float,
) -> Tuple[csr_matrix, Dict[str, int], Dict[str, int]]:
    """Convert activity events into a weighted sparse user-product matrix.

    Only product events from authenticated users contribute. Repeated
    interactions with the same product are summed.

    Args:
        events: Activity events to aggregate.
        weights: Activity weight table keyed by activity type value.
        default_weight: Weight for activity types missing from the table.

    Returns:
        A tuple containing:
            - Sparse CSR matrix of shape (n_users, n_products)
            - Dictionary mapping user_id to matrix row index
            - Dictionary mapping product_id to matrix column index

    Raises:
        ValueError: If there are no product interactions to aggregate.
    """
    rows = [
        {
            "user_id": event.user_id,
            "product_id": event.entity_id,
            "weight": activity_weight(event.activity_type, weights, default_weight),
        }
        for event in events
        if event.user_id is not None and event.is_product_event
    ]
    if not rows:
        raise ValueError("Cannot create matrix without product interactions")

    df = pd.DataFrame(rows)
    logger.info(f"Aggregating {len(df)} interaction records")

    interactions = df.groupby(["user_id", "product_id"])["weight"].sum().reset_index()

    unique_users = sorted(interactions["user_id"].unique())
    unique_items = sorted(interactions["product_id"].unique())
    user_id_to_idx = {user_id: idx for idx, user_id in enumerate(unique_users)}
    item_id_to_idx = {item_id: idx for idx, item_id in enumerate(unique_items)}

    row_indices = interactions["user_id"].map(user_id_to_idx).values
    col_indices = interactions["product_id"].map(item_id_to_idx).values
    data = interactions["weight"].values.astype(np.float32)

    n_users = len(unique_users)
    n_items = len(unique_items)
    matrix = csr_matrix(
        (data, (row_indices, col_indices)),
        shape=(n_users, n_items),
        dtype=np.float32,
    )
    matrix.eliminate_zeros()

    logger.info(
        f"Matrix shape: {matrix.shape}, density: {matrix.nnz / (n_users * n_items):.4%}"
    )
    return matrix, user_id_to_idx, item_id_to_idx


def save_model_artifacts(name: str, artifacts: Dict[str, Any], output_dir: str) -> Path:
    """Save a trained model bundle to ``<output_dir>/<name>.joblib``.

    Raises:
        OSError: If unable to create output directory or save files.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    artifact_path = output_path / f"{name}{ARTIFACT_SUFFIX}"
    joblib.dump(artifacts, artifact_path)
    logger.info(f"Saved {name} model to {artifact_path}")
    return artifact_path


def load_model_artifacts(name: str, model_dir: str) -> Optional[Dict[str, Any]]:
    """Load a model bundle saved by ``save_model_artifacts``.

    Returns:
        The artifact dictionary, or None if no bundle exists for ``name``.
    """
    artifact_path = Path(model_dir) / f"{name}{ARTIFACT_SUFFIX}"
    if not artifact_path.exists():
        logger.debug(f"No saved {name} model at {artifact_path}")
        return None

    artifacts = joblib.load(artifact_path)
    logger.info(f"Loaded {name} model from {artifact_path}")
    return artifacts
