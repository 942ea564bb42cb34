"""ShopPulse: behavioural recommendation engine for e-commerce storefronts.

This package ingests shopper activity events, keeps rolling preference,
trend and profile state, and serves ranked product recommendations through
several strategies with fallback chains between them.

Modules:
    api: FastAPI application and REST API endpoints
    recommender: pipeline engines, strategies, training and job scheduling
"""

__version__ = "0.1.0"
