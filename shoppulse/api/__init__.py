"""FastAPI application module for ShopPulse.

This module contains the FastAPI application, route handlers, and API
endpoints for recommendation queries, activity ingestion and the read-only
insight endpoints backed by the pipeline caches.
"""
