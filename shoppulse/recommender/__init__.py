"""Recommendation pipeline for ShopPulse.

This module contains the event store adapter, the preference, trend and
profiling engines, the recommendation strategies, model training and the
job queue/scheduler that drives periodic recomputation.
"""
