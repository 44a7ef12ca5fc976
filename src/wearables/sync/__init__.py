"""Fitbit sync engine.

Modules:
    window        Sync window calculation and recency threshold
    fetchers      Per-resource fetchers (chunked by Fitbit range limits)
    upsert        Idempotent daily_metrics writer
    orchestrator  Auto / forced sync runs for one user
    batch         Cron-driven sync for inactive accounts
"""
