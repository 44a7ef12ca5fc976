"""Fitbit integration for HealthHub.

Sub-packages:
    adapters/  Fitbit Web API client and response normalization
    sync/      Window calculation, fetchers, upsert writer, orchestrator, cron batch

Modules:
    base       Canonical data models (accounts, tokens, typed readings, results)
    errors     Exception hierarchy
    oauth      PKCE generation, authorize URL, token exchange/refresh/revoke
    accounts   fitbit_accounts repository and per-user sync lease
    callback   OAuth callback state machine
"""
