"""Provider API adapters.

Available adapters:
    FitbitClient  Fitbit Web API (OAuth2 bearer), range endpoints + activity log
"""

from src.wearables.adapters.fitbit import FITBIT_API_BASE, FitbitClient

__all__ = ["FITBIT_API_BASE", "FitbitClient"]
