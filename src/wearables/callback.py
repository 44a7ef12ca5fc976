"""OAuth callback state machine.

    no_session ──▶ failed("unauthorized")
    pending ──┬─▶ failed(provider error | "missing_params" | "session_expired"
              │          | "state_mismatch")
              └─▶ exchanging ──┬─▶ active
                               └─▶ failed(provider message)

Every failure after a handshake was started removes the pending account so
the user can restart cleanly; a state mismatch never reaches the token
endpoint.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from src.wearables.accounts import AccountRepository
from src.wearables.base import FitbitAccount
from src.wearables.errors import TokenExchangeError
from src.wearables.oauth import FitbitOAuthClient

logger = logging.getLogger("healthhub.wearables.callback")


class CallbackState(str, Enum):
    NO_SESSION = "no_session"
    PENDING = "pending"
    EXCHANGING = "exchanging"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    state: CallbackState
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state is CallbackState.ACTIVE


class CallbackHandler:
    """Drive one OAuth callback from query parameters to a final state."""

    def __init__(self, accounts: AccountRepository, oauth: FitbitOAuthClient) -> None:
        self._accounts = accounts
        self._oauth = oauth

    async def handle(
        self,
        user_id: UUID | None,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackOutcome:
        if user_id is None:
            return CallbackOutcome(CallbackState.FAILED, "unauthorized")

        account = await self._accounts.get(user_id)

        if error:
            logger.warning("Fitbit returned an OAuth error: %s (%s)", error, error_description)
            await self._discard_pending(account)
            return CallbackOutcome(CallbackState.FAILED, error_description or error)

        if not code or not state:
            await self._discard_pending(account)
            return CallbackOutcome(CallbackState.FAILED, "missing_params")

        if account is None or not account.is_pending:
            return CallbackOutcome(CallbackState.FAILED, "session_expired")

        if not hmac.compare_digest(state.encode(), (account.pending_state or "").encode()):
            logger.warning("OAuth state mismatch on callback; handshake discarded")
            await self._discard_pending(account)
            return CallbackOutcome(CallbackState.FAILED, "state_mismatch")

        # exchanging
        try:
            tokens = await self._oauth.exchange_code(code, account.code_verifier or "")
            await self._accounts.activate(user_id, tokens)
        except TokenExchangeError as exc:
            await self._discard_pending(account)
            return CallbackOutcome(CallbackState.FAILED, exc.message)
        except Exception:
            logger.exception("Fitbit token exchange crashed")
            await self._discard_pending(account)
            return CallbackOutcome(CallbackState.FAILED, "token_exchange_failed")

        logger.info("Fitbit account connected (provider user %s)", tokens.provider_user_id)
        return CallbackOutcome(CallbackState.ACTIVE)

    async def _discard_pending(self, account: FitbitAccount | None) -> None:
        if account is not None and account.is_pending:
            await self._accounts.delete(account.user_id)
