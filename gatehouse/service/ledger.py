from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.store import AuthStore, call_store
from gatehouse.storage.models import (
    Activity,
    Provider,
    SigninEvent,
    SigninOutcome,
    now_ts,
)

logger = get_logger(__name__)

_DAY_SECONDS = 24 * 60 * 60


class SigninLedger:
    """Append-only sign-in history with age-based retention."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    @property
    def retention_seconds(self) -> int:
        return self.settings.signin_event_max_age_days * _DAY_SECONDS

    async def append(
        self,
        user_id: int,
        activity: Activity,
        outcome: SigninOutcome,
        provider: Provider,
        reason: Optional[str] = None,
    ) -> Optional[SigninEvent]:
        """Record one event. Failures are logged and never reach the caller.

        An activity without a time, or with one in the future, is stamped
        with the server clock so ordering and retention stay meaningful.
        """
        now = now_ts()
        if activity.time <= 0 or activity.time > now:
            activity = replace(activity, time=now)
        event = SigninEvent(
            id=0,
            user_id=user_id,
            activity=activity,
            outcome=outcome,
            provider=provider,
            reason=reason,
        )
        if outcome is SigninOutcome.FLAGGED:
            logger.warning(
                "signin_flagged",
                user_id=user_id,
                reason=reason,
                ip=activity.ip,
                device=activity.device,
            )
        try:
            return await call_store(
                self.settings.store_timeout_seconds,
                self.store.append_signin_event,
                event,
            )
        except Exception as exc:
            logger.warning(
                "signin_ledger_append_failed",
                user_id=user_id,
                outcome=outcome.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def recent(
        self, user_id: int, n: int, *, timeout: Optional[float] = None
    ) -> List[SigninEvent]:
        """Up to ``n`` events, newest first, inside the retention window."""
        if n <= 0:
            return []
        since = now_ts() - self.retention_seconds
        return await call_store(
            timeout or self.settings.store_timeout_seconds,
            self.store.list_signin_events,
            user_id,
            since,
            n,
        )

    async def purge(self, now: Optional[int] = None) -> int:
        cutoff = (now if now is not None else now_ts()) - self.retention_seconds
        removed = await call_store(
            self.settings.store_timeout_seconds,
            self.store.purge_signin_events,
            cutoff,
        )
        logger.info("signin_history_purged", removed=removed, cutoff=cutoff)
        return removed
