"""Periodic pruning of security records.

Every pass deletes by age only, so running it twice or from several instances
at once is harmless.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_
from sqlalchemy.orm import Session

from app.core.clock import resolve_now
from app.core.metrics import increment_counter
from app.core.security_policy import SecurityPolicy, get_security_policy
from app.db.models.auth_attempt import AuthAttempt
from app.db.models.login_history import LoginHistory
from app.db.models.one_time_code import OneTimeCode
from app.db.models.revoked_token import RevokedToken
from app.db.session import SessionLocal

logger = logging.getLogger(__name__)

SPENT_CODE_RETENTION_HOURS = 24
AUTH_ATTEMPT_RETENTION_HOURS = 24


@dataclass
class PruneResult:
    login_history: int = 0
    one_time_codes: int = 0
    revoked_tokens: int = 0
    auth_attempts: int = 0

    @property
    def total(self) -> int:
        return self.login_history + self.one_time_codes + self.revoked_tokens + self.auth_attempts


def prune_security_records(
    db: Session,
    now: datetime | None = None,
    policy: SecurityPolicy | None = None,
) -> PruneResult:
    now = resolve_now(now)
    policy = policy or get_security_policy()
    result = PruneResult()

    history_cutoff = now - timedelta(days=policy.login_history_retention_days)
    result.login_history = db.execute(
        delete(LoginHistory).where(LoginHistory.created_at < history_cutoff)
    ).rowcount

    code_cutoff = now - timedelta(hours=SPENT_CODE_RETENTION_HOURS)
    result.one_time_codes = db.execute(
        delete(OneTimeCode).where(
            OneTimeCode.created_at < code_cutoff,
            or_(
                OneTimeCode.expires_at < now,
                OneTimeCode.used_at.is_not(None),
                OneTimeCode.invalidated_at.is_not(None),
            ),
        )
    ).rowcount

    result.revoked_tokens = db.execute(
        delete(RevokedToken).where(RevokedToken.expires_at < now)
    ).rowcount

    attempt_cutoff = now - timedelta(hours=AUTH_ATTEMPT_RETENTION_HOURS)
    result.auth_attempts = db.execute(
        delete(AuthAttempt).where(AuthAttempt.created_at < attempt_cutoff)
    ).rowcount

    db.commit()
    if result.total:
        logger.info(
            "housekeeping_pruned login_history=%s one_time_codes=%s revoked_tokens=%s auth_attempts=%s",
            result.login_history,
            result.one_time_codes,
            result.revoked_tokens,
            result.auth_attempts,
        )
    increment_counter("housekeeping_pruned_total", value=result.total)
    return result


def _run_once() -> PruneResult:
    db = SessionLocal()
    try:
        return prune_security_records(db)
    finally:
        db.close()


async def run_housekeeping_loop(stop_event: asyncio.Event) -> None:
    interval = int(os.getenv("HOUSEKEEPING_INTERVAL_SECONDS", "3600"))
    interval = max(60, min(interval, 86400))

    while not stop_event.is_set():
        try:
            await asyncio.to_thread(_run_once)
        except Exception:
            logger.exception("Housekeeping pass failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
