"""
Request-log based rate limiting.

Every submission and search attempt writes a `submission_requests` row; a
caller is limited by counting its own rows of the same kind inside a sliding
window. No cache or counter store is involved, the table is the state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pipeline.config import (
    REQUEST_INSTITUTION_SEARCH,
    REQUEST_SUBMISSION,
    REQUEST_SUBMITTER_SEARCH,
    settings,
)
from pipeline.database import SubmissionRequest


@dataclass(frozen=True)
class RateLimitRule:
    window_minutes: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int | None = None  # seconds


def rule_for(kind: str) -> RateLimitRule:
    """Window and maximum configured for a request kind."""
    limits = settings.rate_limit
    if kind == REQUEST_SUBMISSION:
        return RateLimitRule(limits.submission_rate_limit_window, limits.submission_rate_limit_max)
    if kind == REQUEST_INSTITUTION_SEARCH:
        return RateLimitRule(limits.search_rate_limit_window, limits.search_rate_limit_max)
    if kind == REQUEST_SUBMITTER_SEARCH:
        return RateLimitRule(limits.submitter_window, limits.submitter_max)
    raise ValueError(f"Unknown request kind: {kind}")


def check_rate_limit(
    session: Session,
    ip: str,
    kind: str,
    rule: RateLimitRule | None = None,
    now: datetime | None = None,
) -> RateLimitDecision:
    """Count recent requests of `kind` from `ip` and decide."""
    rule = rule or rule_for(kind)
    window_start = (now or datetime.utcnow()) - timedelta(minutes=rule.window_minutes)

    recent = session.scalar(
        select(func.count(SubmissionRequest.id)).where(
            SubmissionRequest.ip == ip,
            SubmissionRequest.type == kind,
            SubmissionRequest.created_at >= window_start,
        )
    ) or 0

    if recent >= rule.max_requests:
        logger.info(f"Rate limit hit for {ip} ({kind}: {recent}/{rule.max_requests})")
        return RateLimitDecision(allowed=False, retry_after=rule.window_minutes * 60)
    return RateLimitDecision(allowed=True)


def log_request(
    session: Session,
    ip: str,
    kind: str,
    success: bool,
    user_agent: str | None = None,
    error: str | None = None,
) -> SubmissionRequest:
    """Record one attempt. Committed by the caller."""
    entry = SubmissionRequest(
        ip=ip,
        user_agent=user_agent,
        success=success,
        error=error,
        type=kind,
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    session.flush()
    return entry
