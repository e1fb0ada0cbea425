"""
Per-identity attempt counters with time-windowed blocking.

One primitive serves every throttling call site (login by IP and by
account, form submissions, payment intent creation); each call site is a
RateLimitPolicy. Counters live in rate_limit_records and are written with
versioned conditional updates so that concurrent instances cannot lose
increments silently. A check racing a write may be off by one attempt.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.audit import AuditEvent, AuditSink
from payment_settlement.core.context import NetworkContext
from payment_settlement.core.errors import RateLimited
from payment_settlement.database.models import RateLimitRecord, as_utc, utcnow
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STATE_CLEAR = "clear"
STATE_WARNED = "warned"
STATE_BLOCKED = "blocked"

SCOPE_LOGIN_IP = "login_ip"
SCOPE_LOGIN_ACCOUNT = "login_account"
SCOPE_FORM_SUBMISSION = "form_submission"
SCOPE_PAYMENT_INTENT = "payment_intent"


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Threshold and timing for one call site.

    block_seconds=None makes the policy a fixed-window throttle: once the
    limit is reached the identity is blocked until the window ends.
    """

    scope: str
    max_attempts: int
    window_seconds: int
    block_seconds: Optional[int] = None
    warn_margin: int = 2

    @classmethod
    def login_ip(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            SCOPE_LOGIN_IP,
            settings.login_max_attempts,
            settings.login_window_seconds,
            settings.login_block_seconds,
            settings.rate_limit_warn_margin,
        )

    @classmethod
    def login_account(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            SCOPE_LOGIN_ACCOUNT,
            settings.login_max_attempts,
            settings.login_window_seconds,
            settings.login_block_seconds,
            settings.rate_limit_warn_margin,
        )

    @classmethod
    def form_submission(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            SCOPE_FORM_SUBMISSION,
            settings.form_max_submissions,
            settings.form_window_seconds,
            None,
            settings.rate_limit_warn_margin,
        )

    @classmethod
    def payment_intent(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            SCOPE_PAYMENT_INTENT,
            settings.intent_max_attempts,
            settings.intent_window_seconds,
            settings.intent_block_seconds,
            settings.rate_limit_warn_margin,
        )


@dataclass
class RateLimitStatus:
    """Outcome of a rate limit check or write."""

    allowed: bool
    state: str
    attempts: int
    attempts_remaining: int
    blocked_until: Optional[datetime] = None
    reset_time: Optional[datetime] = None


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


class AbuseTracker:
    """Attempt counters and blocking for one RateLimitPolicy."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        clock: Callable[[], datetime] = utcnow,
        max_write_retries: int = 3,
    ) -> None:
        self.policy = policy
        self.clock = clock
        self.max_write_retries = max_write_retries

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load(self, db: AsyncSession, identity: str) -> Optional[RateLimitRecord]:
        stmt = (
            select(RateLimitRecord)
            .where(
                RateLimitRecord.scope == self.policy.scope,
                RateLimitRecord.identity == identity,
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_or_create(self, db: AsyncSession, identity: str) -> RateLimitRecord:
        record = await self._load(db, identity)
        if record is not None:
            return record

        now = self.clock()
        try:
            async with db.begin_nested():
                record = RateLimitRecord(
                    scope=self.policy.scope,
                    identity=identity,
                    attempt_count=0,
                    window_started_at=now,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
            return record
        except IntegrityError:
            # Another instance created it first
            record = await self._load(db, identity)
            if record is None:
                raise
            return record

    def _window_end(self, record: RateLimitRecord) -> datetime:
        return as_utc(record.window_started_at) + timedelta(seconds=self.policy.window_seconds)

    def _effective_attempts(self, record: RateLimitRecord, now: datetime) -> int:
        """Attempts counted in the current window; a lapsed block or window counts as zero."""
        if record.blocked_until is not None:
            if as_utc(record.blocked_until) > now:
                return record.attempt_count
            return 0
        if self._window_end(record) <= now:
            return 0
        return record.attempt_count

    def _status(self, record: RateLimitRecord, now: datetime) -> RateLimitStatus:
        policy = self.policy
        if record.blocked_until is not None and as_utc(record.blocked_until) > now:
            blocked_until = as_utc(record.blocked_until)
            return RateLimitStatus(
                allowed=False,
                state=STATE_BLOCKED,
                attempts=record.attempt_count,
                attempts_remaining=0,
                blocked_until=blocked_until,
                reset_time=blocked_until,
            )

        attempts = self._effective_attempts(record, now)
        state = STATE_CLEAR
        if attempts >= max(policy.max_attempts - policy.warn_margin, 0):
            state = STATE_WARNED
        reset_time = self._window_end(record) if attempts else None
        return RateLimitStatus(
            allowed=True,
            state=state,
            attempts=attempts,
            attempts_remaining=max(policy.max_attempts - attempts, 0),
            reset_time=reset_time,
        )

    async def _increment(self, db: AsyncSession, identity: str) -> RateLimitStatus:
        """Count one attempt with a versioned conditional write."""
        policy = self.policy
        for _ in range(self.max_write_retries):
            record = await self._load_or_create(db, identity)
            now = self.clock()

            attempts = self._effective_attempts(record, now)
            if attempts == 0:
                window_started_at = now
            else:
                window_started_at = as_utc(record.window_started_at)
            attempts += 1

            blocked_until = None
            if attempts >= policy.max_attempts:
                if policy.block_seconds is None:
                    blocked_until = window_started_at + timedelta(seconds=policy.window_seconds)
                else:
                    blocked_until = now + timedelta(seconds=policy.block_seconds)

            stmt = (
                update(RateLimitRecord)
                .where(
                    RateLimitRecord.id == record.id,
                    RateLimitRecord.version == record.version,
                )
                .values(
                    attempt_count=attempts,
                    blocked_until=blocked_until,
                    window_started_at=window_started_at,
                    last_attempt_at=now,
                    version=record.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 1:
                record = await self._load(db, identity)
                return self._status(record, now)

            metrics.record_rate_limit_conflict(policy.scope)
            logger.debug("rate_limit_write_conflict", scope=policy.scope, identity=identity)

        # Best effort: the attempt goes uncounted
        logger.warning(
            "rate_limit_write_abandoned",
            scope=policy.scope,
            identity=identity,
            retries=self.max_write_retries,
        )
        record = await self._load_or_create(db, identity)
        return self._status(record, self.clock())

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def check_allowed(self, db: AsyncSession, identity: str) -> RateLimitStatus:
        """Current decision for identity; creates the record on first sight."""
        identity = normalize_identity(identity)
        record = await self._load_or_create(db, identity)
        status = self._status(record, self.clock())
        metrics.record_rate_limit_decision(self.policy.scope, status.state)
        return status

    async def record_failure(self, db: AsyncSession, identity: str) -> RateLimitStatus:
        """Count a failed attempt; crossing the threshold sets blocked_until."""
        identity = normalize_identity(identity)
        status = await self._increment(db, identity)
        if status.state == STATE_BLOCKED:
            logger.warning(
                "rate_limit_blocked",
                scope=self.policy.scope,
                identity=identity,
                blocked_until=status.blocked_until.isoformat(),
            )
        return status

    async def record_success(self, db: AsyncSession, identity: str) -> None:
        """Reset the counter to zero and clear any block."""
        await self.reset(db, identity)

    async def consume(self, db: AsyncSession, identity: str) -> RateLimitStatus:
        """
        Throttle-style use: count one submission if the identity is not blocked.

        Returns the status after counting, or the blocking status unchanged.
        """
        identity = normalize_identity(identity)
        record = await self._load_or_create(db, identity)
        status = self._status(record, self.clock())
        if not status.allowed:
            metrics.record_rate_limit_decision(self.policy.scope, status.state)
            return status

        status = await self._increment(db, identity)
        # The submission that reaches the limit still goes through
        status.allowed = True
        metrics.record_rate_limit_decision(self.policy.scope, status.state)
        return status

    async def reset(self, db: AsyncSession, identity: str) -> bool:
        """
        Clear counters and block for identity.

        Returns:
            bool: True if a record existed
        """
        identity = normalize_identity(identity)
        now = self.clock()
        stmt = (
            update(RateLimitRecord)
            .where(
                RateLimitRecord.scope == self.policy.scope,
                RateLimitRecord.identity == identity,
            )
            .values(
                attempt_count=0,
                blocked_until=None,
                window_started_at=now,
                version=RateLimitRecord.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    async def prune(self, db: AsyncSession, older_than: datetime) -> int:
        """
        Delete records idle since before older_than that are not blocking.

        Returns:
            int: Number of records deleted
        """
        now = self.clock()
        stmt = (
            delete(RateLimitRecord)
            .where(
                RateLimitRecord.scope == self.policy.scope,
                or_(
                    RateLimitRecord.last_attempt_at < older_than,
                    and_(
                        RateLimitRecord.last_attempt_at.is_(None),
                        RateLimitRecord.created_at < older_than,
                    ),
                ),
                or_(
                    RateLimitRecord.blocked_until.is_(None),
                    RateLimitRecord.blocked_until <= now,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount


class CredentialVerifier(Protocol):
    """Checks a login credential against the user directory."""

    async def __call__(self, email: str, password: str) -> bool: ...


class LoginGuard:
    """
    Login throttling by client IP and by account.

    A blocked identity is rejected before credentials are looked at.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.ip_tracker = AbuseTracker(RateLimitPolicy.login_ip(settings), clock=clock)
        self.account_tracker = AbuseTracker(RateLimitPolicy.login_account(settings), clock=clock)
        self.audit_sink = audit_sink or AuditSink()

    @staticmethod
    def _combine(ip_status: RateLimitStatus, account_status: RateLimitStatus) -> RateLimitStatus:
        if not ip_status.allowed or not account_status.allowed:
            blocked = [s.blocked_until for s in (ip_status, account_status) if s.blocked_until]
            until = max(blocked) if blocked else None
            return RateLimitStatus(
                allowed=False,
                state=STATE_BLOCKED,
                attempts=max(ip_status.attempts, account_status.attempts),
                attempts_remaining=0,
                blocked_until=until,
                reset_time=until,
            )
        worst = min((ip_status, account_status), key=lambda s: s.attempts_remaining)
        return worst

    async def check(self, db: AsyncSession, email: str, network: NetworkContext) -> RateLimitStatus:
        ip_status = await self.ip_tracker.check_allowed(db, network.ip_address)
        account_status = await self.account_tracker.check_allowed(db, email)
        return self._combine(ip_status, account_status)

    async def record_failure(
        self, db: AsyncSession, email: str, network: NetworkContext
    ) -> RateLimitStatus:
        ip_status = await self.ip_tracker.record_failure(db, network.ip_address)
        account_status = await self.account_tracker.record_failure(db, email)
        status = self._combine(ip_status, account_status)
        if not status.allowed:
            await self.audit_sink.record(
                db,
                AuditEvent.LOGIN_BLOCKED,
                user_id=normalize_identity(email),
                details={
                    "attempts": status.attempts,
                    "blocked_until": status.blocked_until,
                },
                network=network,
            )
        return status

    async def reset(self, db: AsyncSession, email: str, network: NetworkContext) -> None:
        """Qualifying success: clear both the account and the IP counters."""
        await self.ip_tracker.reset(db, network.ip_address)
        await self.account_tracker.reset(db, email)
        await self.audit_sink.record(
            db,
            AuditEvent.RATE_LIMIT_RESET,
            user_id=normalize_identity(email),
            details={"scopes": [SCOPE_LOGIN_IP, SCOPE_LOGIN_ACCOUNT]},
            network=network,
        )

    async def attempt(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        verifier: CredentialVerifier,
        network: NetworkContext,
    ) -> RateLimitStatus:
        """
        Run one login attempt through the guard.

        Raises:
            RateLimited: If the IP or account is blocked; the verifier is not called
        """
        status = await self.check(db, email, network)
        if not status.allowed:
            await self.audit_sink.record(
                db,
                AuditEvent.LOGIN_BLOCKED,
                user_id=normalize_identity(email),
                details={"blocked_until": status.blocked_until, "reason": "attempt_while_blocked"},
                network=network,
            )
            # The error response rolls the request session back
            await db.commit()
            raise RateLimited(
                "Login blocked",
                blocked_until=status.blocked_until,
                scope="login",
            )

        if await verifier(email, password):
            await self.reset(db, email, network)
            return await self.check(db, email, network)

        return await self.record_failure(db, email, network)
