"""
Order Lookup Verification Service

Lets a guest view their orders after proving control of the order email:
a one-time code is emailed, exchanged for a short-lived lookup token, and
the token resolves back to the verified email.

State per email: NO_SESSION -> CODE_PENDING -> VERIFIED | EXPIRED | LOCKED
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.clock import Clock, system_clock
from storefront.core.security import (
    generate_verification_code,
    generate_lookup_token,
    hash_verification_code,
    verify_verification_code,
)
from storefront.models.order import Order
from storefront.models.order_lookup import OrderLookupSession
from storefront.services.email_service import EmailMessage, build_order_lookup_code_email, mask_email

logger = logging.getLogger(__name__)


# ==================== Errors ====================

class OrderLookupError(Exception):
    """Base exception for guest order lookup errors."""
    status_code = 400
    code = "ORDER_LOOKUP_ERROR"

    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class EmailRequired(OrderLookupError):
    code = "EMAIL_REQUIRED"


class CodeRequired(OrderLookupError):
    code = "CODE_REQUIRED"


class ResendTooSoon(OrderLookupError):
    status_code = 429
    code = "RESEND_TOO_SOON"

    def __init__(self, seconds_remaining: int):
        self.seconds_remaining = seconds_remaining
        super().__init__(
            f"Please wait {seconds_remaining} seconds before requesting a new code.",
            {"retry_after_seconds": seconds_remaining},
        )


class NoActiveSession(OrderLookupError):
    status_code = 404
    code = "NO_ACTIVE_SESSION"


class CodeExpired(OrderLookupError):
    status_code = 409
    code = "CODE_EXPIRED"


class TooManyAttempts(OrderLookupError):
    status_code = 429
    code = "TOO_MANY_ATTEMPTS"


class InvalidCode(OrderLookupError):
    code = "INVALID_CODE"


class TokenMissing(OrderLookupError):
    status_code = 401
    code = "TOKEN_MISSING"


class TokenInvalid(OrderLookupError):
    status_code = 401
    code = "TOKEN_INVALID"


class TokenExpired(OrderLookupError):
    status_code = 401
    code = "TOKEN_EXPIRED"


class OrderNotFound(OrderLookupError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


# ==================== Collaborators ====================

class Mailer(Protocol):
    def queue_email(self, message: EmailMessage) -> None: ...


@dataclass
class LookupVerificationResult:
    token: str
    expires_at: datetime


def normalize_email(email: Optional[str]) -> str:
    if email is None or not email.strip():
        raise EmailRequired("Email address is required.")
    return email.strip().lower()


# ==================== Service ====================

class OrderLookupVerificationService:
    """
    Service for guest order lookup verification.
    """

    CODE_EXPIRY_MINUTES = settings.ORDER_LOOKUP_CODE_EXPIRY_MINUTES
    TOKEN_EXPIRY_MINUTES = settings.ORDER_LOOKUP_TOKEN_EXPIRY_MINUTES
    RESEND_INTERVAL_SECONDS = settings.ORDER_LOOKUP_RESEND_INTERVAL_SECONDS
    MAX_ATTEMPTS = settings.ORDER_LOOKUP_MAX_ATTEMPTS

    def __init__(
        self,
        db: AsyncSession,
        mailer: Optional[Mailer] = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.mailer = mailer
        self.clock = clock

    async def _get_by_email(self, email: str) -> Optional[OrderLookupSession]:
        result = await self.db.execute(
            select(OrderLookupSession)
            .where(OrderLookupSession.email == email)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_session(self, email: str, now: datetime) -> OrderLookupSession:
        session = await self._get_by_email(email)
        if session:
            return session

        session = OrderLookupSession(
            email=email,
            attempt_count=0,
            send_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(session)
        try:
            await self.db.flush()
        except IntegrityError:
            # Another request created the row for this email first
            await self.db.rollback()
            session = await self._get_by_email(email)
            if session is None:
                raise
        return session

    def _seconds_until_resend(self, session: OrderLookupSession, now: datetime) -> int:
        if session.last_code_sent_at is None:
            return 0
        resend_at = session.last_code_sent_at + timedelta(seconds=self.RESEND_INTERVAL_SECONDS)
        if now >= resend_at:
            return 0
        return max(1, math.ceil((resend_at - now).total_seconds()))

    async def send_verification_code(self, email: str) -> OrderLookupSession:
        """
        Issue a new verification code for an email and send it.

        Any lookup token previously issued for the email is revoked.

        Raises:
            EmailRequired: blank email
            ResendTooSoon: a code was sent within the resend interval
        """
        normalized = normalize_email(email)
        now = self.clock.now()

        session = await self._get_or_create_session(normalized, now)

        remaining = self._seconds_until_resend(session, now)
        if remaining:
            raise ResendTooSoon(remaining)

        code = generate_verification_code()
        resend_cutoff = now - timedelta(seconds=self.RESEND_INTERVAL_SECONDS)

        result = await self.db.execute(
            update(OrderLookupSession)
            .where(
                OrderLookupSession.id == session.id,
                or_(
                    OrderLookupSession.last_code_sent_at.is_(None),
                    OrderLookupSession.last_code_sent_at <= resend_cutoff,
                ),
            )
            .values(
                code_hash=hash_verification_code(code),
                code_expires_at=now + timedelta(minutes=self.CODE_EXPIRY_MINUTES),
                last_code_sent_at=now,
                attempt_count=0,
                send_count=OrderLookupSession.send_count + 1,
                active_token=None,
                token_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # A concurrent request sent a code in the meantime
            await self.db.rollback()
            session = await self._get_by_email(normalized)
            raise ResendTooSoon(max(1, self._seconds_until_resend(session, now)))

        await self.db.commit()
        await self.db.refresh(session)

        logger.info(f"Order lookup code issued for {mask_email(normalized)} (send #{session.send_count})")

        self._dispatch_code(normalized, code)
        return session

    def _dispatch_code(self, email: str, code: str) -> None:
        if self.mailer is None:
            logger.warning(f"No mailer configured, order lookup code not sent to {mask_email(email)}")
            return

        message = build_order_lookup_code_email(
            to_email=email,
            code=code,
            action_url=settings.order_lookup_url,
            expiry_minutes=self.CODE_EXPIRY_MINUTES,
        )
        try:
            self.mailer.queue_email(message)
        except Exception as e:
            # The code is already committed; the guest can request a resend
            logger.error(f"Failed to queue order lookup email for {mask_email(email)}: {e}")

    async def verify_code(self, email: str, code: Optional[str]) -> LookupVerificationResult:
        """
        Exchange a verification code for a lookup token.

        A wrong code counts as an attempt even though the call fails.

        Raises:
            NoActiveSession, CodeExpired, TooManyAttempts, CodeRequired, InvalidCode
        """
        normalized = normalize_email(email)
        session = await self._get_by_email(normalized)
        if session is None:
            raise NoActiveSession("No verification code was sent to this email.")

        now = self.clock.now()

        if session.code_expires_at is None or now > session.code_expires_at:
            raise CodeExpired("The verification code has expired. Please request a new code.")

        if session.attempt_count >= self.MAX_ATTEMPTS:
            raise TooManyAttempts("Too many incorrect attempts. Please request a new code.")

        if code is None or not code.strip():
            raise CodeRequired("Verification code is required.")

        if not verify_verification_code(code.strip(), session.code_hash):
            await self.db.execute(
                update(OrderLookupSession)
                .where(
                    OrderLookupSession.id == session.id,
                    OrderLookupSession.attempt_count < self.MAX_ATTEMPTS,
                )
                .values(
                    attempt_count=OrderLookupSession.attempt_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            await self.db.refresh(session)

            remaining = max(0, self.MAX_ATTEMPTS - session.attempt_count)
            logger.warning(f"Invalid order lookup code for {mask_email(normalized)}, {remaining} attempts left")
            raise InvalidCode(
                "The verification code is incorrect. Please try again.",
                {"remaining_attempts": remaining},
            )

        token = generate_lookup_token()
        token_expires_at = now + timedelta(minutes=self.TOKEN_EXPIRY_MINUTES)

        result = await self.db.execute(
            update(OrderLookupSession)
            .where(
                OrderLookupSession.id == session.id,
                OrderLookupSession.code_hash == session.code_hash,
            )
            .values(
                attempt_count=0,
                code_hash=None,
                code_expires_at=None,
                active_token=token,
                token_expires_at=token_expires_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # The code was consumed or replaced by a concurrent request
            await self.db.rollback()
            raise CodeExpired("The verification code has expired. Please request a new code.")

        await self.db.commit()
        await self.db.refresh(session)

        logger.info(f"Order lookup verified for {mask_email(normalized)}")
        return LookupVerificationResult(token=token, expires_at=token_expires_at)

    async def require_valid_token(self, token: Optional[str]) -> str:
        """
        Resolve a lookup token to the verified email.

        The returned email is the only scope callers may use to query orders.
        An expired token is cleared before the error is raised.
        """
        if token is None or not token.strip():
            raise TokenMissing("Lookup session not found. Please enter your verification code.")

        result = await self.db.execute(
            select(OrderLookupSession)
            .where(OrderLookupSession.active_token == token.strip())
            .execution_options(populate_existing=True)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise TokenInvalid("Lookup session is invalid or has expired.")

        now = self.clock.now()
        if session.token_expires_at is None or now > session.token_expires_at:
            session.active_token = None
            session.token_expires_at = None
            session.updated_at = now
            await self.db.commit()
            raise TokenExpired("Lookup session has expired. Please verify your email again.")

        return session.email

    async def list_orders_for_token(self, token: Optional[str]) -> tuple[str, List[Order]]:
        """Return the verified email and its orders, newest first."""
        email = await self.require_valid_token(token)

        result = await self.db.execute(
            select(Order)
            .where(func.lower(Order.customer_email) == email)
            .order_by(Order.created_at.desc())
        )
        return email, list(result.scalars().all())

    async def get_order_for_token(self, token: Optional[str], order_number: str) -> Order:
        """
        Return one order placed with the verified email.

        Orders placed with any other email are reported as not found.
        """
        email = await self.require_valid_token(token)

        result = await self.db.execute(
            select(Order).where(
                Order.order_number == order_number.strip(),
                func.lower(Order.customer_email) == email,
            )
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound("Order not found", {"order_number": order_number})
        return order
