"""
Order Lookup Maintenance Jobs

Clears expired verification codes and lookup tokens so stale credentials
do not linger in the database. Session rows themselves are kept.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.clock import system_clock
from storefront.database import get_db_session
from storefront.models.order_lookup import OrderLookupSession

logger = logging.getLogger(__name__)


async def purge_expired_lookup_credentials(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Null out expired codes and tokens on order lookup sessions.

    Returns the number of sessions touched for each credential type.
    """
    now = now or system_clock.now()

    codes = await db.execute(
        update(OrderLookupSession)
        .where(
            OrderLookupSession.code_hash.is_not(None),
            OrderLookupSession.code_expires_at < now,
        )
        .values(code_hash=None, code_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    tokens = await db.execute(
        update(OrderLookupSession)
        .where(
            OrderLookupSession.active_token.is_not(None),
            OrderLookupSession.token_expires_at < now,
        )
        .values(active_token=None, token_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    result = {"codes_cleared": codes.rowcount, "tokens_cleared": tokens.rowcount}
    logger.info(
        f"Order lookup cleanup: {result['codes_cleared']} codes, "
        f"{result['tokens_cleared']} tokens cleared"
    )
    return result


async def run_lookup_cleanup():
    """Scheduler entry point for the lookup credential cleanup."""
    try:
        async with get_db_session() as db:
            await purge_expired_lookup_credentials(db)
    except Exception as e:
        logger.error(f"Order lookup cleanup failed: {e}")
