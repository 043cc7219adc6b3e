from typing import Annotated, Optional
import logging

from fastapi import BackgroundTasks, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.core.clock import Clock, system_clock
from storefront.core.security import verify_access_token
from storefront.services.email_service import BackgroundMailer, EmailService, get_email_service


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme; a missing header means a guest request
security = HTTPBearer(auto_error=False)


async def get_current_customer_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[int]:
    """
    Resolve the customer ID from a bearer token.

    Returns None for guests and for invalid or expired tokens.
    """
    if not credentials:
        return None

    subject = verify_access_token(credentials.credentials)
    if subject is None:
        logger.warning("Token verification failed - invalid or expired token")
        return None

    try:
        return int(subject)
    except ValueError:
        logger.warning(f"Invalid customer id in token: {subject}")
        return None


def get_clock() -> Clock:
    return system_clock


def get_mailer(
    background_tasks: BackgroundTasks,
    email_service: Annotated[EmailService, Depends(get_email_service)],
) -> BackgroundMailer:
    return BackgroundMailer(background_tasks, email_service)


# Type aliases for cleaner endpoint signatures
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentCustomerId = Annotated[Optional[int], Depends(get_current_customer_id)]
AppClock = Annotated[Clock, Depends(get_clock)]
Mailer = Annotated[BackgroundMailer, Depends(get_mailer)]
