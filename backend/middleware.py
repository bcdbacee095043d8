from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import Principal, decode_access_token

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[Principal]:
    """Principal from the Bearer token, or None."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_access_token(auth_header.split(" ", 1)[1])

async def require_auth(request: Request) -> Principal:
    """Require valid authentication."""
    user = await get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

def get_billing_engine(request: Request):
    """Process-wide BillingEngine built in the server lifespan."""
    engine = getattr(request.app.state, "billing_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing service not initialized"
        )
    return engine

async def require_admin(request: Request) -> Principal:
    """Admin billing views: support and reconciliation staff only."""
    user = await require_auth(request)
    if not user.is_admin:
        logger.warning(f"Admin billing route denied for user {user.user_id} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user
