"""Route dependencies: service bundle and authenticated account."""
from fastapi import Depends, Header, HTTPException, Request
from typing import Optional

from auth import AuthError, claims_from_header
from assignsavvy.models.user import UserAccount
from assignsavvy.services.container import CreditServices


def get_services(request: Request) -> CreditServices:
    return request.app.state.services


async def get_current_account(
    authorization: Optional[str] = Header(None),
    services: CreditServices = Depends(get_services),
) -> UserAccount:
    """Authenticated account, opened on the user's first request."""
    try:
        claims = claims_from_header(authorization)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    return await services.ledger.open_account(
        claims["sub"],
        email=claims.get("email"),
        display_name=claims.get("name", ""),
    )
