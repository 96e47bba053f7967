"""
api/routes/v1/users.py -- End-user token endpoints.

Routes:
  GET /api/v1/me -- the principal carried by a valid end-user token

End-user tokens are verified statelessly (signature, expiry, issuer,
audience). An admin token presented here fails on issuer/audience.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import UserMeResponse
from auth.dependencies import get_user_principal
from auth.models import UserPrincipal

router = APIRouter()


@router.get("/me", response_model=UserMeResponse)
def me(principal: UserPrincipal = Depends(get_user_principal)) -> UserMeResponse:
    return UserMeResponse(user_id=principal.user_id, role=principal.role)
