"""
Role gate for routes.

    @router.post("/reprocess-stuck")
    async def reprocess(user: TokenPayload = Depends(require_role("admin"))): ...

Raises 403 when the caller's role is below the requirement and passes the
verified TokenPayload through otherwise.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from materialflow.auth.token import TokenPayload, get_current_user

_ROLE_ORDER: dict[str, int] = {
    "viewer": 0,
    "member": 1,
    "admin":  2,
}


def has_role(user_role: str, required_role: str) -> bool:
    return _ROLE_ORDER.get(user_role, -1) >= _ROLE_ORDER.get(required_role, 999)


def require_role(minimum_role: str):
    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: '{minimum_role}', your role: '{user.role}'.",
            )
        return user

    return _dependency


require_admin = require_role("admin")
require_member = require_role("member")
