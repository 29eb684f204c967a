from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, status

from app.api.v1.auth import get_current_user
from app.models.user import ROLE_ADMIN, ROLE_MARKETER, STATUS_ACTIVE, User


def require_role(role: str) -> Callable:
    """
    Dependency factory: the current user must hold `role` and be active.
    """

    async def _checker(user: User = Depends(get_current_user)) -> User:
        if user.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "FORBIDDEN",
                    "message": "You do not have permission to perform this action.",
                    "required_role": role,
                    "role": user.role,
                },
            )
        if user.status != STATUS_ACTIVE:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "ACCOUNT_INACTIVE", "message": f"Account is {user.status}."},
            )
        return user

    return _checker


require_admin = require_role(ROLE_ADMIN)
require_marketer = require_role(ROLE_MARKETER)
