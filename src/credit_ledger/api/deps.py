from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from ..container import CreditContainer
from ..services.admin_service import AdminService
from ..services.credit_service import CreditService


def get_container(request: Request) -> CreditContainer:
    return request.app.state.credits


def get_credit_service(container: CreditContainer = Depends(get_container)) -> CreditService:
    return container.credit_service


def get_admin_service(container: CreditContainer = Depends(get_container)) -> AdminService:
    return container.admin_service


def get_current_user_id(
    request: Request, container: CreditContainer = Depends(get_container)
) -> str:
    """Caller identity as asserted by the upstream identity provider."""
    user_id = request.headers.get(container.settings.USER_ID_HEADER)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing user identification ({container.settings.USER_ID_HEADER} header).",
        )
    return user_id


def require_admin(
    user_id: str = Depends(get_current_user_id),
    container: CreditContainer = Depends(get_container),
) -> str:
    if user_id not in container.settings.ADMIN_USER_IDS:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return user_id
