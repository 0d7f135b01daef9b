from typing import Any

from fastapi import APIRouter, Depends

from dealbridge.api.dependencies import get_token_service
from dealbridge.auth.service import TokenService


router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/refresh-status")
def refresh_status(token_service: TokenService = Depends(get_token_service)) -> dict[str, Any]:
    return token_service.refresh_manager.status()
