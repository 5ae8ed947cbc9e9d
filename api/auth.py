"""
Auth API：登入、換發 token、登出
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

import logging

from api.deps import client_meta, get_auth, get_current_user, get_db
from api.errors import to_http
from api.presenters import user_response
from core.exceptions import RoundEngineError
from models import User
from schemas import LoginRequest, LogoutResponse, RefreshRequest, TokenResponse, UserResponse
from services.auth_service import AuthService

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(
    body: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth),
):
    """
    以 handle + 密碼登入

    返回：
        - accessToken：4 小時
        - refreshToken：7 天（存 hash，可撤銷）
        - user
    """
    ip, ua = client_meta(request)
    try:
        access, refresh, user = auth.login(db, body.handle, body.password, ip=ip, ua=ua)
        return TokenResponse(accessToken=access, refreshToken=refresh, user=user_response(user))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to login: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(
    body: RefreshRequest,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth),
):
    """舊的 refresh token 會被撤銷，回傳新的一組"""
    try:
        access, refresh, user = auth.refresh(db, body.refresh_token)
        return TokenResponse(accessToken=access, refreshToken=refresh, user=user_response(user))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to refresh token: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/logout", response_model=LogoutResponse)
def logout(
    body: RefreshRequest,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth),
):
    try:
        return LogoutResponse(success=auth.logout(db, body.refresh_token))
    except RoundEngineError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"Failed to logout: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return user_response(user)
