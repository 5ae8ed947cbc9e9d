"""
FastAPI dependencies：DB session、目前使用者、操作員權限
"""
from typing import Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from api.errors import to_http
from core.engine import RoundEngine
from core.exceptions import Forbidden, MissingToken, RoundEngineError
from models import User
from services.auth_service import AuthService, is_operator

bearer = HTTPBearer(auto_error=False)


def get_engine(request: Request) -> RoundEngine:
    return request.app.state.engine


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_db(request: Request):
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = request.app.state.engine.ctx.session_factory()
    try:
        yield db
    finally:
        db.close()


def client_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return ip, request.headers.get("user-agent")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth),
) -> User:
    if credentials is None or not credentials.credentials:
        raise to_http(MissingToken())
    try:
        return auth.authenticate(db, credentials.credentials)
    except RoundEngineError as e:
        raise to_http(e)


def require_operator(user: User = Depends(get_current_user)) -> User:
    if not is_operator(user):
        raise to_http(Forbidden("Operator role required"))
    return user
