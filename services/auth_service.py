"""
身分驗證：密碼雜湊、JWT access / refresh token、登入紀錄

- access token 短效（type "access"）
- refresh token 長效（type "refresh"），以 SHA-256 雜湊儲存，輪替或登出時撤銷
- 過期時間用注入的 clock 檢查，不用 PyJWT 的牆鐘檢查；服務內所有時間比較都走同一個 clock
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import hashlib
import logging
import uuid

import bcrypt
import jwt
from sqlalchemy.orm import Session

from config import Settings
from core.clock import Clock
from core.exceptions import (
    AccountInactive,
    ExpiredToken,
    InvalidCredentials,
    InvalidToken,
    UserNotFound,
)
from database import transactional
from models import LoginHistory, RefreshToken, User, UserStatus

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"
OPERATOR_ROLES = {"admin", "operator"}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def is_operator(user: User) -> bool:
    return bool(user.role_set & OPERATOR_ROLES)


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    def __init__(self, config: Settings, clock: Clock):
        self.config = config
        self.clock = clock

    # ============ Token ============

    def _encode(self, user: User, token_type: str, lifetime: timedelta) -> Tuple[str, int]:
        issued = self.clock.now()
        expires = int((issued + lifetime).timestamp())
        payload = {
            "sub": str(user.id),
            "handle": user.handle,
            "roles": sorted(user.role_set),
            "type": token_type,
            "iat": int(issued.timestamp()),
            "exp": expires,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.config.jwt_secret, algorithm=ALGORITHM), expires

    def create_access_token(self, user: User) -> str:
        token, _ = self._encode(user, ACCESS, timedelta(minutes=self.config.access_token_minutes))
        return token

    def decode(self, token: str, expected_type: str) -> dict:
        """
        驗證簽章、type 與過期時間

        異常：
            ExpiredToken：已過期
            InvalidToken：其他任何問題
        """
        try:
            payload = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "require": ["exp", "sub", "type"]},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidToken(f"Invalid token: {e}")

        if payload.get("type") != expected_type:
            raise InvalidToken("Wrong token type")
        if payload["exp"] <= int(self.clock.now().timestamp()):
            raise ExpiredToken()
        return payload

    def authenticate(self, db: Session, token: str) -> User:
        payload = self.decode(token, ACCESS)
        user = db.query(User).filter(User.id == int(payload["sub"])).first()
        if not user:
            raise InvalidToken("Unknown user")
        if user.status != UserStatus.ACTIVE:
            raise AccountInactive(user.id)
        return user

    # ============ 登入 / 輪替 / 登出 ============

    @transactional
    def _issue_refresh(self, db: Session, user: User) -> str:
        token, expires = self._encode(user, REFRESH, timedelta(days=self.config.refresh_token_days))
        db.add(RefreshToken(
            user_id=user.id,
            token_hash=_token_hash(token),
            expires_at=self.clock.civil_string(datetime.fromtimestamp(expires, tz=timezone.utc)),
            revoked=False,
            created_at=self.clock.now_civil(),
        ))
        return token

    @transactional
    def _record_login(self, db: Session, handle: str, user: Optional[User], success: bool, ip, ua):
        db.add(LoginHistory(
            user_id=user.id if user else None,
            handle=handle,
            success=success,
            ip=ip,
            ua=ua,
            created_at=self.clock.now_civil(),
        ))

    def login(self, db: Session, handle: str, password: str, ip=None, ua=None) -> Tuple[str, str, User]:
        user = db.query(User).filter(User.handle == handle).first()
        if not user or not verify_password(password or "", user.password_hash):
            self._record_login(db, handle, user, False, ip, ua)
            logger.info(f"Failed login for {handle!r}")
            raise InvalidCredentials()
        if user.status != UserStatus.ACTIVE:
            self._record_login(db, handle, user, False, ip, ua)
            raise AccountInactive(user.id)

        self._record_login(db, handle, user, True, ip, ua)
        refresh = self._issue_refresh(db, user)
        logger.info(f"User {user.id} logged in")
        return self.create_access_token(user), refresh, user

    def _stored_refresh(self, db: Session, token: str) -> Tuple[dict, RefreshToken]:
        payload = self.decode(token, REFRESH)
        stored = db.query(RefreshToken).filter(RefreshToken.token_hash == _token_hash(token)).first()
        if not stored or stored.revoked:
            raise InvalidToken("Refresh token revoked")
        return payload, stored

    def refresh(self, db: Session, token: str) -> Tuple[str, str, User]:
        """輪替：撤銷送來的 refresh token，發一組新的"""
        payload, stored = self._stored_refresh(db, token)
        user = db.query(User).filter(User.id == int(payload["sub"])).first()
        if not user:
            raise UserNotFound(payload["sub"])
        if user.status != UserStatus.ACTIVE:
            raise AccountInactive(user.id)

        revoked = db.query(RefreshToken).filter(
            RefreshToken.id == stored.id,
            RefreshToken.revoked.is_(False)
        ).update({RefreshToken.revoked: True}, synchronize_session=False)
        if revoked == 0:
            raise InvalidToken("Refresh token revoked")
        new_refresh = self._issue_refresh(db, user)
        return self.create_access_token(user), new_refresh, user

    @transactional
    def logout(self, db: Session, token: str) -> bool:
        stored = db.query(RefreshToken).filter(RefreshToken.token_hash == _token_hash(token)).first()
        if not stored or stored.revoked:
            return False
        stored.revoked = True
        logger.info(f"User {stored.user_id} logged out")
        return True
