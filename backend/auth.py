"""
セッション（ログインユーザー）の解決。
ログイン処理自体は別サービスの責務で、ここでは署名付きトークンを検証して利用者を復元するだけ。
トークンは Cookie "auth_token" または Authorization: Bearer ヘッダーで受け取る。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request

from constants import AUTH_COOKIE_NAME, JWT_ALGORITHM, JWT_SECRET
from errors import Forbidden, Unauthorized
from schemas import CurrentUser

logger = logging.getLogger(__name__)


def create_token(user_id: int, email: str, role: str, expires_minutes: int = 60 * 24 * 7) -> str:
    """セッショントークンを発行する（ログインサービス・テスト用）"""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[CurrentUser]:
    """トークンを検証してユーザーを返す。期限切れ・改ざんは None。"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Expired session token")
        return None
    except jwt.InvalidTokenError:
        logger.warning("Invalid session token")
        return None
    try:
        return CurrentUser(id=int(payload["sub"]), email=payload.get("email", ""), role=payload["role"])
    except (KeyError, ValueError):
        logger.warning("Session token is missing required claims")
        return None


def _extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(AUTH_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def get_current_user(request: Request) -> Optional[CurrentUser]:
    """リクエストからログインユーザーを返す（未ログインなら None）"""
    token = _extract_token(request)
    if not token:
        return None
    return decode_token(token)


def require_role(*roles: str):
    """
    指定ロールのユーザーのみ通す依存関数を返す。

    使用例:
        @app.get("/cart")
        def read_cart(user: CurrentUser = Depends(require_role("CUSTOMER"))): ...
    """
    def dependency(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
        if user is None:
            raise Unauthorized()
        if user.role not in roles:
            raise Forbidden()
        return user

    return dependency


require_customer = require_role("CUSTOMER")
require_vendor = require_role("VENDOR")
require_super_admin = require_role("SUPER_ADMIN")
