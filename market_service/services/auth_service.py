"""
认证服务
基于 JWT 的无状态认证，令牌携带 role 声明（admin / user）；
用户存储在 MongoDB users 集合，数据库不可用时仅允许配置中的管理员账号登录
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from market_service.config import settings
from market_service.db import USER_COLLECTION, get_collection

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"


class TokenPayload(BaseModel):
    sub: str
    role: str = ROLE_USER
    exp: int


class AuthService:
    """用户认证服务"""

    @staticmethod
    def _hash_password(password: str) -> str:
        return hashlib.sha256(password.encode()).hexdigest()

    # ── Token ─────────────────────────────────────────────

    @staticmethod
    def create_access_token(username: str, role: str = ROLE_USER) -> str:
        expire = datetime.now(tz=timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        payload = {"sub": username, "role": role, "exp": expire}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Optional[TokenPayload]:
        try:
            payload = jwt.decode(
                token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
            )
            return TokenPayload(
                sub=payload["sub"],
                role=payload.get("role", ROLE_USER),
                exp=int(payload["exp"]),
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Token 已过期")
        except (jwt.InvalidTokenError, KeyError) as exc:
            logger.debug(f"Token 无效: {exc}")
        return None

    # ── 用户管理 ──────────────────────────────────────────

    async def authenticate(self, username: str, password: str) -> Optional[dict]:
        """验证用户名密码，成功返回 {"username", "role"}"""
        hashed = self._hash_password(password)
        users = get_collection(USER_COLLECTION)
        if users is not None:
            try:
                user = await users.find_one(
                    {"username": username, "password_hash": hashed}
                )
                if user:
                    return {"username": user["username"], "role": user.get("role", ROLE_USER)}
            except Exception as exc:
                logger.warning(f"数据库认证失败，降级到配置中的管理员账号: {exc}")

        if username == settings.ADMIN_USERNAME and hashed == self._hash_password(settings.ADMIN_PASSWORD):
            return {"username": settings.ADMIN_USERNAME, "role": ROLE_ADMIN}
        return None

    async def create_user(self, username: str, password: str, role: str = ROLE_USER) -> bool:
        """创建用户，返回是否成功"""
        users = get_collection(USER_COLLECTION)
        if users is None:
            logger.warning("MongoDB 不可用，无法创建用户")
            return False
        try:
            existing = await users.find_one({"username": username})
            if existing:
                return False
            await users.insert_one({
                "username": username,
                "password_hash": self._hash_password(password),
                "role": role,
                "created_at": datetime.now(tz=timezone.utc),
            })
            logger.info(f"👤 已创建用户 {username}（{role}）")
            return True
        except Exception as exc:
            logger.error(f"创建用户失败: {exc}")
            return False


# ── 模块级别单例 ──────────────────────────────────────────
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
