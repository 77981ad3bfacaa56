from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from toolflow.config import Settings
from toolflow.logging import get_logger
from toolflow.service.errors import AuthenticationError, ConflictError, ForbiddenError
from toolflow.storage.base import PersistenceAdapter
from toolflow.storage.errors import ConstraintViolation
from toolflow.storage.models import (
    DEFAULT_MODEL,
    DEFAULT_THEME,
    DEFAULT_THINKING_MODE,
    Session,
    User,
)
from toolflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_token: Optional[str] = None


class AuthService:
    """Password login and opaque bearer sessions.

    The rest of the service only consumes the authenticated user id and role.
    """

    def __init__(
        self,
        store: PersistenceAdapter,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        role: str = "USER",
    ) -> User:
        """Create a user with default settings; 409 when the email is taken."""
        if role == "USER" and not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        try:
            user = self.store.create_user(
                email=email,
                name=name,
                password_hash=self.hash_password(password),
                role=role,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.store.create_user_settings(
            user_id=user.id,
            default_model=DEFAULT_MODEL,
            default_thinking_mode=DEFAULT_THINKING_MODE,
            web_search_enabled=True,
            theme=DEFAULT_THEME,
            preferences={},
        )
        self.logger.info("user_registered", user_id=user.id, role=role)
        return user

    async def start_session(self, user: User) -> Session:
        expires = datetime.utcnow() + timedelta(minutes=self.settings.session_ttl_minutes)
        session = self.store.create_session(
            session_token=secrets.token_urlsafe(32),
            user_id=user.id,
            expires=expires,
        )
        if self.cache:
            await self.cache.cache_session(session.session_token, user.id, expires)
        return session

    async def login(self, email: str, password: str) -> Tuple[User, Session]:
        user = self.store.get_user_by_email(email)
        if not user or not self._verify_password(user, password):
            self.logger.warning("login_failed", email_domain=email.rpartition("@")[2])
            raise AuthenticationError("invalid email or password")
        session = await self.start_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, session

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def _resolve_user_id(self, token: str) -> Optional[str]:
        if self.cache:
            try:
                cached = await self.cache.get_session_user(token)
            except Exception as exc:
                # cache is an accelerator only; fall through to the store
                self.logger.warning("session_cache_lookup_failed", error=str(exc))
                cached = None
            if cached:
                return cached
        session = self.store.get_session(token)
        if not session or session.expires <= datetime.utcnow():
            return None
        return session.user_id

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        user_id = await self._resolve_user_id(token)
        if not user_id:
            return None
        user = self.store.get_user(user_id)
        if not user:
            return None
        return AuthContext(user_id=user.id, role=user.role, session_token=token)

    async def logout(self, session_token: str) -> bool:
        if self.cache:
            await self.cache.revoke_session(session_token)
        removed = self.store.delete_session(session_token)
        self.logger.info("logout", removed=removed)
        return removed

    def sweep_expired_sessions(self) -> int:
        return self.store.delete_expired_sessions()
