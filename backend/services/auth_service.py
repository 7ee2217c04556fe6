# services/auth_service.py
# ============================================================================
# AUTH PROVIDER — Firebase Auth behind an interface
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog
from firebase_admin import auth as firebase_auth

from errors import AccountExistsError, AuthenticationError

logger = structlog.get_logger().bind(component="auth")


@dataclass
class AuthUser:
    uid: str
    email: str
    display_name: Optional[str] = None
    email_verified: bool = False


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IAuthProvider(ABC):

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[AuthUser]:
        pass

    @abstractmethod
    async def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        email_verified: bool = False,
    ) -> AuthUser:
        """Raises AccountExistsError when the email is already registered."""
        pass

    @abstractmethod
    async def verify_id_token(self, id_token: str) -> dict:
        """Return decoded claims (``uid``, ``email``...) or raise AuthenticationError."""
        pass

    async def authenticate(self, authorization: Optional[str]) -> str:
        """Resolve a bearer header to a uid; 401 when missing or invalid."""
        token = bearer_token(authorization)
        if not token:
            raise AuthenticationError("Unauthorized")
        claims = await self.verify_id_token(token)
        return claims["uid"]


class FirebaseAuthProvider(IAuthProvider):

    def __init__(self, app=None):
        self._app = app

    async def get_user_by_email(self, email: str) -> Optional[AuthUser]:
        try:
            record = await asyncio.to_thread(
                firebase_auth.get_user_by_email, email, app=self._app
            )
        except firebase_auth.UserNotFoundError:
            return None
        return AuthUser(
            uid=record.uid,
            email=record.email,
            display_name=record.display_name,
            email_verified=record.email_verified,
        )

    async def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        email_verified: bool = False,
    ) -> AuthUser:
        try:
            record = await asyncio.to_thread(
                firebase_auth.create_user,
                email=email,
                password=password,
                display_name=display_name,
                email_verified=email_verified,
                app=self._app,
            )
        except firebase_auth.EmailAlreadyExistsError as e:
            raise AccountExistsError(
                f"User with email {email} already exists", details={"email": email}
            ) from e
        return AuthUser(
            uid=record.uid,
            email=record.email,
            display_name=record.display_name,
            email_verified=record.email_verified,
        )

    async def verify_id_token(self, id_token: str) -> dict:
        try:
            return await asyncio.to_thread(
                firebase_auth.verify_id_token, id_token, app=self._app
            )
        except (ValueError, firebase_auth.InvalidIdTokenError,
                firebase_auth.ExpiredIdTokenError, firebase_auth.RevokedIdTokenError) as e:
            logger.warning("id_token_rejected", error=str(e), error_type=type(e).__name__)
            raise AuthenticationError("Invalid authentication token") from e


class InMemoryAuthProvider(IAuthProvider):
    """Local auth for tests and credential-less runs. Tokens are issued explicitly."""

    def __init__(self):
        self._users: dict[str, AuthUser] = {}
        self._passwords: dict[str, str] = {}
        self._tokens: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_user_by_email(self, email: str) -> Optional[AuthUser]:
        async with self._lock:
            for user in self._users.values():
                if user.email.lower() == email.lower():
                    return user
            return None

    async def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        email_verified: bool = False,
    ) -> AuthUser:
        async with self._lock:
            if any(u.email.lower() == email.lower() for u in self._users.values()):
                raise AccountExistsError(
                    f"User with email {email} already exists", details={"email": email}
                )
            user = AuthUser(
                uid=uuid.uuid4().hex[:28],
                email=email,
                display_name=display_name,
                email_verified=email_verified,
            )
            self._users[user.uid] = user
            self._passwords[user.uid] = password
            return user

    async def verify_id_token(self, id_token: str) -> dict:
        uid = self._tokens.get(id_token)
        if uid is None:
            raise AuthenticationError("Invalid authentication token")
        user = self._users.get(uid)
        return {"uid": uid, "email": user.email if user else None}

    def issue_token(self, uid: str, email: str = "") -> str:
        """Register a user if needed and hand back a valid ID token for it."""
        if uid not in self._users:
            self._users[uid] = AuthUser(uid=uid, email=email or f"{uid}@example.com")
        token = f"token-{uuid.uuid4().hex}"
        self._tokens[token] = uid
        return token

    def password_for(self, uid: str) -> Optional[str]:
        return self._passwords.get(uid)

    @property
    def users(self) -> list[AuthUser]:
        return list(self._users.values())
