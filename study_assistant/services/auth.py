"""Password hashing and signed session tokens."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from .storage import StudyRepository, UserRecord


LOGGER = logging.getLogger(__name__)

TOKEN_COOKIE_NAME = "token"
_ALGORITHM = "HS256"


class AuthenticationError(RuntimeError):
    """Raised when a request carries no valid session."""


class RegistrationError(ValueError):
    """Raised when a new account cannot be created."""


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    username: str


def extract_token(cookie_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Return the session token from the cookie or an ``Authorization: Bearer`` header."""

    if cookie_token and cookie_token.strip():
        return cookie_token.strip()
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


class AuthService:
    def __init__(
        self,
        repository: StudyRepository,
        *,
        secret: str,
        ttl_hours: int = 24,
    ) -> None:
        self._repository = repository
        self._secret = secret
        self._ttl = timedelta(hours=ttl_hours)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def register(self, username: str, email: str, password: str) -> UserRecord:
        normalized_email = email.strip().lower()
        if self._repository.find_user_by_email(normalized_email) is not None:
            raise RegistrationError("Email already registered")
        try:
            user_id = self._repository.add_user(
                username.strip(), normalized_email, generate_password_hash(password)
            )
        except sqlite3.IntegrityError as error:
            raise RegistrationError("Email already registered") from error
        LOGGER.info("Registered user id=%s", user_id)
        user = self._repository.get_user(user_id)
        assert user is not None  # nosec - inserted above
        return user

    def login(self, email: str, password: str) -> Tuple[UserRecord, str]:
        user = self._repository.find_user_by_email(email.strip().lower())
        if user is None or not check_password_hash(user.password_hash, password):
            LOGGER.info("Rejected login attempt for '%s'", email)
            raise AuthenticationError("Invalid credentials")
        return user, self.issue_token(user)

    def issue_token(self, user: UserRecord) -> str:
        issued_at = datetime.now(timezone.utc)
        claims = {
            "userId": user.id,
            "email": user.email,
            "username": user.username,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.InvalidTokenError as error:
            LOGGER.debug("Rejected session token: %s", error)
            raise AuthenticationError("Invalid token") from error
        try:
            return Principal(
                user_id=int(claims["userId"]),
                email=str(claims.get("email") or ""),
                username=str(claims.get("username") or ""),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise AuthenticationError("Invalid token") from error


__all__ = [
    "AuthService",
    "AuthenticationError",
    "Principal",
    "RegistrationError",
    "TOKEN_COOKIE_NAME",
    "extract_token",
]
