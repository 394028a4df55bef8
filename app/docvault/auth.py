"""
API-key authentication.

The resolver is an injected capability (``resolve(key) -> Principal``) rather
than a module-level table, so the app can be backed by the users table, an
in-memory mapping, or anything else that can answer the lookup.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import wraps
from typing import Any, Protocol

from flask import current_app, g, request
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.docvault.errors import AuthenticationError
from app.docvault.models import Role, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    username: str
    role: Role


class PrincipalResolver(Protocol):
    def resolve(self, api_key: str | None) -> Principal: ...


def _coerce_role(raw: str) -> Role:
    try:
        return Role(raw)
    except ValueError:
        # Unknown roles fall back to the deny-everything role.
        logger.warning("Unknown role %r; treating as unauthorized", raw)
        return Role.UNAUTHORIZED


class SqlPrincipalResolver:
    """Looks the key up in the ``users`` table with a short-lived session."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def resolve(self, api_key: str | None) -> Principal:
        key = (api_key or "").strip()
        if not key:
            raise AuthenticationError("Missing API key.")
        with self._session_factory() as s:
            user = s.scalars(select(User).where(User.api_key == key)).one_or_none()
            if user is None:
                raise AuthenticationError("Invalid API key.")
            return Principal(user_id=str(user.id), username=user.username, role=_coerce_role(user.role))


class StaticPrincipalResolver:
    """In-memory key -> principal mapping."""

    def __init__(self, principals: Mapping[str, Principal]) -> None:
        self._principals = dict(principals)

    def resolve(self, api_key: str | None) -> Principal:
        key = (api_key or "").strip()
        if not key:
            raise AuthenticationError("Missing API key.")
        principal = self._principals.get(key)
        if principal is None:
            raise AuthenticationError("Invalid API key.")
        return principal


def generate_api_key() -> str:
    return f"dv-{secrets.token_hex(32)}"


def current_principal() -> Principal:
    """
    Resolve the request's API key once and cache the principal on ``g``.
    """
    principal = getattr(g, "principal", None)
    if principal is not None:
        return principal
    header = current_app.config.get("API_KEY_HEADER", "X-API-Key")
    resolver: PrincipalResolver = current_app.extensions["principal_resolver"]
    try:
        principal = resolver.resolve(request.headers.get(header))
    except AuthenticationError as e:
        logger.warning(
            "Authentication failed: %s path=%s request_id=%s",
            e.message,
            request.path,
            getattr(g, "request_id", None),
        )
        raise
    g.principal = principal
    return principal


def require_principal(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_principal()
        return fn(*args, **kwargs)

    return wrapped
