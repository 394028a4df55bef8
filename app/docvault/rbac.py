from __future__ import annotations

import enum
import logging
from types import MappingProxyType

from app.docvault.errors import AuthorizationError
from app.docvault.models import Role

logger = logging.getLogger(__name__)


class OperationKind(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    STAT = "stat"
    AUDIT = "audit"


POLICY: MappingProxyType[Role, frozenset[OperationKind]] = MappingProxyType(
    {
        Role.ADMIN: frozenset(OperationKind),
        Role.EDITOR: frozenset({OperationKind.READ, OperationKind.WRITE, OperationKind.STAT}),
        Role.VIEWER: frozenset({OperationKind.READ, OperationKind.STAT}),
        Role.UNAUTHORIZED: frozenset(),
    }
)


def is_allowed(role: Role | str, kind: OperationKind) -> bool:
    try:
        role = Role(role)
    except ValueError:
        return False
    return kind in POLICY.get(role, frozenset())


def authorize(principal, kind: OperationKind) -> None:
    """
    Gate an operation. Must run before the operation touches the session so a
    denial never opens a transaction.
    """
    if is_allowed(principal.role, kind):
        return
    logger.warning(
        "Forbidden: user_id=%s role=%s operation=%s",
        principal.user_id,
        getattr(principal.role, "value", principal.role),
        kind.value,
    )
    raise AuthorizationError(f"Permission denied: {kind.value} access required.")
