"""Operator identification and authorization.

Sessions are managed upstream; each request carries the operator's identity
in the ``X-User-Email`` and ``X-User-Role`` headers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import g, request

from errors import PermissionDenied
from models import ROLE_PERMISSIONS

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Actor:
    email: str
    role: str

    @property
    def permissions(self) -> set[str]:
        return ROLE_PERMISSIONS.get(self.role, set())

    def can(self, permission: str) -> bool:
        perms = self.permissions
        return permission in perms or "manage_all" in perms


def load_current_actor() -> None:
    """``before_request`` hook: resolve the caller from request headers."""
    email = request.headers.get("X-User-Email", "").strip()
    role = request.headers.get("X-User-Role", "").strip().upper()
    g.current_actor = Actor(email=email, role=role) if email and role else None


def get_current_actor() -> Optional[Actor]:
    return getattr(g, "current_actor", None)


def actor_name() -> str:
    """E-mail of the current operator, or ``system`` outside a request."""
    try:
        actor = get_current_actor()
    except RuntimeError:
        return SYSTEM_ACTOR
    return actor.email if actor else SYSTEM_ACTOR


def role_required(permission: str):
    """Decorator that checks the caller has *permission* (or ``manage_all``)."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            actor = get_current_actor()
            if actor is None:
                raise PermissionDenied("Operator identity is required.")
            if not actor.can(permission):
                logger.warning(
                    "Denied %s to %s (role %s)", permission, actor.email, actor.role
                )
                raise PermissionDenied(f"Role {actor.role} may not perform this action.")
            return f(*args, **kwargs)

        return decorated

    return decorator
