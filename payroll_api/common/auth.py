# payroll_api/common/auth.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import FrozenSet, Iterable, Optional

from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from payroll_api.common.http import fail


class Role(str, Enum):
    PAYROLL_SPECIALIST = "payroll_specialist"
    PAYROLL_MANAGER = "payroll_manager"
    FINANCE_STAFF = "finance_staff"

    @classmethod
    def parse_many(cls, codes: Iterable[str]) -> FrozenSet["Role"]:
        """Map claim strings to roles; unknown codes are dropped."""
        out = set()
        for c in codes or ():
            try:
                out.add(cls(str(c).strip().lower()))
            except ValueError:
                continue
        return frozenset(out)


PAYROLL_ROLES = frozenset(Role)


@dataclass(frozen=True)
class Actor:
    """Who is asking. Built from the JWT on every request."""
    id: int
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    def has_any(self, roles: Iterable[Role]) -> bool:
        return any(r in self.roles for r in roles)


def _identity_as_int(uid) -> Optional[int]:
    try:
        return int(uid)
    except (TypeError, ValueError):
        return None


def current_actor() -> Optional[Actor]:
    """Actor for the verified JWT of the current request (call inside @jwt_required)."""
    uid = _identity_as_int(get_jwt_identity())
    if uid is None:
        return None
    claims = get_jwt() or {}
    return Actor(id=uid, roles=Role.parse_many(claims.get("roles") or []))


# ---------- decorators ----------

def requires_actor(fn):
    """
    Require a valid JWT and pass the resolved Actor as first argument.
    Role checks for workflow actions happen in the state machine, not here.
    """
    @wraps(fn)
    @jwt_required()
    def inner(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return fail("Unauthorized", status=401)
        return fn(actor, *args, **kwargs)
    return inner


def requires_roles(*roles: Role):
    """
    Require that the current user has AT LEAST ONE of the given roles.
    With no roles given, any payroll role passes.
    """
    wanted = frozenset(roles) or PAYROLL_ROLES

    def outer(fn):
        @wraps(fn)
        @jwt_required()
        def inner(*args, **kwargs):
            actor = current_actor()
            if actor is None:
                return fail("Unauthorized", status=401)
            if not actor.has_any(wanted):
                return fail("Forbidden", status=403)
            return fn(*args, **kwargs)
        return inner
    return outer
