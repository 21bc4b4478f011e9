# Overview: Role-based authorization decisions built once from the static role definitions.

"""
Authorization Service

WHY: Routes ask one question, "may a subject with these roles perform this
action on this resource?", and get a boolean. The answer table is built
once at start-up from permissions/definitions.py and stored on
app.extensions["authorization"]; nothing imports it as a global.

DESIGN PRINCIPLES:
- Fail closed: unknown roles, resources or actions are denied.
- Immutable after construction (frozensets).
- Validated at construction: a role granting an action its resource does
  not define is a configuration bug and raises immediately.
"""
from __future__ import annotations

from typing import Iterable, Mapping

from flask import current_app

from ..permissions import RESOURCE_ACTIONS, ROLE_DEFINITIONS, STAFF_ROLES


class AuthorizationService:
    def __init__(
        self,
        role_definitions: Mapping[str, Mapping[str, Iterable[str]]],
        *,
        resource_actions: Mapping[str, Iterable[str]] | None = None,
        staff_roles: Iterable[str] = (),
    ):
        known = {r: frozenset(a) for r, a in (resource_actions or {}).items()}
        grants: dict[str, frozenset[tuple[str, str]]] = {}
        for role, resources in role_definitions.items():
            pairs = set()
            for resource, actions in resources.items():
                for action in actions:
                    if known and action not in known.get(resource, ()):
                        raise ValueError(f"Role {role!r} grants unknown permission {resource}:{action}")
                    pairs.add((resource, action))
            grants[role] = frozenset(pairs)
        self._grants = grants
        self._staff_roles = frozenset(staff_roles)

    @classmethod
    def from_definitions(cls) -> "AuthorizationService":
        return cls(ROLE_DEFINITIONS, resource_actions=RESOURCE_ACTIONS, staff_roles=STAFF_ROLES)

    @property
    def roles(self) -> list[str]:
        return sorted(self._grants)

    def is_allowed(self, roles: Iterable[str], resource: str, action: str) -> bool:
        return any((resource, action) in self._grants.get(role, ()) for role in roles)

    def is_staff(self, roles: Iterable[str]) -> bool:
        return any(role in self._staff_roles for role in roles)

    def permissions_for(self, roles: Iterable[str]) -> dict[str, list[str]]:
        merged: dict[str, set[str]] = {}
        for role in roles:
            for resource, action in self._grants.get(role, ()):
                merged.setdefault(resource, set()).add(action)
        return {resource: sorted(actions) for resource, actions in sorted(merged.items())}


def get_authorization() -> AuthorizationService:
    return current_app.extensions["authorization"]
