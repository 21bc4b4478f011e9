# Overview: Permission system package.
# Re-exports the static role definitions.

from .definitions import (
    DEFAULT_ROLES,
    RESOURCE_ACTIONS,
    ROLE_DEFINITIONS,
    STAFF_ROLES,
)

__all__ = [
    "DEFAULT_ROLES",
    "RESOURCE_ACTIONS",
    "ROLE_DEFINITIONS",
    "STAFF_ROLES",
]
