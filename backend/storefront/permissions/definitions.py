# Overview: Static role definitions; the single source the authorization service is built from.
# Each role maps resource -> allowed actions.


# -- RESOURCES --

RESOURCE_ACTIONS = {
    "product": ("create",),
    "order": ("read", "update", "list", "cancel", "refund"),
    "inventory": ("read", "update", "adjust", "list"),
    "payment": ("read", "verify", "list"),
}


# -- ROLES --

DEFAULT_ROLES = [
    ("customer", "Shopper; sees only their own orders"),
    ("support", "Views orders and payments, updates order status"),
    ("manager", "Products, inventory, orders and payments"),
    ("admin", "Full system access"),
]

# Roles that may open the back office at all
STAFF_ROLES = frozenset({"support", "manager", "admin"})

ROLE_DEFINITIONS = {
    # Customers act on their own records only; ownership is checked by the
    # order services, not by this table.
    "customer": {},
    "support": {
        "order": ("read", "update", "list"),
        "payment": ("read", "list"),
        "inventory": ("read", "list"),
    },
    "manager": {
        "product": ("create",),
        "order": ("read", "update", "list", "cancel", "refund"),
        "inventory": ("read", "update", "adjust", "list"),
        "payment": ("read", "verify", "list"),
    },
    "admin": {resource: actions for resource, actions in RESOURCE_ACTIONS.items()},
}
