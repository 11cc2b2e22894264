"""
Multi-tenancy package.

This package provides provider isolation primitives for the marketplace.

Modules:
    context: ProviderContext resolution and the FastAPI dependency
    queries: Provider-scoped query helpers
"""

from .context import (
    PROVIDER_ROLES,
    ProviderContext,
    get_provider_context,
    resolve_provider_for_user,
)

from .queries import (
    # Composable helpers
    scoped_select,
    require_owned,
    # Entity queries
    get_booking_for_provider,
    get_offerings_by_ids,
    get_staff_member,
    list_active_locations,
)

__all__ = [
    # Context
    "PROVIDER_ROLES",
    "ProviderContext",
    "get_provider_context",
    "resolve_provider_for_user",
    # Query helpers
    "scoped_select",
    "require_owned",
    "get_booking_for_provider",
    "get_offerings_by_ids",
    "get_staff_member",
    "list_active_locations",
]
