"""
Authorization & Audit Module

Role-based access control for provider back-office operations and the audit
trail for privileged actions.

ARCHITECTURE:
    - RequestContext (core.request_context) is the single source of identity
    - ProviderContext (tenancy.context) pins the provider the request acts on
    - require_permission() maps the caller's staff role to fine-grained permissions
    - log_audit() records who did what, never the customer PII

USAGE:
    @router.post("/bookings")
    async def handler(
        provider_ctx: ProviderContext = Depends(get_provider_context),
        session: AsyncSession = Depends(get_session),
    ):
        require_permission(provider_ctx, "create_appointments")
        ...
"""

import logging
import uuid
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog, StaffRole
from .tenancy.context import ProviderContext


logger = logging.getLogger(__name__)


__all__ = [
    "PERMISSIONS_BY_STAFF_ROLE",
    "has_permission",
    "require_permission",
    "log_audit",
    "AUDIT_BOOKING_CREATED",
    "AUDIT_BOOKING_UPDATED",
    "AUDIT_BOOKING_BULK_CANCELLED",
    "AUDIT_BOOKING_BULK_COMPLETED",
    "AUDIT_PAYMENT_RECORDED",
    "AUDIT_TIME_BLOCK_CREATED",
    "AUDIT_TIME_BLOCK_DELETED",
]


# ============================================================================
# PERMISSIONS
# ============================================================================

ALL_PERMISSIONS = frozenset({
    "view_appointments",
    "create_appointments",
    "edit_appointments",
    "process_payments",
    "manage_time_blocks",
})

PERMISSIONS_BY_STAFF_ROLE: dict[str, frozenset[str]] = {
    StaffRole.OWNER.value: ALL_PERMISSIONS,
    StaffRole.MANAGER.value: ALL_PERMISSIONS,
    StaffRole.EMPLOYEE.value: frozenset({"view_appointments", "create_appointments"}),
}


def has_permission(ctx: ProviderContext, permission: str) -> bool:
    if ctx.is_owner:
        return True
    return permission in PERMISSIONS_BY_STAFF_ROLE.get(ctx.staff_role, frozenset())


def require_permission(ctx: ProviderContext, permission: str) -> None:
    """
    Require the caller to hold a permission at their provider.

    Raises:
        HTTPException 403: If the staff role does not grant the permission
    """
    if not has_permission(ctx, permission):
        logger.warning(
            f"Authorization failed: User {ctx.user_id} ({ctx.staff_role}) lacks "
            f"'{permission}' at provider {ctx.provider_id}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied. Missing permission: {permission}.",
        )
    logger.debug(f"Permission '{permission}' granted to {ctx.user_id} at provider {ctx.provider_id}")


# ============================================================================
# AUDIT LOGGING HELPERS
# ============================================================================

async def log_audit(
    session: AsyncSession,
    *,
    actor_user_id: str,
    action: str,
    provider_id: Optional[uuid.UUID] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditLog:
    """
    Create an audit log entry.

    IMPORTANT: Do NOT include PII (phone numbers, emails) in metadata.

    Example:
        await log_audit(
            session,
            actor_user_id=str(ctx.user_id),
            action=AUDIT_BOOKING_CREATED,
            provider_id=ctx.provider_id,
            target_type="booking",
            target_id=str(booking.id),
            metadata={"booking_number": booking.booking_number},
        )
    """
    audit_log = AuditLog(
        provider_id=provider_id,
        actor_user_id=str(actor_user_id),
        action=action,
        target_type=target_type,
        target_id=target_id,
        extra_data=metadata,
    )
    session.add(audit_log)
    # Don't commit here - let the caller control the transaction
    await session.flush()

    logger.info(
        f"Audit: {action} by {actor_user_id} "
        f"(provider={provider_id}, target={target_type}:{target_id})"
    )

    return audit_log


# ============================================================================
# COMMON AUDIT ACTIONS
# ============================================================================

AUDIT_BOOKING_CREATED = "booking.created"
AUDIT_BOOKING_UPDATED = "booking.updated"
AUDIT_BOOKING_BULK_CANCELLED = "booking.bulk_cancelled"
AUDIT_BOOKING_BULK_COMPLETED = "booking.bulk_completed"
AUDIT_PAYMENT_RECORDED = "booking.payment_recorded"
AUDIT_TIME_BLOCK_CREATED = "time_block.created"
AUDIT_TIME_BLOCK_DELETED = "time_block.deleted"
