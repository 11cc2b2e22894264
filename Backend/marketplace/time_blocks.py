"""
Provider time blocks (breaks, unavailability, maintenance).

A block with no staff_id applies to the whole team; a block with no
location_id applies to every location.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import AUDIT_TIME_BLOCK_CREATED, AUDIT_TIME_BLOCK_DELETED, log_audit, require_permission
from .core.db import ensure_utc, get_session
from .core.responses import not_found, success_response, validation_error
from .models import ProviderLocation, TimeBlock
from .tenancy.context import ProviderContext, get_provider_context
from .tenancy.queries import get_staff_member, require_owned, scoped_select

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provider/time-blocks", tags=["provider-time-blocks"])

BLOCK_TYPES = ("unavailable", "break", "maintenance")


class TimeBlockCreate(BaseModel):
    start_at: datetime
    end_at: datetime
    staff_id: Optional[uuid.UUID] = None
    location_id: Optional[uuid.UUID] = None
    block_type: str = "unavailable"
    reason: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _check_range(self):
        if ensure_utc(self.end_at) <= ensure_utc(self.start_at):
            raise ValueError("end_at must be after start_at")
        return self


def serialize_time_block(block: TimeBlock) -> dict:
    return {
        "id": str(block.id),
        "staff_id": str(block.staff_id) if block.staff_id else None,
        "location_id": str(block.location_id) if block.location_id else None,
        "start_at": block.start_at.isoformat(),
        "end_at": block.end_at.isoformat(),
        "block_type": block.block_type,
        "reason": block.reason,
        "is_active": block.is_active,
    }


@router.get("")
async def list_time_blocks(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    staff_id: Optional[uuid.UUID] = None,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    require_permission(provider_ctx, "view_appointments")
    stmt = scoped_select(TimeBlock, provider_ctx.provider_id).where(TimeBlock.is_active.is_(True))
    if date_from:
        stmt = stmt.where(TimeBlock.end_at > ensure_utc(date_from))
    if date_to:
        stmt = stmt.where(TimeBlock.start_at < ensure_utc(date_to))
    if staff_id:
        stmt = stmt.where(TimeBlock.staff_id == staff_id)
    result = await session.execute(stmt.order_by(TimeBlock.start_at))
    return success_response([serialize_time_block(block) for block in result.scalars().all()])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_time_block(
    request: TimeBlockCreate,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    require_permission(provider_ctx, "manage_time_blocks")
    if request.block_type not in BLOCK_TYPES:
        raise validation_error(f"block_type must be one of: {', '.join(BLOCK_TYPES)}")
    if request.staff_id and await get_staff_member(session, provider_ctx.provider_id, request.staff_id) is None:
        raise validation_error("Staff member not found for this provider")
    if request.location_id and await require_owned(
        session, ProviderLocation, request.location_id, provider_ctx.provider_id
    ) is None:
        raise validation_error("Location not found for this provider")

    block = TimeBlock(
        provider_id=provider_ctx.provider_id,
        staff_id=request.staff_id,
        location_id=request.location_id,
        start_at=ensure_utc(request.start_at),
        end_at=ensure_utc(request.end_at),
        block_type=request.block_type,
        reason=request.reason,
    )
    session.add(block)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=str(provider_ctx.user_id),
        action=AUDIT_TIME_BLOCK_CREATED,
        provider_id=provider_ctx.provider_id,
        target_type="time_block",
        target_id=str(block.id),
        metadata={"block_type": block.block_type},
    )
    await session.commit()
    return success_response(serialize_time_block(block))


@router.delete("/{block_id}")
async def delete_time_block(
    block_id: uuid.UUID,
    provider_ctx: ProviderContext = Depends(get_provider_context),
    session: AsyncSession = Depends(get_session),
):
    require_permission(provider_ctx, "manage_time_blocks")
    block = await require_owned(session, TimeBlock, block_id, provider_ctx.provider_id)
    if block is None or not block.is_active:
        raise not_found("Time block not found")

    block.is_active = False
    await log_audit(
        session,
        actor_user_id=str(provider_ctx.user_id),
        action=AUDIT_TIME_BLOCK_DELETED,
        provider_id=provider_ctx.provider_id,
        target_type="time_block",
        target_id=str(block.id),
    )
    await session.commit()
    return success_response({"id": str(block.id), "deleted": True})
