"""
Operator view of published event records.

- GET / ?status=&limit=   Records of the caller's subscriptions (admins: all)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from healthlink_events.api.deps import get_events
from healthlink_events.core.auth import Principal, require_subscriber
from healthlink_events.delivery.repository import PublishedEventRepository
from healthlink_events.schemas import DeliveryStatus, PublishedEventRead

router = APIRouter()


@router.get("", response_model=list[PublishedEventRead])
async def list_published_events(
    status: Optional[DeliveryStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_subscriber),
    events: PublishedEventRepository = Depends(get_events),
):
    owner_id = None if principal.is_admin else principal.id
    return await events.list_records(owner_id=owner_id, status=status, limit=limit)
