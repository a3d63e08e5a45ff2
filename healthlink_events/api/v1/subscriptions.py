"""
Webhook and notification subscription management.

- GET    /            List the caller's subscriptions (admins: all)
- POST   /            Register a subscription; the secret is write-only
- DELETE /{id}        Soft-deactivate a subscription
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from healthlink_events.api.deps import get_subscriptions
from healthlink_events.core.auth import Principal, require_subscriber
from healthlink_events.delivery.repository import SubscriptionRepository
from healthlink_events.schemas import SubscriptionCreate, SubscriptionRead

router = APIRouter()


@router.get("", response_model=list[SubscriptionRead])
async def list_subscriptions(
    principal: Principal = Depends(require_subscriber),
    subscriptions: SubscriptionRepository = Depends(get_subscriptions),
):
    owner_id = None if principal.is_admin else principal.id
    return await subscriptions.list_for_owner(owner_id)


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    principal: Principal = Depends(require_subscriber),
    subscriptions: SubscriptionRepository = Depends(get_subscriptions),
):
    return await subscriptions.create(principal.id, body)


@router.delete("/{subscription_id}", response_model=SubscriptionRead)
async def deactivate_subscription(
    subscription_id: UUID,
    principal: Principal = Depends(require_subscriber),
    subscriptions: SubscriptionRepository = Depends(get_subscriptions),
):
    owner_id = None if principal.is_admin else principal.id
    subscription = await subscriptions.deactivate(subscription_id, owner_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription
