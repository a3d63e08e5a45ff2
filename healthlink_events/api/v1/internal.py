"""
Internal publish endpoint for domain services running in other processes.

- POST /events   Publish one domain event (ADMIN / PLATFORM_OWNER tokens only)
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from healthlink_events.api.deps import get_publisher
from healthlink_events.core.auth import Principal, require_admin
from healthlink_events.core.errors import PublishError
from healthlink_events.delivery.publisher import EventPublisher
from healthlink_events.schemas import PublishRequest, PublishResponse

log = structlog.get_logger()

router = APIRouter()


@router.post("/events", response_model=PublishResponse, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    body: PublishRequest,
    principal: Principal = Depends(require_admin),
    publisher: EventPublisher = Depends(get_publisher),
):
    try:
        result = await publisher.publish(body.event_type, body.reference_id, body.payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except PublishError as exc:
        log.error(
            "internal.publish_incomplete",
            event_type=body.event_type.value,
            persistence_failures=len(exc.persistence_failures),
            enqueue_failures=len(exc.enqueue_failures),
        )
        raise HTTPException(
            status_code=503,
            detail={
                "message": "Event was not fully published",
                "published": exc.result.published,
                "persistence_failures": len(exc.persistence_failures),
                "enqueue_failures": len(exc.enqueue_failures),
            },
        )
    return PublishResponse(event_ids=result.event_ids, published=result.published)
