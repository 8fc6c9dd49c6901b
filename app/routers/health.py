from __future__ import annotations

import asyncio

from fastapi import APIRouter

from core.config import settings
from core.context import get_storage
from core.models import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def read_health() -> HealthResponse:
    storage = get_storage()

    # Run blocking DB calls in thread pool
    online = await asyncio.to_thread(storage.ping)
    graph_configured = settings.microsoft.is_configured
    if not online:
        return HealthResponse(
            status="degraded",
            database="offline",
            graph_configured=graph_configured,
            message="Database is unreachable.",
        )

    users = await asyncio.to_thread(storage.users.count, {"is_deleted": False})
    emails = await asyncio.to_thread(storage.emails.count, {"is_deleted": False})
    return HealthResponse(
        status="ok",
        database="online",
        users=users,
        emails=emails,
        graph_configured=graph_configured,
    )
