from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.database import get_db
from fulfillment.core.broker import broker

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)) -> dict[str, str | dict[str, str]]:
    health = {"status": "healthy", "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health["checks"]["database"] = "healthy"
    except Exception as e:
        health["checks"]["database"] = f"unhealthy: {str(e)}"
        health["status"] = "unhealthy"

    if broker.is_connected:
        health["checks"]["rabbitmq"] = "healthy"
    else:
        health["checks"]["rabbitmq"] = "unhealthy: not connected"
        health["status"] = "unhealthy"

    return health
