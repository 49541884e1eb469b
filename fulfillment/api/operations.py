import secrets
from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from fulfillment.api.deps import get_order_service
from fulfillment.core.config import settings
from fulfillment.services.order import OrderService
from fulfillment.schemas.order import FailedOrderResponse

router = APIRouter(prefix="/operations", tags=["operations"])


def require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    if not settings.operator_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not x_operator_token or not secrets.compare_digest(x_operator_token, settings.operator_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token")


@router.get("/failed-orders", response_model=List[FailedOrderResponse], dependencies=[Depends(require_operator)])
async def list_failed_orders(
    limit: int = Query(default=100, ge=1, le=500),
    service: OrderService = Depends(get_order_service)
) -> List[FailedOrderResponse]:
    return await service.list_failed(limit)
