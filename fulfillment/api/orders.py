from fastapi import APIRouter, Depends, HTTPException, status

from fulfillment.api.deps import get_order_service
from fulfillment.core.exceptions import InvalidRequestError, OrderNotFoundError, ReportNotReadyError
from fulfillment.services.order import OrderService
from fulfillment.schemas.order import CheckoutBatchResponse, CheckoutCreate, OrderStatusResponse, ReportResponse

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=CheckoutBatchResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout(
    checkout: CheckoutCreate,
    service: OrderService = Depends(get_order_service)
) -> CheckoutBatchResponse:
    try:
        return await service.create_checkout(checkout)
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{order_id}", response_model=OrderStatusResponse)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service)
) -> OrderStatusResponse:
    try:
        return await service.get_order(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")


@router.get("/{order_id}/report", response_model=ReportResponse)
async def get_report(
    order_id: str,
    service: OrderService = Depends(get_order_service)
) -> ReportResponse:
    try:
        return await service.get_report(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    except ReportNotReadyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
