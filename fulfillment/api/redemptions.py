from fastapi import APIRouter, Depends, HTTPException, status

from fulfillment.api.deps import get_redemption_service
from fulfillment.core.exceptions import RedeemCodeError
from fulfillment.services.order import build_status_response
from fulfillment.services.redemption import RedemptionService
from fulfillment.schemas.redemption import RedeemRequest, RedeemResponse

router = APIRouter(prefix="/redemptions", tags=["redemptions"])


@router.post("", response_model=RedeemResponse, status_code=status.HTTP_201_CREATED)
async def redeem_code(
    request: RedeemRequest,
    service: RedemptionService = Depends(get_redemption_service)
) -> RedeemResponse:
    try:
        tier, order = await service.redeem(request)
    except RedeemCodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return RedeemResponse(tier=tier, order=build_status_response(order))
