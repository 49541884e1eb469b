import logging

from fastapi import APIRouter, Depends, HTTPException, status

from fulfillment.api.deps import get_payment_verifier
from fulfillment.core.exceptions import InvalidRequestError, OrderNotFoundError, PaymentProcessorUnavailableError
from fulfillment.services.order import build_status_response
from fulfillment.services.payment_verifier import PaymentVerifier
from fulfillment.schemas.payment import VerifyPaymentRequest, VerifyPaymentResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    request: VerifyPaymentRequest,
    verifier: PaymentVerifier = Depends(get_payment_verifier)
) -> VerifyPaymentResponse:
    try:
        result = await verifier.verify(request.checkout_reference, request.order_id)
    except InvalidRequestError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request")
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    except PaymentProcessorUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable"
        )

    return VerifyPaymentResponse(
        paid=result.paid,
        processor_status=result.processor_status,
        order=build_status_response(result.order),
        batch=[build_status_response(order) for order in result.batch]
    )
