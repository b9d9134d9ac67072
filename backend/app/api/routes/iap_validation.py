"""
IAP Validation API Routes

Purchase submission endpoint for the iOS and Android stores.
"""

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from app.api.dependencies import CurrentUserDep, IAPValidationServiceDep
from app.domain.subscription import (
    Platform,
    ReceiptValidationRequest,
    ReceiptValidationResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/iap/validate-receipt",
    response_model=ReceiptValidationResponse,
    responses={
        400: {"description": "Purchase rejected"},
        409: {"description": "Purchase already claimed by another account"},
        503: {"description": "Store unavailable, retry later"},
    },
)
async def validate_receipt(
    request: ReceiptValidationRequest,
    user_id: CurrentUserDep,
    service: IAPValidationServiceDep,
):
    """
    Validate an App Store receipt or Google Play purchase token and, on
    success, activate the matching subscription.
    """
    proof = request.proof
    if not proof:
        field = "receipt" if request.platform == Platform.IOS else "purchase_token"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": f"{field} is required for {request.platform.value} validation"},
        )

    logger.debug(
        f"Validating {request.platform.value} purchase for user {user_id}, product {request.product_id}"
    )
    result = await service.validate_purchase(
        user_id, request.platform, proof, request.product_id
    )

    if not result.success:
        if result.should_retry:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"success": False, "error": result.error, "should_retry": True},
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": result.error or "Receipt validation failed"},
        )

    if result.claimed_by_other_user:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"success": False, "error": "Purchase already claimed by another account"},
        )

    subscription = await service.activate_purchase(
        user_id, request.platform, request.product_id, result
    )

    return ReceiptValidationResponse(
        success=True,
        platform=request.platform,
        product_id=request.product_id,
        transaction_id=result.transaction_id,
        tier_id=subscription.tier_id,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
    )
