from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard.core.db import get_db
from giftcard.core.deps import get_current_user
from giftcard.models.user import User
from giftcard.schemas.gift_cards import (
    GiftCardCheckOut,
    GiftCardCodeIn,
    GiftCardCodeInfoOut,
    GiftCardRedeemIn,
    GiftCardRedeemOut,
    GiftCardUsageOut,
)
from giftcard.services.errors import (
    ConfigurationError,
    ConflictError,
    GiftCardError,
    GiftCardNotFound,
    IneligibleError,
    RetryableError,
)
from giftcard.services.gift_cards import GiftCardService, list_user_usages

router = APIRouter(prefix="/gift-cards", tags=["Gift Cards"])


def _http_error(e: GiftCardError) -> HTTPException:
    if isinstance(e, GiftCardNotFound):
        return HTTPException(status_code=404, detail={"reason_code": e.reason_code, "message": e.message})
    if isinstance(e, IneligibleError):
        return HTTPException(status_code=400, detail={"reason_code": e.reason_code, "message": e.message})
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail={"reason_code": e.reason_code, "message": e.message})
    if isinstance(e, RetryableError):
        return HTTPException(status_code=503, detail={"reason_code": e.reason_code, "message": e.message})
    if isinstance(e, ConfigurationError):
        return HTTPException(
            status_code=500,
            detail={"reason_code": e.reason_code, "message": "Gift card is misconfigured, please contact support"},
        )
    # application failures stay opaque
    return HTTPException(status_code=500, detail={"reason_code": e.reason_code, "message": "Gift card redemption failed"})


@router.get("/usages", response_model=list[GiftCardUsageOut])
async def my_usages(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await list_user_usages(db, user_id=int(current_user.id), limit=limit, offset=offset)


@router.get("/{code}", response_model=GiftCardCodeInfoOut)
async def get_code_info(
    code: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        service = await GiftCardService.load(db, code)
        return await service.get_code_info()
    except GiftCardError as e:
        raise _http_error(e)


@router.post("/check", response_model=GiftCardCheckOut)
async def check_code(
    payload: GiftCardCodeIn,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        service = await GiftCardService.load(db, payload.code, current_user)
        code_info = await service.get_code_info()

        try:
            service.validate_is_active()
        except IneligibleError as e:
            return GiftCardCheckOut(
                code_info=code_info,
                can_redeem=False,
                reason=e.message,
                reason_code=e.reason_code,
            )

        eligibility = await service.check_user_eligibility()
        return GiftCardCheckOut(
            code_info=code_info,
            can_redeem=eligibility["can_redeem"],
            reason=eligibility["reason"],
            reason_code=eligibility["reason_code"],
            reward_preview=await service.preview_rewards() if eligibility["can_redeem"] else None,
            plan_operation=await service.predict_plan_operation(),
        )
    except GiftCardError as e:
        raise _http_error(e)


@router.post("/redeem", response_model=GiftCardRedeemOut)
async def redeem_code(
    payload: GiftCardRedeemIn,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        service = await GiftCardService.load(db, payload.code, current_user)
        return await service.redeem(
            {
                "ip_address": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
                "notes": payload.notes,
            }
        )
    except GiftCardError as e:
        raise _http_error(e)
