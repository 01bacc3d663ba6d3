"""
Bargain endpoints.

WHAT: Read folded bargain sessions; accept, decline or end the current one
WHY: Clients render offer buttons from server state; the payment flow reads the frozen price
HOW: FastAPI router over ChatService; actions become negotiation messages built server-side
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ....models.api_schemas import (
    BargainActionRequest,
    BargainActionResponse,
    BargainListResponse,
)
from ....services.chat_service import ChatService
from ....utils.logger import get_logger
from ...deps import get_chat_service, get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


@router.get("/bargains", response_model=BargainListResponse)
async def get_bargains(
    counterparty: str = Query(..., min_length=1),
    product_id: Optional[str] = Query(default=None),
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Current bargain sessions between the caller and a counterparty.

    WHAT: One session per product (state, last offer, frozen price, roles)
    WHY: Frozen accepted price is the read-only input to payment
    HOW: Replay of the stored conversation

    `roles_confirmed` is false while buyer and seller rest only on who opened
    the bargain; the payment flow should not rely on `buyer_id`/`seller_id`
    until it is true.
    """
    sessions = await service.get_bargains(caller_id, counterparty, product_id)
    flags = await service.get_flags(caller_id, counterparty)
    return BargainListResponse(sessions=sessions, flags=flags.to_dict())


@router.post(
    "/bargains/{product_id}/accept",
    response_model=BargainActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def accept_offer(
    product_id: str,
    request: BargainActionRequest,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Accept the last offer for a product.

    Raises:
        BargainTransitionError: no active bargain, or the caller made the last offer
    """
    message = await service.accept_offer(caller_id, request.counterparty_id, product_id, request.role)
    logger.info(f"{caller_id} accepted offer on {product_id}")
    return BargainActionResponse(message=message)


@router.post(
    "/bargains/{product_id}/decline",
    response_model=BargainActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def decline_offer(
    product_id: str,
    request: BargainActionRequest,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """Decline the last offer for a product."""
    message = await service.decline_offer(caller_id, request.counterparty_id, product_id, request.role)
    logger.info(f"{caller_id} declined offer on {product_id}")
    return BargainActionResponse(message=message)


@router.post(
    "/bargains/{product_id}/end",
    response_model=BargainActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def end_bargain(
    product_id: str,
    request: BargainActionRequest,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """End the bargain for a product."""
    message = await service.end_bargain(caller_id, request.counterparty_id, product_id)
    logger.info(f"{caller_id} ended bargain on {product_id}")
    return BargainActionResponse(message=message)
