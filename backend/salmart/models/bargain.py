"""
Bargain domain models.

WHAT: Negotiation payload, session state and client-side flag sets
WHY: Consistent typing between the fold, the API responses and the client
HOW: Pydantic v2 models; sessions are derived values, never persisted
"""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class BargainState(str, enum.Enum):
    """Lifecycle states of one bargain session."""
    IDLE = "idle"
    OFFERED = "offered"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    ENDED = "ended"


ACTIVE_STATES = frozenset({BargainState.OFFERED, BargainState.COUNTERED})
TERMINAL_STATES = frozenset({BargainState.ACCEPTED, BargainState.DECLINED, BargainState.ENDED})


class NegotiationPayload(BaseModel):
    """
    Structured payload carried in the text of negotiation-kind messages.

    Accepts the legacy `offer` key as the price, and keeps unknown context keys.
    """

    product_id: str = Field(alias="productId", min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    product_name: Optional[str] = Field(default=None, alias="productName")
    image: Optional[str] = None
    text: Optional[str] = None
    seller_id: Optional[str] = Field(default=None, alias="sellerId")
    buyer_id: Optional[str] = Field(default=None, alias="buyerId")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v):
        """Product ids arrive as strings or numbers."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class BargainSession(BaseModel):
    """Folded state of the current session for one (buyer, seller, product)."""

    buyer_id: str
    seller_id: str
    product_id: str
    roles_confirmed: bool = False  # False while buyer/seller rest on the "opener is the buyer" default
    product_name: Optional[str] = None
    state: BargainState = BargainState.IDLE
    session_id: Optional[str] = None  # "<product_id>:<opening message id>"
    session_number: int = 0  # how many sessions have been opened for this tuple
    last_offeror_id: Optional[str] = None
    last_offer_message_id: Optional[str] = None
    last_price: Optional[float] = None
    frozen_price: Optional[float] = None  # read-only input for the payment flow
    resolved_by_message_id: Optional[str] = None
    message_ids: list[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def counterparty_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def role_of(self, user_id: str) -> Optional[str]:
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None


class BargainFlags(BaseModel):
    """
    Client-side identity sets for one conversation, keyed "<productId>-<counterpartyId>".
    """

    ended: set[str] = Field(default_factory=set)
    active: set[str] = Field(default_factory=set)
    accepted: set[str] = Field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {key: sorted(values) for key, values in self.model_dump().items()}
