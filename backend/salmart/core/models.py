"""
ORM models for chat persistence.

WHAT: SQLAlchemy model for the chat_messages table
WHY: Durable, append-only record of every message with mutable delivery/bargain status
HOW: Declarative model with CHECK constraints and conversation/inbox indexes
"""

from datetime import datetime
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text,
    CheckConstraint, Index, Enum as SQLEnum
)

from .database import Base
from ..models.message import MessageKind, DeliveryStatus, BargainStatus, AttachmentType


def _enum_values(enum_cls):
    """Persist enum values (e.g. 'counter-offer') rather than member names."""
    return [member.value for member in enum_cls]


class ChatMessage(Base):
    """
    ChatMessage table - every message exchanged between two users.

    WHAT: One row per message, negotiation kinds included
    WHY: The store is the system of record; bargain state and receipts are derived from it
    HOW: Integer sequence for stable ordering plus a public UUID identifier
    """
    __tablename__ = "chat_messages"

    # Insertion sequence breaks created_at ties so replays are stable
    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid4()))
    sender_id = Column(String(100), nullable=False)
    receiver_id = Column(String(100), nullable=False)
    text = Column(Text, nullable=True)
    attachment_url = Column(String(2048), nullable=True)
    attachment_type = Column(
        SQLEnum(AttachmentType, values_callable=_enum_values, name="attachment_type"),
        nullable=True
    )
    message_type = Column(
        SQLEnum(MessageKind, values_callable=_enum_values, name="message_kind"),
        nullable=False,
        default=MessageKind.TEXT
    )
    status = Column(
        SQLEnum(DeliveryStatus, values_callable=_enum_values, name="delivery_status"),
        nullable=False,
        default=DeliveryStatus.SENT
    )
    proposed_price = Column(Float, nullable=True)
    bargain_status = Column(
        SQLEnum(BargainStatus, values_callable=_enum_values, name="bargain_status"),
        nullable=True
    )
    product_id = Column(String(100), nullable=True)  # copied from a well-formed negotiation payload
    temp_id = Column(String(100), nullable=True)  # client optimistic id, lets a resend match its stored copy
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "(text IS NOT NULL AND text != '') OR (attachment_url IS NOT NULL AND attachment_url != '')",
            name="check_text_or_attachment"
        ),
        CheckConstraint("proposed_price IS NULL OR proposed_price >= 0", name="check_price_non_negative"),
        Index("idx_message_pair_created", "sender_id", "receiver_id", "created_at"),
        Index("idx_message_receiver_status", "receiver_id", "status"),
    )

    def __repr__(self):
        return (
            f"<ChatMessage(id={self.message_id}, type={self.message_type}, "
            f"{self.sender_id}->{self.receiver_id}, status={self.status})>"
        )
