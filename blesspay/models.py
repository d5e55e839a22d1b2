from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, ForeignKey

from blesspay.database import Base


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    id = Column(String(32), primary_key=True)
    provider = Column(String(32), nullable=False)
    provider_reference = Column(String(128), unique=True, index=True, nullable=True)
    amount = Column(Integer, nullable=False)                 # minor units
    currency = Column(String(8), nullable=False)
    payer_identifier = Column(String(255), nullable=False)  # phone or email
    purpose = Column(String(32), nullable=False)            # tithe | offering | fund ...
    description = Column(String(255), nullable=True)
    state = Column(String(32), nullable=False, index=True)
    user_id = Column(String(64), index=True, nullable=True)
    checkout_url = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    settlement_receipt = Column(String(128), nullable=True)
    flagged_for_review = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class IntentTransitionRecord(Base):
    __tablename__ = "payment_intent_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(32), ForeignKey("payment_intents.id"), nullable=False, index=True)
    from_state = Column(String(32), nullable=True)          # NULL for the creation row
    to_state = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
