from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, ForeignKey
from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), index=True, nullable=False)
    type = Column(String(20), nullable=False)                  # consultation | product
    amount = Column(Integer, nullable=False)                    # minor currency units
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_method = Column(String(20), nullable=False)         # stripe | paypal
    stripe_payment_intent_id = Column(String, unique=True, index=True, nullable=True)
    paypal_order_id = Column(String, unique=True, index=True, nullable=True)
    paypal_capture_id = Column(String, index=True, nullable=True)
    order_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), unique=True, index=True, nullable=False)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    consultation_type = Column(String(20), nullable=False)
    birth_date = Column(String(10), nullable=False)
    birth_time = Column(String(5), nullable=True)
    birth_place = Column(String, nullable=False)
    questions = Column(Text, nullable=False)
    ai_result = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    generated_at = Column(DateTime, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class PaymentLog(Base):
    """Append-only audit trail of every payment event the service has seen."""
    __tablename__ = "payment_logs"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=True)
    provider = Column(String(20), nullable=False)
    provider_event_id = Column(String, index=True, nullable=True)
    event_type = Column(String, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(String(36), primary_key=True)
    consultation_id = Column(String(36), ForeignKey("consultations.id"), index=True, nullable=True)
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    status = Column(String(10), nullable=False)                 # pending | sent | failed
    error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
