"""
Modelos Payment y RefundRequest

Un pedido puede acumular varios pagos (uno por intento), pero como máximo
uno puede estar abierto (pending/processing) a la vez.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, Text, DateTime, ForeignKey, JSON, Index, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentProvider(str, enum.Enum):
    INTERNAL = "internal"
    WOMPI = "wompi"
    STRIPE = "stripe"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)
TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
    PaymentStatus.REFUNDED.value,
)

_OPEN_CLAUSE = "status IN ('pending', 'processing')"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_one_open_per_order",
            "order_id",
            unique=True,
            sqlite_where=text(_OPEN_CLAUSE),
            postgresql_where=text(_OPEN_CLAUSE),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Monto
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="COP", nullable=False)

    # Proveedor
    method = Column(String(20), nullable=False)
    provider = Column(String(20), default=PaymentProvider.INTERNAL.value, nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    # Referencia propia (se entrega al cliente y vuelve en el webhook)
    reference = Column(String(64), unique=True, nullable=False, index=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    provider_payload = Column(JSON, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Devolución
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(String(300), nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payments")
    user = relationship("User")
    refunds = relationship("RefundRequest", back_populates="payment")

    def __repr__(self):
        return f"<Payment #{self.id} {self.reference} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES


class RefundRequest(Base):
    """
    Acción compensatoria: devolver un pago capturado de un pedido cancelado.
    Se reintenta con backoff hasta REFUND_MAX_ATTEMPTS.
    """
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(String(300), nullable=True)

    status = Column(String(20), default=RefundStatus.PENDING.value, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    payment = relationship("Payment", back_populates="refunds")
    order = relationship("Order")

    def __repr__(self):
        return f"<RefundRequest #{self.id} payment={self.payment_id} status={self.status}>"
