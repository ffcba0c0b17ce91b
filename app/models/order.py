"""
Modelos Order y OrderItem

El total se calcula una sola vez al crear el pedido:
total = suma(subtotales de línea) + delivery_fee
"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, Text, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"
    NEQUI = "nequi"
    DAVIPLATA = "daviplata"
    PSE = "pse"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)

    # Montos (inmutables después de la creación)
    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)

    # Entrega
    delivery_address = Column(String(300), nullable=False)
    delivery_instructions = Column(Text, nullable=True)
    estimated_delivery_time = Column(DateTime, nullable=True)

    # Pago
    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), default=OrderPaymentStatus.PENDING.value, nullable=False)

    # Cancelación
    cancellation_reason = Column(String(300), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Control de concurrencia: cada UPDATE exige la versión leída
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    # Relaciones
    user = relationship("User", back_populates="orders", foreign_keys=[user_id])
    restaurant = relationship("Restaurant", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id"
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")

    def __repr__(self):
        return f"<Order #{self.id} status={self.status} total={self.total}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)

    item_name = Column(String(100))
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)  # copia del precio al ordenar
    total_price = Column(Numeric(10, 2), nullable=False)

    special_instructions = Column(Text, nullable=True)
    selected_modifiers = Column(JSON, default=list)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")
