"""
Exportar todos los modelos
"""
from app.models.user import User, UserRole
from app.models.restaurant import Restaurant, MenuItem
from app.models.order import Order, OrderItem, OrderStatus, OrderPaymentStatus, PaymentMethod
from app.models.payment import (
    Payment,
    PaymentStatus,
    PaymentProvider,
    RefundRequest,
    RefundStatus,
)

__all__ = [
    "User",
    "UserRole",
    "Restaurant",
    "MenuItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderPaymentStatus",
    "PaymentMethod",
    "Payment",
    "PaymentStatus",
    "PaymentProvider",
    "RefundRequest",
    "RefundStatus",
]
