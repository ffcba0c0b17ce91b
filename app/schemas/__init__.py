from .order import (
    OrderCreate,
    OrderItemCreate,
    OrderStatusUpdate,
    OrderCancel,
    CourierAssign,
    OrderResponse,
    RestaurantMetrics,
)
from .payment import PaymentCreate, PaymentResponse, PaymentInitResponse, WebhookAck
