"""
Modelo User

Las credenciales y el login los gestiona el servicio de autenticación;
aquí solo se guarda lo que el núcleo de pedidos necesita (id y rol).
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    RESTAURANT_OWNER = "restaurant_owner"
    DELIVERY_PERSON = "delivery_person"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(100), nullable=False)
    email = Column(String(150), unique=True, index=True, nullable=False)
    phone = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)

    # Rol
    role = Column(String(20), default=UserRole.CUSTOMER.value, nullable=False, index=True)

    # Estado
    is_active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relaciones
    restaurants = relationship("Restaurant", back_populates="owner")
    orders = relationship("Order", back_populates="user", foreign_keys="Order.user_id")

    def __repr__(self):
        return f"<User #{self.id} {self.email} role={self.role}>"
