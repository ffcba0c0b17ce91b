"""
Datos de demostración

Uso: python -m app.db.seed
Crea las tablas, un usuario por rol, dos restaurantes con menú y muestra
un token por usuario para probar la API y el WebSocket.
"""
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.database import Base, SessionLocal, engine
from app.core.logging import setup_logging
from app.core.security import hash_password
from app.models import MenuItem, Restaurant, User, UserRole
from app.services.auth_service import AuthService

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "quiklii123"

USERS = [
    ("Cliente Demo", "cliente@quiklii.co", "3001112233", UserRole.CUSTOMER),
    ("Dueño Demo", "restaurante@quiklii.co", "3002223344", UserRole.RESTAURANT_OWNER),
    ("Repartidor Demo", "repartidor@quiklii.co", "3003334455", UserRole.DELIVERY_PERSON),
    ("Admin Demo", "admin@quiklii.co", "3004445566", UserRole.ADMIN),
]

RESTAURANTS = [
    {
        "name": "Arepas La 70",
        "address": "Carrera 70 #45-12, Medellín",
        "phone": "6044440001",
        "category": "colombiana",
        "delivery_fee": Decimal("4500"),
        "min_order": Decimal("15000"),
        "delivery_time": 35,
        "menu": [
            ("Arepa de chócolo con queso", "arepas", Decimal("15000")),
            ("Arepa rellena de carne", "arepas", Decimal("18000")),
            ("Limonada de coco", "bebidas", Decimal("9000")),
        ],
    },
    {
        "name": "Sushi Poblado",
        "address": "Calle 10 #38-20, Medellín",
        "phone": "6044440002",
        "category": "japonesa",
        "delivery_fee": Decimal("6000"),
        "min_order": Decimal("30000"),
        "delivery_time": 45,
        "menu": [
            ("Roll California", "rolls", Decimal("32000")),
            ("Roll Acevichado", "rolls", Decimal("36000")),
            ("Té verde", "bebidas", Decimal("7000")),
        ],
    },
]


def seed(db: Session) -> dict:
    users = {}
    for full_name, email, phone, role in USERS:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            user = User(
                full_name=full_name,
                email=email,
                phone=phone,
                password_hash=hash_password(DEMO_PASSWORD),
                role=role.value,
                is_active=True
            )
            db.add(user)
            db.flush()
            logger.info(f"[Seed] 👤 Usuario {email} ({role.value})")
        users[role.value] = user

    owner = users[UserRole.RESTAURANT_OWNER.value]
    for data in RESTAURANTS:
        if db.query(Restaurant).filter(Restaurant.name == data["name"]).first():
            continue
        restaurant = Restaurant(
            owner_id=owner.id,
            name=data["name"],
            address=data["address"],
            phone=data["phone"],
            category=data["category"],
            delivery_fee=data["delivery_fee"],
            min_order=data["min_order"],
            delivery_time=data["delivery_time"],
            is_active=True
        )
        restaurant.menu_items = [
            MenuItem(name=name, category=category, price=price, available=True)
            for name, category, price in data["menu"]
        ]
        db.add(restaurant)
        logger.info(f"[Seed] 🍽️ Restaurante {data['name']} ({len(data['menu'])} productos)")

    db.commit()
    return users


def main():
    setup_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        users = seed(db)
        auth = AuthService(db)
        print("\n" + "=" * 60)
        print(f"✅ Datos de demostración listos (password: {DEMO_PASSWORD})")
        print("=" * 60)
        for role, user in users.items():
            print(f"\n{role:16} {user.email}")
            print(f"  Bearer {auth.create_access_token_for_user(user)}")
        print()
    finally:
        db.close()


if __name__ == "__main__":
    main()
