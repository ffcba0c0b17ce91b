import os
from decimal import Decimal

os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REALTIME_BACKEND"] = "memory"
os.environ["REFUND_WORKER_INTERVAL_SECONDS"] = "0"
os.environ["WOMPI_PUBLIC_KEY"] = "pub_test_quiklii"
os.environ["WOMPI_PRIVATE_KEY"] = "prv_test_quiklii"
os.environ["WOMPI_EVENTS_SECRET"] = "test_events_secret"
os.environ["WOMPI_INTEGRITY_SECRET"] = "test_integrity_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_quiklii"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_quiklii"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models import MenuItem, Restaurant, User, UserRole
from app.services.realtime_service import RealtimeNotifier
from tests.helpers import RecordingBus


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def notifier(bus):
    return RealtimeNotifier(bus)


def _user(db, name, email, role):
    user = User(full_name=name, email=email, role=role.value, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def customer(db):
    return _user(db, "Laura Cliente", "laura@example.com", UserRole.CUSTOMER)


@pytest.fixture
def other_customer(db):
    return _user(db, "Pedro Cliente", "pedro@example.com", UserRole.CUSTOMER)


@pytest.fixture
def owner(db):
    return _user(db, "Andrés Dueño", "andres@example.com", UserRole.RESTAURANT_OWNER)


@pytest.fixture
def other_owner(db):
    return _user(db, "Marta Dueña", "marta@example.com", UserRole.RESTAURANT_OWNER)


@pytest.fixture
def courier(db):
    return _user(db, "Juan Repartidor", "juan@example.com", UserRole.DELIVERY_PERSON)


@pytest.fixture
def admin(db):
    return _user(db, "Admin", "admin@example.com", UserRole.ADMIN)


@pytest.fixture
def restaurant(db, owner):
    restaurant = Restaurant(
        owner_id=owner.id,
        name="Arepas La 70",
        address="Carrera 70 #45-12",
        delivery_fee=Decimal("4500"),
        min_order=Decimal("0"),
        delivery_time=30,
        is_active=True
    )
    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    return restaurant


@pytest.fixture
def other_restaurant(db, other_owner):
    restaurant = Restaurant(
        owner_id=other_owner.id,
        name="Sushi Poblado",
        address="Calle 10 #38-20",
        delivery_fee=Decimal("6000"),
        min_order=Decimal("30000"),
        is_active=True
    )
    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    return restaurant


@pytest.fixture
def menu(db, restaurant, other_restaurant):
    items = {
        "arepa": MenuItem(restaurant_id=restaurant.id, name="Arepa de chócolo", price=Decimal("15000")),
        "limonada": MenuItem(restaurant_id=restaurant.id, name="Limonada de coco", price=Decimal("9000")),
        "agotado": MenuItem(restaurant_id=restaurant.id, name="Tamal", price=Decimal("12000"), available=False),
        "roll": MenuItem(restaurant_id=other_restaurant.id, name="Roll California", price=Decimal("32000")),
    }
    db.add_all(items.values())
    db.commit()
    for item in items.values():
        db.refresh(item)
    return items
