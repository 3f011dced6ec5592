"""Shared fixtures: in-memory database, seeded marketplace, API client and session tokens."""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from types import SimpleNamespace  # noqa: E402
from typing import Any, Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import views  # noqa: E402
from auth import create_token  # noqa: E402
from database import Base  # noqa: E402
from models import (  # noqa: E402
    Address, Product, ProductVariant, RentalPeriod, RentalPrice, User, VendorDeliveryConfig,
)


class FakeGeocoder:
    """Geocoder double: fixed coordinates per address text and one fixed distance."""

    def __init__(self, coords: Optional[dict[str, tuple[float, float]]] = None, distance_km: Optional[float] = None):
        self.coords = coords or {}
        self.distance_km = distance_km
        self.geocode_calls: list[str] = []
        self.distance_calls: list[tuple[Any, Any]] = []

    def geocode(self, text: str):
        self.geocode_calls.append(text)
        return self.coords.get(text)

    def driving_distance_km(self, origin, destination):
        self.distance_calls.append((origin, destination))
        return self.distance_km


@pytest.fixture(autouse=True)
def clear_views() -> None:
    """Cached listings must not leak between tests."""
    views.clear()
    yield
    views.clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def _price(db, variant: ProductVariant, period: RentalPeriod, price: float) -> None:
    db.add(RentalPrice(variant=variant, period=period, price=price))


def _seed_marketplace(db) -> SimpleNamespace:
    """
    Two vendors and one customer.

    Vendor A ("Alpha Rentals"): camera (daily 500, hourly 50), tripod (daily 300),
    FLAT delivery 100 waived from 1000, pickup address in Pune.
    Vendor B (no company name): speaker (daily 300), an unpriced lamp, FREE delivery.
    """
    periods = {
        unit: RentalPeriod(name=f"1 {unit.lower()}", unit=unit, duration=1, is_active=True)
        for unit in ("HOUR", "DAY", "WEEK", "MONTH")
    }
    db.add_all(periods.values())

    customer = User(name="Carla Customer", email="carla@example.com", role="CUSTOMER")
    vendor_a = User(name="Anil", email="anil@alpha.example", role="VENDOR", company_name="Alpha Rentals")
    vendor_b = User(name="Bela", email="bela@beta.example", role="VENDOR")
    admin = User(name="Root", email="root@example.com", role="SUPER_ADMIN")
    db.add_all([customer, vendor_a, vendor_b, admin])

    shipping = Address(
        user=customer, type="SHIPPING", line1="1 Main St", city="Pune", state="MH",
        country="India", pincode="411001", is_default=True,
    )
    pickup = Address(
        user=vendor_a, type="PICKUP", line1="9 Depot Rd", city="Pune", state="MH",
        country="India", is_default=True,
    )
    db.add_all([shipping, pickup])

    db.add(VendorDeliveryConfig(
        vendor=vendor_a, is_delivery_enabled=True, charge_type="FLAT", flat_charge=100, free_above_amount=1000,
    ))
    db.add(VendorDeliveryConfig(vendor=vendor_b, is_delivery_enabled=True, charge_type="FREE"))

    camera = ProductVariant(product=Product(vendor=vendor_a, name="Camera", is_published=True), sku="CAM", quantity=3)
    tripod = ProductVariant(product=Product(vendor=vendor_a, name="Tripod", is_published=True), sku="TRI", quantity=5)
    speaker = ProductVariant(product=Product(vendor=vendor_b, name="Speaker", is_published=True), sku="SPK", quantity=2)
    lamp = ProductVariant(product=Product(vendor=vendor_b, name="Lamp", is_published=True), sku="LMP", quantity=1)
    db.add_all([camera, tripod, speaker, lamp])

    _price(db, camera, periods["DAY"], 500)
    _price(db, camera, periods["HOUR"], 50)
    _price(db, tripod, periods["DAY"], 300)
    _price(db, speaker, periods["DAY"], 300)
    db.commit()

    return SimpleNamespace(
        customer_id=customer.id,
        vendor_a_id=vendor_a.id,
        vendor_b_id=vendor_b.id,
        admin_id=admin.id,
        shipping_address_id=shipping.id,
        pickup_address_id=pickup.id,
        camera_id=camera.id,
        tripod_id=tripod.id,
        speaker_id=speaker.id,
        lamp_id=lamp.id,
        hour_period_id=periods["HOUR"].id,
        day_period_id=periods["DAY"].id,
        week_period_id=periods["WEEK"].id,
    )


@pytest.fixture
def marketplace(db) -> SimpleNamespace:
    return _seed_marketplace(db)


@pytest.fixture
def file_sessions(tmp_path):
    """
    Two independent sessions on one file-backed database, seeded with the marketplace.

    Used to interleave two requests the way two worker processes would.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"check_same_thread": False, "timeout": 1},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    first, second = factory(), factory()
    market = _seed_marketplace(first)
    yield first, second, market
    first.close()
    second.close()
    engine.dispose()


@pytest.fixture
def client(session_factory):
    from database import get_db
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer header for a user id and role."""
    def make(user_id: int, role: str, email: str = "user@example.com") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_token(user_id, email, role)}"}

    return make


@pytest.fixture
def geocoder_factory():
    return FakeGeocoder
