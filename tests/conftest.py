from datetime import date, datetime
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db, get_serializable_db
from models import (
    Actor,
    Agreement,
    CheckinBlock,
    BlockType,
    Customer,
    RentalTier,
    Resource,
    ResourceKind,
    ResourceStatus,
    Staff,
    StaffRole,
    Visit,
)
from core.lane_session_manager import LaneSessionManager
from core.payment_manager import PaymentManager
from core.selection_manager import SelectionManager
from services.broadcast_service import broadcaster
from services.policy_service import hash_pin
from services.time_service import utcnow

LANES = ("lane-1", "lane-2")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
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
def client(session_factory):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_serializable_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def events():
    """收集 lane-1 / lane-2 上廣播的所有訊息"""
    received: List[dict] = []

    def collect(message):
        received.append(message)

    for lane_id in LANES:
        broadcaster.subscribe(lane_id, collect)
    yield received
    for lane_id in LANES:
        broadcaster.unsubscribe(lane_id, collect)


def event_types(received: List[dict], lane_id: Optional[str] = None) -> List[str]:
    return [m["type"] for m in received if lane_id is None or m["lane_id"] == lane_id]


# ============ Seed data ============

@pytest.fixture
def make_customer(db):
    counter = {"n": 0}

    def _make(name="Test Customer", age=30, past_due_balance=0, membership_number=None, **kwargs):
        counter["n"] += 1
        today = utcnow().date()
        customer = Customer(
            name=name,
            dob=date(today.year - age, 1, 1) if age is not None else None,
            membership_number=membership_number or f"M{1000 + counter['n']}",
            past_due_balance=past_due_balance,
            **kwargs
        )
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def make_resource(db):
    def _make(number, kind=ResourceKind.ROOM, tier=None, status=ResourceStatus.CLEAN):
        if tier is None and kind == ResourceKind.LOCKER:
            tier = RentalTier.LOCKER
        resource = Resource(kind=kind, number=str(number), tier=tier, status=status)
        db.add(resource)
        db.commit()
        return resource

    return _make


@pytest.fixture
def make_stay(db):
    """建立進行中的 Visit 與一個時段，並把資源標記為被客人佔用"""
    def _make(customer, resource, starts_at: datetime, ends_at: datetime, tier=None):
        visit = Visit(customer_id=customer.id, started_at=starts_at)
        db.add(visit)
        db.flush()
        block = CheckinBlock(
            visit_id=visit.id,
            block_type=BlockType.INITIAL,
            starts_at=starts_at,
            ends_at=ends_at,
            rental_type=tier or resource.tier or RentalTier.STANDARD,
            resource_id=resource.id,
            agreement_signed=True,
        )
        db.add(block)
        resource.status = ResourceStatus.OCCUPIED
        resource.assigned_customer_id = customer.id
        db.commit()
        return visit, block

    return _make


@pytest.fixture
def agreement(db):
    row = Agreement(
        title="House Rules",
        version="2024-01",
        body_text="No refunds. Follow posted rules at all times.",
        active=True,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def admin(db):
    staff = Staff(name="Manager", role=StaffRole.ADMIN, pin_hash=hash_pin("1234"), active=True)
    db.add(staff)
    db.commit()
    return staff


SIGNATURE = "data:image/png;base64," + "iVBORw0KGgoAAAANSUhEUgAAAAEAAAAB" * 2


@pytest.fixture
def paid_session(db, agreement):
    """開始 session、鎖定等級、建立付款意圖並付清"""
    def _run(lane_id, customer, tier=RentalTier.STANDARD, visit_id=None, renewal_hours=None,
             waitlist_desired_type=None):
        session, _ = LaneSessionManager.start_session(
            db, lane_id, customer_id=customer.id, visit_id=visit_id, renewal_hours=renewal_hours
        )
        SelectionManager.propose_selection(
            db, lane_id, tier, Actor.EMPLOYEE, waitlist_desired_type=waitlist_desired_type
        )
        SelectionManager.confirm_selection(db, lane_id, Actor.EMPLOYEE)
        intent, _ = PaymentManager.create_payment_intent(db, lane_id)
        PaymentManager.mark_paid(db, intent.id)
        return session

    return _run
