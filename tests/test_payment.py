import uuid

import pytest

from models import (
    Actor,
    AuditLog,
    Customer,
    LaneSession,
    LaneSessionStatus,
    MembershipPurchaseIntent,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    RentalTier,
    Staff,
    StaffRole,
)
from core.exceptions import (
    Forbidden,
    InternalError,
    InvalidStateTransition,
    NotFound,
    PaymentIntentNotFound,
    Unauthorized,
    ValidationFailed,
)
from core.lane_session_manager import LaneSessionManager
from core.payment_manager import PaymentManager
from core.selection_manager import SelectionManager
from services.policy_service import hash_pin


@pytest.fixture
def locked(db, make_customer):
    def _run(tier=RentalTier.STANDARD, **customer_kwargs):
        customer = make_customer(**customer_kwargs)
        LaneSessionManager.start_session(db, "lane-1", customer_id=customer.id)
        SelectionManager.propose_selection(db, "lane-1", tier, Actor.EMPLOYEE)
        SelectionManager.confirm_selection(db, "lane-1", Actor.EMPLOYEE)
        return customer

    return _run


def _due_intents(db):
    return db.query(PaymentIntent).filter(PaymentIntent.status == PaymentStatus.DUE).all()


def test_create_payment_intent_requires_lock(db, make_customer):
    customer = make_customer()
    LaneSessionManager.start_session(db, "lane-1", customer_id=customer.id)
    SelectionManager.propose_selection(db, "lane-1", RentalTier.STANDARD, Actor.EMPLOYEE)

    with pytest.raises(ValidationFailed):
        PaymentManager.create_payment_intent(db, "lane-1")
    assert db.query(PaymentIntent).count() == 0


def test_create_payment_intent_moves_session_to_awaiting_payment(db, locked):
    locked(age=30)

    intent, quote = PaymentManager.create_payment_intent(db, "lane-1")

    session = db.query(LaneSession).one()
    assert session.status == LaneSessionStatus.AWAITING_PAYMENT
    assert session.payment_intent_id == intent.id
    assert intent.status == PaymentStatus.DUE
    assert intent.amount == quote.total
    assert intent.purpose == {"type": "CHECKIN"}
    assert session.price_quote_json["total"] == quote.total


def test_repeated_creation_keeps_single_due_intent(db, locked):
    locked()

    first, _ = PaymentManager.create_payment_intent(db, "lane-1")
    for _ in range(3):
        again, _ = PaymentManager.create_payment_intent(db, "lane-1")
        assert again.id == first.id

    assert len(_due_intents(db)) == 1


def test_stray_due_intents_are_cancelled(db, locked):
    locked()
    intent, _ = PaymentManager.create_payment_intent(db, "lane-1")
    session = db.query(LaneSession).one()
    stray = PaymentIntent(
        lane_session_id=session.id,
        amount=1,
        status=PaymentStatus.DUE,
        purpose={"type": "CHECKIN"},
    )
    db.add(stray)
    db.commit()

    PaymentManager.create_payment_intent(db, "lane-1")

    due = _due_intents(db)
    assert len(due) == 1
    assert db.query(LaneSession).one().payment_intent_id == due[0].id


def test_requote_follows_membership_purchase_intent(db, locked):
    locked(age=30)
    intent, quote = PaymentManager.create_payment_intent(db, "lane-1")
    assert quote.membership_fee == 13

    LaneSessionManager.set_membership_purchase_intent(
        db, "lane-1", MembershipPurchaseIntent.PURCHASE
    )
    again, requote = PaymentManager.create_payment_intent(db, "lane-1")

    assert again.id == intent.id
    assert requote.total == quote.total - 13 + 43
    assert again.amount == requote.total


def test_mark_paid_is_idempotent(db, locked):
    locked()
    intent, _ = PaymentManager.create_payment_intent(db, "lane-1")

    paid, already_paid = PaymentManager.mark_paid(db, intent.id, PaymentMethod.CASH)
    assert already_paid is False
    assert paid.status == PaymentStatus.PAID
    paid_at = paid.paid_at

    again, already_paid = PaymentManager.mark_paid(db, intent.id, PaymentMethod.CREDIT)
    assert already_paid is True
    assert again.paid_at == paid_at
    assert again.payment_method == PaymentMethod.CASH

    session = db.query(LaneSession).one()
    assert session.status == LaneSessionStatus.AWAITING_SIGNATURE


def test_mark_paid_unknown_or_cancelled_intent(db, locked):
    with pytest.raises(PaymentIntentNotFound):
        PaymentManager.mark_paid(db, uuid.uuid4())

    locked()
    intent, _ = PaymentManager.create_payment_intent(db, "lane-1")
    LaneSessionManager.reset(db, "lane-1")

    with pytest.raises(ValidationFailed):
        PaymentManager.mark_paid(db, intent.id)


def test_payment_intent_after_payment_is_rejected(db, locked):
    locked()
    intent, _ = PaymentManager.create_payment_intent(db, "lane-1")
    PaymentManager.mark_paid(db, intent.id)

    with pytest.raises(InvalidStateTransition):
        PaymentManager.create_payment_intent(db, "lane-1")


def test_upgrade_purpose_records_marker_only(db):
    waitlist_id = uuid.uuid4()
    intent = PaymentIntent(
        amount=9,
        status=PaymentStatus.DUE,
        purpose={"type": "UPGRADE", "waitlist_id": str(waitlist_id)},
    )
    db.add(intent)
    db.commit()

    PaymentManager.mark_paid(db, intent.id, PaymentMethod.CREDIT)

    audit = db.query(AuditLog).filter(AuditLog.action == "UPGRADE_PAID").one()
    assert audit.entity_id == str(waitlist_id)
    assert db.query(LaneSession).count() == 0


def test_final_extension_purpose_records_both_markers(db):
    visit_id, block_id = uuid.uuid4(), uuid.uuid4()
    intent = PaymentIntent(
        amount=20,
        status=PaymentStatus.DUE,
        purpose={"type": "FINAL_EXTENSION", "visit_id": str(visit_id), "block_id": str(block_id)},
    )
    db.add(intent)
    db.commit()

    PaymentManager.mark_paid(db, intent.id)

    actions = {row.action: row.entity_id for row in db.query(AuditLog).all()}
    assert actions["FINAL_EXTENSION_PAID"] == str(visit_id)
    assert actions["FINAL_EXTENSION_COMPLETED"] == str(block_id)


def test_unknown_purpose_is_internal_error(db):
    intent = PaymentIntent(amount=5, status=PaymentStatus.DUE, purpose={"type": "GIFT_CARD"})
    db.add(intent)
    db.commit()

    with pytest.raises(InternalError):
        PaymentManager.mark_paid(db, intent.id)
    assert db.get(PaymentIntent, intent.id).status == PaymentStatus.DUE


def test_take_payment_decline_then_success(db, locked):
    locked()
    PaymentManager.create_payment_intent(db, "lane-1")

    intent = PaymentManager.take_payment(db, "lane-1", "CREDIT_DECLINE", "Insufficient funds")
    assert intent.status == PaymentStatus.DUE
    assert intent.failure_reason == "Insufficient funds"
    session = db.query(LaneSession).one()
    assert session.last_payment_decline_reason == "Insufficient funds"

    intent = PaymentManager.take_payment(db, "lane-1", "CASH_SUCCESS")
    assert intent.status == PaymentStatus.PAID
    assert intent.payment_method == PaymentMethod.CASH
    assert intent.failure_reason is None


def test_take_payment_without_intent(db, locked):
    locked()
    with pytest.raises(ValidationFailed):
        PaymentManager.take_payment(db, "lane-1", "CASH_SUCCESS")


# ============ 欠款 ============

def test_settle_past_due_clears_balance(db, make_customer):
    customer = make_customer(past_due_balance=40)
    LaneSessionManager.start_session(db, "lane-1", customer_id=customer.id)

    session, _ = PaymentManager.settle_past_due(db, "lane-1", "CREDIT_DECLINE", "Card expired")
    assert session.last_past_due_decline_reason == "Card expired"
    assert db.get(Customer, customer.id).past_due_balance == 40

    PaymentManager.settle_past_due(db, "lane-1", "CASH_SUCCESS")
    assert db.get(Customer, customer.id).past_due_balance == 0
    assert db.query(AuditLog).filter(AuditLog.action == "PAST_DUE_PAID").count() == 1

    with pytest.raises(ValidationFailed):
        PaymentManager.settle_past_due(db, "lane-1", "CASH_SUCCESS")


def test_bypass_past_due_requires_admin_pin(db, make_customer, admin):
    customer = make_customer(past_due_balance=40)
    LaneSessionManager.start_session(db, "lane-1", customer_id=customer.id)
    clerk = Staff(name="Clerk", role=StaffRole.STAFF, pin_hash=hash_pin("0000"), active=True)
    db.add(clerk)
    db.commit()

    with pytest.raises(NotFound):
        PaymentManager.bypass_past_due(db, "lane-1", uuid.uuid4(), "1234")
    with pytest.raises(Forbidden):
        PaymentManager.bypass_past_due(db, "lane-1", clerk.id, "0000")
    with pytest.raises(Unauthorized):
        PaymentManager.bypass_past_due(db, "lane-1", admin.id, "9999")

    session = PaymentManager.bypass_past_due(db, "lane-1", admin.id, "1234")
    assert session.past_due_bypassed is True
    assert session.past_due_bypassed_by_staff_id == admin.id

    # 放行後客人可以自己選擇
    SelectionManager.propose_selection(db, "lane-1", RentalTier.STANDARD, Actor.CUSTOMER)
