"""
Payment Manager：付款意圖的生命週期

職責：
1. 依鎖定的等級建立（或重新報價）付款意圖
2. 標記付清，依付款用途分派後續動作
3. 櫃台收款結果（現金/刷卡成功、刷卡被拒）
4. 欠款處理（付清或主管放行）

不變量：每個 lane session 最多只有一筆 DUE 的付款意圖
"""
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional, Tuple
import logging

import pydantic

from models import (
    CheckinMode,
    Customer,
    LaneSession,
    LaneSessionStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
)
from schemas import (
    CheckinPurpose,
    FinalExtensionPurpose,
    PriceQuote,
    UpgradePurpose,
    dump_payment_purpose,
    parse_payment_purpose,
)
from core.state_machine import LaneSessionStateMachine
from core.lane_session_manager import get_open_session
from core.locks import with_payment_intent_lock
from core.exceptions import (
    InternalError,
    PaymentIntentNotFound,
    ValidationFailed,
)
from services import identity_service, pricing_service
from services.audit_service import record_audit
from services.broadcast_service import mark_session_dirty
from services.policy_service import require_admin_pin
from services.time_service import utcnow
from database import transactional

logger = logging.getLogger(__name__)

SUCCESS_OUTCOMES = {
    "CASH_SUCCESS": PaymentMethod.CASH,
    "CREDIT_SUCCESS": PaymentMethod.CREDIT,
}


def _quote_for_session(db: Session, session: LaneSession) -> PriceQuote:
    tier = session.desired_rental_type or session.backup_rental_type
    if tier is None:
        raise ValidationFailed("A rental type must be selected before payment")

    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    now = utcnow()
    kwargs = dict(
        at=now,
        age=identity_service.customer_age(customer, now),
        card_type=customer.membership_card_type if customer else None,
        valid_until=customer.membership_valid_until if customer else None,
        include_membership_purchase=session.membership_purchase_intent is not None,
    )

    if session.checkin_mode == CheckinMode.RENEWAL:
        if session.renewal_hours not in (2, 6):
            raise ValidationFailed("Renewal hours must be 2 or 6")
        return pricing_service.calculate_renewal_quote(tier, session.renewal_hours, **kwargs)
    return pricing_service.calculate_price_quote(tier, **kwargs)


def _apply_paid(
    db: Session,
    intent: PaymentIntent,
    payment_method: Optional[PaymentMethod],
    staff_id: Optional[UUID],
) -> None:
    """
    標記付清並依付款用途分派

    - CHECKIN：session 進入 AWAITING_SIGNATURE
    - UPGRADE：寫入 UPGRADE_PAID 稽核標記
    - FINAL_EXTENSION：寫入 FINAL_EXTENSION_PAID、FINAL_EXTENSION_COMPLETED 稽核標記
    """
    try:
        purpose = parse_payment_purpose(intent.purpose)
    except pydantic.ValidationError as e:
        raise InternalError(f"Payment intent {intent.id} has an invalid purpose: {e}")

    intent.status = PaymentStatus.PAID
    intent.paid_at = utcnow()
    intent.payment_method = payment_method or intent.payment_method
    intent.failure_reason = None
    intent.failure_at = None

    if isinstance(purpose, CheckinPurpose):
        session = db.query(LaneSession).filter(
            LaneSession.id == intent.lane_session_id
        ).with_for_update().first() if intent.lane_session_id else None
        if session is None or session.is_terminal:
            logger.warning(f"Payment intent {intent.id} paid but lane session is not open")
        else:
            LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_SIGNATURE)
    elif isinstance(purpose, UpgradePurpose):
        record_audit(
            db,
            action="UPGRADE_PAID",
            entity_type="waitlist",
            entity_id=purpose.waitlist_id,
            new_value={"payment_intent_id": intent.id, "amount": float(intent.amount)},
            staff_id=staff_id,
        )
    elif isinstance(purpose, FinalExtensionPurpose):
        record_audit(
            db,
            action="FINAL_EXTENSION_PAID",
            entity_type="visit",
            entity_id=purpose.visit_id,
            new_value={"payment_intent_id": intent.id, "amount": float(intent.amount)},
            staff_id=staff_id,
        )
        record_audit(
            db,
            action="FINAL_EXTENSION_COMPLETED",
            entity_type="checkin_block",
            entity_id=purpose.block_id,
            new_value={"payment_intent_id": intent.id},
            staff_id=staff_id,
        )
    else:
        raise InternalError(f"Unhandled payment purpose {type(purpose).__name__}")

    if intent.lane_session_id:
        mark_session_dirty(db, intent.lane_session_id)
    logger.info(f"Payment intent {intent.id} marked PAID ({dump_payment_purpose(purpose)['type']})")


class PaymentManager:
    """付款意圖管理器"""

    @staticmethod
    @transactional
    def create_payment_intent(db: Session, lane_id: str) -> Tuple[PaymentIntent, PriceQuote]:
        """
        建立（或重新報價）付款意圖

        前置條件：
        1. 選擇已鎖定
        2. 有租用等級（desired 或 backup）

        流程：
        1. 依鎖定的等級、客人年齡、會員狀態、會員購買意圖計算報價
        2. 已有 DUE 意圖時沿用最新一筆並覆寫金額與報價，其他 DUE 一律取消
        3. 沒有時建立新的 DUE 意圖
        4. session 進入 AWAITING_PAYMENT

        返回：
            (PaymentIntent, PriceQuote)

        異常：
            ValidationFailed: 選擇尚未鎖定、沒有等級、續租時數不正確
            InvalidStateTransition: session 已付款等待簽約
        """
        session = get_open_session(db, lane_id)

        if not session.selection_confirmed or session.selection_locked_at is None:
            raise ValidationFailed("Selection must be locked before creating a payment intent")

        quote = _quote_for_session(db, session)
        quote_json = quote.model_dump(mode="json")

        LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_PAYMENT)

        due = db.query(PaymentIntent).filter(
            PaymentIntent.lane_session_id == session.id,
            PaymentIntent.status == PaymentStatus.DUE
        ).order_by(PaymentIntent.created_at.desc()).with_for_update().all()

        if due:
            intent = due[0]
            for extra in due[1:]:
                extra.status = PaymentStatus.CANCELLED
                logger.warning(f"Cancelled duplicate DUE payment intent {extra.id} for session {session.id}")
            intent.amount = quote.total
            intent.quote_json = quote_json
        else:
            intent = PaymentIntent(
                lane_session_id=session.id,
                amount=quote.total,
                status=PaymentStatus.DUE,
                purpose=dump_payment_purpose(CheckinPurpose()),
                quote_json=quote_json,
            )
            db.add(intent)
        db.flush()

        session.payment_intent_id = intent.id
        session.price_quote_json = quote_json

        mark_session_dirty(db, session.id)
        logger.info(f"Lane {lane_id}: payment intent {intent.id} DUE {quote.total}")
        return intent, quote

    @staticmethod
    @transactional
    def mark_paid(
        db: Session,
        intent_id: UUID,
        payment_method: Optional[PaymentMethod] = None,
        staff_id: Optional[UUID] = None,
    ) -> Tuple[PaymentIntent, bool]:
        """
        標記付款意圖為已付清（idempotent）

        返回：
            (PaymentIntent, already_paid)

        異常：
            PaymentIntentNotFound: 意圖不存在
            ValidationFailed: 意圖已取消
        """
        intent = with_payment_intent_lock(intent_id, db).first()
        if not intent:
            raise PaymentIntentNotFound(intent_id)

        if intent.status == PaymentStatus.PAID:
            return intent, True
        if intent.status == PaymentStatus.CANCELLED:
            raise ValidationFailed(f"Payment intent {intent_id} is cancelled")

        _apply_paid(db, intent, payment_method, staff_id)
        return intent, False

    @staticmethod
    @transactional
    def take_payment(
        db: Session,
        lane_id: str,
        outcome: str,
        decline_reason: Optional[str] = None,
        staff_id: Optional[UUID] = None,
    ) -> PaymentIntent:
        """
        記錄櫃台收款結果

        - CASH_SUCCESS / CREDIT_SUCCESS：同 mark_paid
        - CREDIT_DECLINE：記錄失敗原因與時間，意圖維持 DUE
        """
        session = get_open_session(db, lane_id)
        if session.payment_intent_id is None:
            raise ValidationFailed("No payment intent for this session")

        intent = with_payment_intent_lock(session.payment_intent_id, db).first()
        if not intent:
            raise PaymentIntentNotFound(session.payment_intent_id)

        if outcome in SUCCESS_OUTCOMES:
            if intent.status == PaymentStatus.DUE:
                _apply_paid(db, intent, SUCCESS_OUTCOMES[outcome], staff_id)
            elif intent.status == PaymentStatus.CANCELLED:
                raise ValidationFailed(f"Payment intent {intent.id} is cancelled")
            return intent

        if outcome != "CREDIT_DECLINE":
            raise ValidationFailed(f"Unknown payment outcome {outcome}")
        if intent.status != PaymentStatus.DUE:
            raise ValidationFailed(f"Payment intent {intent.id} is not due")

        now = utcnow()
        reason = decline_reason or "Card declined"
        intent.payment_method = PaymentMethod.CREDIT
        intent.failure_reason = reason
        intent.failure_at = now
        session.last_payment_decline_reason = reason
        session.last_payment_decline_at = now

        mark_session_dirty(db, session.id)
        logger.info(f"Lane {lane_id}: payment declined ({reason})")
        return intent

    @staticmethod
    @transactional
    def settle_past_due(
        db: Session,
        lane_id: str,
        outcome: str,
        decline_reason: Optional[str] = None,
    ) -> Tuple[LaneSession, Customer]:
        """付清欠款（成功時餘額歸零）或記錄被拒原因"""
        session = get_open_session(db, lane_id)
        customer = db.get(Customer, session.customer_id) if session.customer_id else None
        if not customer:
            raise ValidationFailed("Session has no customer")
        if (customer.past_due_balance or 0) <= 0:
            raise ValidationFailed("Customer has no past-due balance")

        now = utcnow()
        if outcome in SUCCESS_OUTCOMES:
            record_audit(
                db,
                action="PAST_DUE_PAID",
                entity_type="customer",
                entity_id=customer.id,
                old_value={"past_due_balance": float(customer.past_due_balance)},
                new_value={"past_due_balance": 0, "payment_method": SUCCESS_OUTCOMES[outcome].value},
            )
            customer.past_due_balance = 0
            session.last_past_due_decline_reason = None
            session.last_past_due_decline_at = None
        elif outcome == "CREDIT_DECLINE":
            session.last_past_due_decline_reason = decline_reason or "Card declined"
            session.last_past_due_decline_at = now
        else:
            raise ValidationFailed(f"Unknown payment outcome {outcome}")

        mark_session_dirty(db, session.id)
        return session, customer

    @staticmethod
    @transactional
    def bypass_past_due(db: Session, lane_id: str, manager_id: UUID, manager_pin: str) -> LaneSession:
        """
        主管放行欠款

        異常：
            NotFound: 主管不存在
            Forbidden: 不是 ADMIN
            Unauthorized: PIN 錯誤
        """
        session = get_open_session(db, lane_id)
        manager = require_admin_pin(db, manager_id, manager_pin)

        session.past_due_bypassed = True
        session.past_due_bypassed_by_staff_id = manager.id
        session.past_due_bypassed_at = utcnow()

        record_audit(
            db,
            action="PAST_DUE_BYPASS",
            entity_type="lane_session",
            entity_id=session.id,
            old_value={"past_due_bypassed": False},
            new_value={"past_due_bypassed": True},
            staff_id=manager.id,
        )
        mark_session_dirty(db, session.id)
        logger.info(f"Lane {lane_id}: past-due bypassed by manager {manager.id}")
        return session
