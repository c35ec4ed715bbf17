"""
Lane Session Manager：管理 LaneSession 的生命週期

職責：
1. 開始 session（識別客人、判斷入住或續租）
2. Reset（人工取消，唯一的取消路徑）
3. Kiosk 確認完成（kiosk ack）
4. 客人資料的少量寫入（語言、備註、會員購買意圖）
5. 查詢目前狀態（polling 用）

每條 lane 同時最多只有一筆非終止狀態的 session。
"""
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional, Tuple
import logging

from models import (
    CheckinMode,
    Customer,
    LaneSession,
    LaneSessionStatus,
    MembershipPurchaseIntent,
    PaymentIntent,
    PaymentStatus,
    Visit,
)
from schemas import SessionStatePayload
from core.state_machine import LaneSessionStateMachine
from core.locks import with_lane_session_lock
from core.exceptions import (
    Conflict,
    CustomerBanned,
    NotFound,
    SessionNotFound,
    ValidationFailed,
)
from services import identity_service, visit_service
from services.broadcast_service import build_session_payload, mark_session_dirty
from services.time_service import utcnow
from database import transactional

logger = logging.getLogger(__name__)


def get_open_session(db: Session, lane_id: str, session_id: Optional[UUID] = None) -> LaneSession:
    """
    取得並鎖定 lane 上的非終止 session

    異常：
        SessionNotFound: 沒有符合的 session（或 session_id 不符）
    """
    query = with_lane_session_lock(lane_id, db)
    if session_id is not None:
        query = query.filter(LaneSession.id == session_id)
    session = query.first()
    if not session:
        raise SessionNotFound(lane_id)
    return session


def clear_negotiation(session: LaneSession) -> None:
    """清除所有協商、指派、付款相關欄位"""
    session.checkin_mode = None
    session.renewal_hours = None
    session.visit_id = None
    session.desired_rental_type = None
    session.waitlist_desired_type = None
    session.backup_rental_type = None
    session.proposed_rental_type = None
    session.proposed_by = None
    session.selection_confirmed = False
    session.selection_confirmed_by = None
    session.selection_locked_at = None
    session.assigned_resource_id = None
    session.assigned_resource_type = None
    session.payment_intent_id = None
    session.price_quote_json = None
    session.last_payment_decline_reason = None
    session.last_payment_decline_at = None
    session.past_due_bypassed = False
    session.past_due_bypassed_by_staff_id = None
    session.past_due_bypassed_at = None
    session.last_past_due_decline_reason = None
    session.last_past_due_decline_at = None
    session.membership_purchase_intent = None
    session.membership_purchase_requested_at = None
    session.agreement_signed_method = None


def _cancel_due_intents(db: Session, session_id: UUID) -> int:
    intents = db.query(PaymentIntent).filter(
        PaymentIntent.lane_session_id == session_id,
        PaymentIntent.status == PaymentStatus.DUE
    ).all()
    for intent in intents:
        intent.status = PaymentStatus.CANCELLED
    return len(intents)


class LaneSessionManager:
    """LaneSession 生命週期管理器"""

    @staticmethod
    @transactional
    def start_session(
        db: Session,
        lane_id: str,
        staff_id: Optional[UUID] = None,
        customer_id: Optional[UUID] = None,
        id_scan_value: Optional[str] = None,
        membership_scan_value: Optional[str] = None,
        customer_name: Optional[str] = None,
        visit_id: Optional[UUID] = None,
        renewal_hours: Optional[int] = None,
    ) -> Tuple[LaneSession, Customer]:
        """
        開始（或接手）lane 上的 session

        流程：
        1. 檢查續租參數
        2. 找出客人（customer_id / 會員號碼 / 證件掃描，都找不到就建立暫時客人）
        3. 檢查是否被禁止入場、是否已經在店內
        4. 續租時檢查 Visit 歸屬、續租時間與 14 小時上限
        5. 沿用 lane 上的 ACTIVE session，其他非終止 session 先 CANCELLED
        6. 寫入客人資訊與模式

        返回：
            (LaneSession, Customer) tuple

        異常：
            ValidationFailed: 只給 renewal_hours 沒給 visit_id、續租條件不符
            CustomerBanned: 客人被禁止入場
            Conflict(ALREADY_CHECKED_IN): 客人已有進行中的 Visit 且不是續租
            NotFound: customer_id 或 visit_id 不存在
        """
        # 1. 續租參數
        if renewal_hours is not None and visit_id is None:
            raise ValidationFailed("renewal_hours requires visit_id")
        if renewal_hours is not None and renewal_hours not in (2, 6):
            raise ValidationFailed("renewal_hours must be 2 or 6")

        # 2. 找出客人
        customer = identity_service.resolve_customer(
            db,
            customer_id=customer_id,
            id_scan_value=id_scan_value,
            membership_scan_value=membership_scan_value,
            customer_name=customer_name,
        )
        now = utcnow()

        # 3. 資格檢查
        if identity_service.is_banned(customer, now):
            raise CustomerBanned(f"Customer is banned until {customer.banned_until.isoformat()}")

        mode = CheckinMode.INITIAL
        if visit_id is None:
            if visit_service.get_open_visit(db, customer.id):
                raise Conflict("Customer is already checked in", code="ALREADY_CHECKED_IN")
        else:
            # 4. 續租
            visit = db.get(Visit, visit_id)
            if not visit:
                raise NotFound(f"Visit {visit_id} not found")
            if visit.customer_id != customer.id:
                raise ValidationFailed("Visit does not belong to this customer")
            renewal_hours = renewal_hours or 6
            visit_service.check_renewal(db, visit, renewal_hours, now)
            mode = CheckinMode.RENEWAL

        # 5. 找 lane 上現有的 session
        session = None
        for existing in with_lane_session_lock(lane_id, db).all():
            if session is None and existing.status == LaneSessionStatus.ACTIVE:
                session = existing
                continue
            cancelled = _cancel_due_intents(db, existing.id)
            LaneSessionStateMachine.transition(existing, LaneSessionStatus.CANCELLED)
            mark_session_dirty(db, existing.id)
            logger.info(
                f"Cancelled lane session {existing.id} on lane {lane_id} "
                f"({cancelled} due payment intents cancelled)"
            )
        db.flush()

        if session is None:
            session = LaneSession(lane_id=lane_id, status=LaneSessionStatus.ACTIVE)
            db.add(session)
        else:
            clear_negotiation(session)

        # 6. 寫入客人資訊
        session.staff_id = staff_id
        session.customer_id = customer.id
        session.customer_display_name = customer.name
        session.membership_number = customer.membership_number
        session.checkin_mode = mode
        session.renewal_hours = renewal_hours if mode == CheckinMode.RENEWAL else None
        session.visit_id = visit_id
        db.flush()

        mark_session_dirty(db, session.id)
        logger.info(
            f"Lane {lane_id}: session {session.id} started for customer {customer.id} ({mode.value})"
        )
        return session, customer

    @staticmethod
    @transactional
    def reset(db: Session, lane_id: str) -> Tuple[Optional[LaneSession], bool]:
        """
        Reset lane（人工取消）

        找出最新的非終止 session，清除所有協商/指派/付款欄位並標記為 COMPLETED。
        若 lane 上只剩已終止的 session，直接回傳成功、不做任何修改。

        返回：
            (LaneSession 或 None, already_completed)

        異常：
            SessionNotFound: lane 上從來沒有 session
        """
        session = with_lane_session_lock(lane_id, db).first()
        if session is None:
            exists = db.query(LaneSession.id).filter(LaneSession.lane_id == lane_id).first()
            if exists is None:
                raise SessionNotFound(lane_id)
            logger.info(f"Lane {lane_id} has no open session, reset is a no-op")
            return None, True

        _cancel_due_intents(db, session.id)
        clear_negotiation(session)
        LaneSessionStateMachine.transition(session, LaneSessionStatus.COMPLETED)

        mark_session_dirty(db, session.id)
        logger.info(f"Lane {lane_id}: session {session.id} reset")
        return session, False

    @staticmethod
    @transactional
    def kiosk_ack(db: Session, lane_id: str) -> LaneSession:
        """
        記錄客人在 kiosk 上按下完成

        只寫入時間，不改變 session 狀態（交易可能還沒真正完成）
        """
        session = db.query(LaneSession).filter(
            LaneSession.lane_id == lane_id,
            LaneSession.status != LaneSessionStatus.CANCELLED
        ).order_by(LaneSession.created_at.desc()).with_for_update().first()
        if not session:
            raise SessionNotFound(lane_id)

        session.kiosk_acknowledged_at = utcnow()
        mark_session_dirty(db, session.id)
        return session

    @staticmethod
    @transactional
    def set_language(db: Session, lane_id: str, language: str) -> LaneSession:
        session = get_open_session(db, lane_id)
        customer = _require_customer(db, session)
        customer.primary_language = language
        mark_session_dirty(db, session.id)
        return session

    @staticmethod
    @transactional
    def add_note(db: Session, lane_id: str, note: str, staff_id: Optional[UUID] = None) -> LaneSession:
        """在客人備註後面加上一行（附時間與員工）"""
        session = get_open_session(db, lane_id)
        customer = _require_customer(db, session)

        line = f"[{utcnow().strftime('%Y-%m-%d %H:%M')}] {note.strip()}"
        if staff_id:
            line += f" ({staff_id})"
        customer.notes = f"{customer.notes}\n{line}" if customer.notes else line

        mark_session_dirty(db, session.id)
        return session

    @staticmethod
    @transactional
    def set_membership_purchase_intent(
        db: Session,
        lane_id: str,
        intent: Optional[MembershipPurchaseIntent]
    ) -> LaneSession:
        """設定（或取消）本次一併購買/續約半年會員；下一次建立付款意圖時生效"""
        session = get_open_session(db, lane_id)
        session.membership_purchase_intent = intent
        session.membership_purchase_requested_at = utcnow() if intent else None
        mark_session_dirty(db, session.id)
        return session

    @staticmethod
    def get_session_snapshot(db: Session, lane_id: str) -> Optional[SessionStatePayload]:
        """lane 上最新一筆 session 的完整狀態；沒有 session 時回傳 None"""
        session = db.query(LaneSession).filter(
            LaneSession.lane_id == lane_id
        ).order_by(LaneSession.created_at.desc()).first()
        if not session:
            return None
        _, state = build_session_payload(db, session.id)
        return state


def _require_customer(db: Session, session: LaneSession) -> Customer:
    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    if not customer:
        raise ValidationFailed("Session has no customer")
    return customer
