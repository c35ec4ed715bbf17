"""
Selection Manager：員工與客人（kiosk）協商租用等級

選擇狀態：NONE -> PROPOSED -> LOCKED

規則：
- PROPOSED 階段後寫入者覆蓋（不合併）
- 鎖定後不能再提出新選擇；重複確認回傳第一次鎖定的結果（先到先贏）
- acknowledge 只是訊號，只廣播不寫入
- 客人有未放行的欠款時，客人這一方不能提出或確認選擇
"""
from sqlalchemy.orm import Session
from typing import Optional, Tuple
import logging

from models import Actor, Customer, LaneSession, LaneSessionStatus, RentalTier
from core.state_machine import LaneSessionStateMachine
from core.lane_session_manager import get_open_session
from core.exceptions import PastDueBlocked, SelectionAlreadyLocked, ValidationFailed
from services.broadcast_service import mark_session_dirty, queue_event
from services.identity_service import get_allowed_rentals
from services.time_service import utcnow
from database import transactional

logger = logging.getLogger(__name__)


def _check_past_due(db: Session, session: LaneSession, actor: Actor) -> None:
    if actor != Actor.CUSTOMER or session.past_due_bypassed:
        return
    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    if customer and (customer.past_due_balance or 0) > 0:
        raise PastDueBlocked()


class SelectionManager:
    """租用等級協商"""

    @staticmethod
    @transactional
    def propose_selection(
        db: Session,
        lane_id: str,
        rental_type: RentalTier,
        proposed_by: Actor,
        waitlist_desired_type: Optional[RentalTier] = None,
        backup_rental_type: Optional[RentalTier] = None,
    ) -> LaneSession:
        """
        提出（或覆蓋）租用等級

        參數：
            rental_type: 提出的等級
            proposed_by: CUSTOMER 或 EMPLOYEE
            waitlist_desired_type: 想排隊等待的更高等級（可選）
            backup_rental_type: 排隊期間先使用的等級（預設為 rental_type）

        異常：
            SelectionAlreadyLocked: 選擇已鎖定
            PastDueBlocked: 客人提出但有未放行的欠款
            ValidationFailed: 等級不在可租清單內
        """
        session = get_open_session(db, lane_id)

        if session.selection_confirmed:
            raise SelectionAlreadyLocked()

        _check_past_due(db, session, proposed_by)

        allowed = get_allowed_rentals(session.membership_number)
        if rental_type not in allowed:
            raise ValidationFailed(f"Rental type {rental_type.value} is not available for this customer")

        session.proposed_rental_type = rental_type
        session.proposed_by = proposed_by
        session.waitlist_desired_type = waitlist_desired_type
        session.backup_rental_type = (backup_rental_type or rental_type) if waitlist_desired_type else None

        queue_event(db, lane_id, "SELECTION_PROPOSED", {
            "session_id": session.id,
            "rental_type": rental_type.value,
            "proposed_by": proposed_by.value,
        })
        mark_session_dirty(db, session.id)
        logger.info(f"Lane {lane_id}: {proposed_by.value} proposed {rental_type.value}")
        return session

    @staticmethod
    @transactional
    def confirm_selection(db: Session, lane_id: str, confirmed_by: Actor) -> Tuple[LaneSession, bool]:
        """
        鎖定目前的提議

        鎖定時把 proposed_rental_type 快照到 desired_rental_type，
        之後報價與指派都以 desired_rental_type 為準。

        返回：
            (LaneSession, already_locked)，already_locked 為 True 時不做任何修改

        異常：
            ValidationFailed: 還沒有提議
            PastDueBlocked: 客人確認但有未放行的欠款
        """
        session = get_open_session(db, lane_id)

        if session.proposed_rental_type is None:
            raise ValidationFailed("No selection has been proposed")

        _check_past_due(db, session, confirmed_by)

        if session.selection_confirmed:
            return session, True

        session.selection_confirmed = True
        session.selection_confirmed_by = confirmed_by
        session.selection_locked_at = utcnow()
        session.desired_rental_type = session.proposed_rental_type

        if session.status == LaneSessionStatus.ACTIVE:
            LaneSessionStateMachine.transition(session, LaneSessionStatus.AWAITING_ASSIGNMENT)

        payload = {
            "session_id": session.id,
            "rental_type": session.desired_rental_type.value,
            "confirmed_by": confirmed_by.value,
        }
        queue_event(db, lane_id, "SELECTION_LOCKED", payload)
        if confirmed_by == Actor.EMPLOYEE:
            queue_event(db, lane_id, "SELECTION_FORCED", payload)
        mark_session_dirty(db, session.id)

        logger.info(
            f"Lane {lane_id}: selection locked to {session.desired_rental_type.value} by {confirmed_by.value}"
        )
        return session, False

    @staticmethod
    @transactional
    def acknowledge_selection(db: Session, lane_id: str, acknowledged_by: Actor) -> LaneSession:
        """另一方確認看到鎖定結果；只廣播，不寫入"""
        session = get_open_session(db, lane_id)

        if not session.selection_confirmed:
            raise ValidationFailed("Selection is not locked")

        queue_event(db, lane_id, "SELECTION_ACKNOWLEDGED", {
            "session_id": session.id,
            "acknowledged_by": acknowledged_by.value,
        })
        return session

    @staticmethod
    @transactional
    def set_waitlist_desired(
        db: Session,
        lane_id: str,
        waitlist_desired_type: Optional[RentalTier],
        backup_rental_type: Optional[RentalTier] = None,
    ) -> LaneSession:
        """
        設定（或清除）想排隊的等級

        backup 預設為鎖定的等級或目前的提議
        """
        session = get_open_session(db, lane_id)

        if waitlist_desired_type is None:
            session.waitlist_desired_type = None
            session.backup_rental_type = None
        else:
            backup = backup_rental_type or session.desired_rental_type or session.proposed_rental_type
            if backup is None:
                raise ValidationFailed("A backup rental type is required to join the waitlist")
            if backup == waitlist_desired_type:
                raise ValidationFailed("Waitlist type must differ from the backup rental type")
            session.waitlist_desired_type = waitlist_desired_type
            session.backup_rental_type = backup

        mark_session_dirty(db, session.id)
        return session
