"""
狀態機：集中管理 LaneSession 的所有狀態轉換

主流程：
    ACTIVE -> AWAITING_ASSIGNMENT -> AWAITING_PAYMENT -> AWAITING_SIGNATURE -> COMPLETED

額外規則：
- 任何非終止狀態都可以進入 CANCELLED 或 COMPLETED（reset）
- AWAITING_PAYMENT -> AWAITING_PAYMENT（重新報價）
- COMPLETED / CANCELLED 是終止狀態，不能再轉換

沒有獨立的「前進」操作，轉換只由各 Manager 觸發。
"""
import logging

from models import LaneSession, LaneSessionStatus, TERMINAL_SESSION_STATUSES
from core.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)

S = LaneSessionStatus

_FORWARD = {
    S.ACTIVE: {S.AWAITING_ASSIGNMENT, S.AWAITING_PAYMENT},
    S.AWAITING_ASSIGNMENT: {S.AWAITING_PAYMENT},
    S.AWAITING_PAYMENT: {S.AWAITING_PAYMENT, S.AWAITING_SIGNATURE},
    S.AWAITING_SIGNATURE: {S.COMPLETED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
}


class LaneSessionStateMachine:
    """LaneSession 狀態機"""

    @staticmethod
    def can_transition(current: LaneSessionStatus, target: LaneSessionStatus) -> bool:
        if current in TERMINAL_SESSION_STATUSES:
            return False
        if target in TERMINAL_SESSION_STATUSES:
            return True
        return target in _FORWARD[current]

    @staticmethod
    def transition(session: LaneSession, target: LaneSessionStatus) -> LaneSession:
        """
        轉換 session 狀態

        參數：
            session: 已鎖定的 LaneSession
            target: 目標狀態

        返回：
            同一個 LaneSession（狀態已更新，尚未 commit）

        異常：
            InvalidStateTransition: 不允許的轉換
        """
        current = session.status
        if not LaneSessionStateMachine.can_transition(current, target):
            raise InvalidStateTransition(
                f"Cannot transition lane session {session.id} from {current.value} to {target.value}"
            )

        session.status = target
        if current != target:
            logger.info(f"Lane session {session.id}: {current.value} -> {target.value}")
        return session
