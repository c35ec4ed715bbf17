"""
Resource Allocator：房間/置物櫃的暫定指派與自動挑選

職責：
1. 暫定指派（assign）：只把資源記在 LaneSession 上，資源本身維持 CLEAN、沒有 assignee
2. 客人接受/拒絕不同等級的指派
3. 簽約時自動挑選資源（保留名額給已經在排隊的客人）

實體 commit（CLEAN -> OCCUPIED）只在 AgreementManager 簽約時發生。
"""
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from uuid import UUID
from typing import Optional, Tuple
import logging

from models import (
    LaneSession,
    OPEN_SESSION_STATUSES,
    RentalTier,
    Resource,
    ResourceKind,
    ResourceStatus,
)
from core.lane_session_manager import get_open_session
from core.locks import skip_locked, with_resource_lock
from core.exceptions import (
    Conflict,
    ResourceAlreadyAssigned,
    ResourceNotFound,
    ValidationFailed,
)
from services import waitlist_service
from services.audit_service import record_audit
from services.broadcast_service import mark_session_dirty, publish_best_effort, queue_event
from services.inventory_service import get_resource_tier, kind_for_tier, tier_condition
from database import transactional

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected
_SERIALIZATION_FAILURES = ("40001", "40P01")


def _held_by_open_sessions():
    """子查詢：被非終止 lane session 暫定持有的資源"""
    return select(LaneSession.assigned_resource_id).where(
        LaneSession.assigned_resource_id.isnot(None),
        LaneSession.status.in_(OPEN_SESSION_STATUSES)
    )


def ensure_not_held_elsewhere(db: Session, resource: Resource, session_id: UUID) -> None:
    """資源被其他 lane session 暫定持有時拋出 ResourceAlreadyAssigned"""
    holder = db.query(LaneSession.id).filter(
        LaneSession.assigned_resource_id == resource.id,
        LaneSession.status.in_(OPEN_SESSION_STATUSES),
        LaneSession.id != session_id
    ).first()
    if holder is not None:
        raise ResourceAlreadyAssigned(
            f"{resource.kind.value.capitalize()} {resource.number} is already assigned to another lane"
        )


def claim_resource(
    db: Session,
    resource: Resource,
    customer_id: UUID,
    now: datetime,
    renewing: bool = False,
) -> bool:
    """
    實體 commit：把資源標記為 OCCUPIED 並指派給客人（條件式 UPDATE）

    只有資源仍是 CLEAN 且沒有 assignee 時才會更新（續租時也接受已指派給同一位客人）。
    其他 lane 先 commit 了同一個資源時影響 0 筆，不依賴 row lock，SQLite 上也成立。

    參數：
        db: SQLAlchemy Session
        resource: 要 commit 的資源
        customer_id: 入住的客人
        now: commit 時間
        renewing: 續租沿用目前資源

    返回：
        True 表示搶到資源（resource 會重新從 DB 讀取），False 表示已被其他 lane 拿走

    異常：
        ResourceAlreadyAssigned: PostgreSQL serialization failure
    """
    available = and_(
        Resource.status == ResourceStatus.CLEAN,
        Resource.assigned_customer_id.is_(None)
    )
    if renewing:
        available = or_(available, Resource.assigned_customer_id == customer_id)

    try:
        updated = db.query(Resource).filter(
            Resource.id == resource.id,
            available
        ).update({
            Resource.status: ResourceStatus.OCCUPIED,
            Resource.assigned_customer_id: customer_id,
            Resource.last_status_change: now,
        }, synchronize_session=False)
    except DBAPIError as e:
        if getattr(e.orig, "pgcode", None) not in _SERIALIZATION_FAILURES:
            raise
        raise ResourceAlreadyAssigned(
            f"{resource.kind.value.capitalize()} {resource.number} was committed by another lane"
        ) from e

    if updated != 1:
        logger.warning(f"{resource.kind.value.capitalize()} {resource.number} was committed by another lane")
        return False
    db.refresh(resource)
    return True


class ResourceAllocator:
    """資源指派與挑選"""

    @staticmethod
    def assign_resource(
        db: Session,
        lane_id: str,
        kind: ResourceKind,
        resource_id: UUID,
        staff_id: Optional[UUID] = None,
    ) -> Tuple[LaneSession, Resource, bool]:
        """
        暫定指派資源給 lane 上的 session

        搶輸（Conflict 或 DB serialization failure）時，rollback 後另外送出
        best-effort 的 ASSIGNMENT_FAILED，讓其他 lane 的觀察者也知道。

        返回：
            (LaneSession, Resource, needs_confirmation)

        異常：
            SessionNotFound / ResourceNotFound / ValidationFailed / Conflict
        """
        try:
            return ResourceAllocator._assign_tentative(db, lane_id, kind, resource_id, staff_id)
        except Conflict as e:
            ResourceAllocator._announce_failure(lane_id, kind, resource_id, e.message)
            raise
        except DBAPIError as e:
            if getattr(e.orig, "pgcode", None) not in _SERIALIZATION_FAILURES:
                raise
            message = f"{kind.value.capitalize()} {resource_id} is already assigned"
            ResourceAllocator._announce_failure(lane_id, kind, resource_id, message)
            raise ResourceAlreadyAssigned(message) from e

    @staticmethod
    def _announce_failure(lane_id: str, kind: ResourceKind, resource_id: UUID, reason: str) -> None:
        publish_best_effort(lane_id, "ASSIGNMENT_FAILED", {
            "resource_type": kind.value,
            "resource_id": str(resource_id),
            "reason": reason,
        })

    @staticmethod
    @transactional
    def _assign_tentative(
        db: Session,
        lane_id: str,
        kind: ResourceKind,
        resource_id: UUID,
        staff_id: Optional[UUID] = None,
    ) -> Tuple[LaneSession, Resource, bool]:
        """
        流程：
        1. 鎖定 lane session 與資源 row
        2. 資源必須存在、是 CLEAN、沒有 assignee、沒被其他 lane 暫定持有
        3. 只在 session 上記錄資源（資源狀態不變），同時搶到的另一條 lane 會撞到 unique index
        4. 寫入稽核紀錄
        5. 等級與客人想要的不同時，要求客人確認
        """
        # 1. 鎖定
        session = get_open_session(db, lane_id)
        resource = with_resource_lock(resource_id, db).first()

        # 2. 驗證
        if not resource or resource.kind != kind:
            raise ResourceNotFound(kind.value, resource_id)

        label = f"{resource.kind.value.capitalize()} {resource.number}"
        if resource.status != ResourceStatus.CLEAN:
            raise ValidationFailed(f"{label} is not available (status: {resource.status.value})")
        if resource.assigned_customer_id is not None:
            raise ResourceAlreadyAssigned(f"{label} is already assigned")
        ensure_not_held_elsewhere(db, resource, session.id)

        # 3. 暫定指派（partial unique index 保證同一資源只被一個 open session 持有）
        session.assigned_resource_id = resource.id
        session.assigned_resource_type = resource.kind
        try:
            db.flush()
        except IntegrityError as e:
            raise ResourceAlreadyAssigned(f"{label} is already assigned to another lane") from e

        # 4. 稽核
        record_audit(
            db,
            action="ASSIGN",
            entity_type=resource.kind.value,
            entity_id=resource.id,
            old_value={"assigned_to_customer_id": None},
            new_value={"selected_for_session_id": session.id},
            staff_id=staff_id,
        )

        # 5. 等級比對
        tier = get_resource_tier(resource)
        wanted = session.desired_rental_type or session.backup_rental_type
        needs_confirmation = wanted is not None and tier != wanted

        queue_event(db, lane_id, "ASSIGNMENT_CREATED", {
            "session_id": session.id,
            "resource_type": resource.kind.value,
            "resource_id": resource.id,
            "resource_number": resource.number,
            "rental_type": tier.value,
            "final": False,
        })
        if needs_confirmation:
            queue_event(db, lane_id, "CUSTOMER_CONFIRMATION_REQUIRED", {
                "session_id": session.id,
                "requested_type": wanted.value,
                "selected_type": tier.value,
                "selected_number": resource.number,
            })
        mark_session_dirty(db, session.id)

        logger.info(f"Lane {lane_id}: {label} tentatively assigned to session {session.id}")
        return session, resource, needs_confirmation

    @staticmethod
    @transactional
    def customer_confirm(db: Session, lane_id: str, session_id: UUID, confirmed: bool) -> LaneSession:
        """
        客人接受或拒絕不同等級的暫定指派

        拒絕時只清掉 session 上的資源參照；資源從來沒有被實體 commit，不需要還原
        """
        session = get_open_session(db, lane_id, session_id)
        if session.assigned_resource_id is None:
            raise ValidationFailed("No resource is assigned to this session")

        resource = db.get(Resource, session.assigned_resource_id)

        if confirmed:
            queue_event(db, lane_id, "CUSTOMER_CONFIRMED", {
                "session_id": session.id,
                "confirmed_type": get_resource_tier(resource).value if resource else None,
                "confirmed_number": resource.number if resource else None,
            })
        else:
            session.assigned_resource_id = None
            session.assigned_resource_type = None
            queue_event(db, lane_id, "CUSTOMER_DECLINED", {
                "session_id": session.id,
                "requested_type": (
                    session.desired_rental_type.value if session.desired_rental_type else None
                ),
            })

        mark_session_dirty(db, session.id)
        return session

    @staticmethod
    def select_room_for_new_checkin(db: Session, tier: RentalTier) -> Optional[Resource]:
        """
        幫新入住挑一間房（公平性演算法）

        1. demandCount = 該等級仍有效的 ACTIVE 排隊數
        2. 排除已保留給 OFFERED 排隊的房間、被其他 lane 暫定持有的房間
        3. 依房號排序，跳過前 demandCount 間（留給排隊的客人），取下一間
        4. FOR UPDATE SKIP LOCKED：其他 lane 正在鎖的房間直接跳過

        demandCount 與挑選之間的一致性依賴呼叫端的 SERIALIZABLE transaction。
        """
        demand_count = waitlist_service.count_pending_demand(db, tier)
        reserved = waitlist_service.reserved_resource_ids(db, tier)

        query = db.query(Resource).filter(
            Resource.status == ResourceStatus.CLEAN,
            Resource.assigned_customer_id.is_(None),
            tier_condition(tier),
            Resource.id.notin_(_held_by_open_sessions())
        )
        if reserved:
            query = query.filter(Resource.id.notin_(reserved))

        room = skip_locked(
            query.order_by(Resource.number.asc())
        ).offset(demand_count).limit(1).first()

        logger.info(
            f"Auto-select {tier.value}: demand={demand_count}, reserved={len(reserved)}, "
            f"picked={room.number if room else None}"
        )
        return room

    @staticmethod
    def select_locker_for_new_checkin(db: Session, tier: RentalTier = RentalTier.LOCKER) -> Optional[Resource]:
        """第一個 CLEAN、沒有 assignee 的置物櫃（依號碼排序，SKIP LOCKED）"""
        query = db.query(Resource).filter(
            Resource.status == ResourceStatus.CLEAN,
            Resource.assigned_customer_id.is_(None),
            tier_condition(tier),
            Resource.id.notin_(_held_by_open_sessions())
        ).order_by(Resource.number.asc())
        return skip_locked(query).first()

    @staticmethod
    def select_for_new_checkin(db: Session, tier: RentalTier) -> Optional[Resource]:
        if kind_for_tier(tier) == ResourceKind.LOCKER:
            return ResourceAllocator.select_locker_for_new_checkin(db, tier)
        return ResourceAllocator.select_room_for_new_checkin(db, tier)
