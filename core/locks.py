"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking），
自動挑選資源時則使用 FOR UPDATE SKIP LOCKED，讓同時進行的挑選拿到不同的資源。
"""
from sqlalchemy.orm import Session, Query
from uuid import UUID

from models import LaneSession, OPEN_SESSION_STATUSES, PaymentIntent, Resource


def with_resource_lock(resource_id: UUID, db: Session) -> Query:
    """
    鎖定一個 Resource（行級鎖）

    使用場景：
    - 暫定指派資源時（確認資源仍是 CLEAN 且沒有 assignee）
    - 簽約 commit 前重新檢查資源（真正的 CLEAN -> OCCUPIED 由 claim_resource 的條件式 UPDATE 完成）

    範例：
        resource = with_resource_lock(resource_id, db).first()
        if not resource:
            raise ResourceNotFound("room", resource_id)

    參數：
        resource_id: Resource 的 UUID
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(Resource).filter(
        Resource.id == resource_id
    ).with_for_update(nowait=False)


def with_lane_session_lock(lane_id: str, db: Session) -> Query:
    """
    鎖定某條 lane 上的非終止 LaneSession（行級鎖）

    使用場景：
    - 選擇協商（propose / confirm / acknowledge）
    - 建立付款意圖、簽約等會修改 session 的操作

    返回：
        Query object，依 created_at 由新到舊排序
    """
    return db.query(LaneSession).filter(
        LaneSession.lane_id == lane_id,
        LaneSession.status.in_(OPEN_SESSION_STATUSES)
    ).order_by(LaneSession.created_at.desc()).with_for_update(nowait=False)


def with_payment_intent_lock(intent_id: UUID, db: Session) -> Query:
    """鎖定一個 PaymentIntent（mark paid 時防止重複入帳）"""
    return db.query(PaymentIntent).filter(
        PaymentIntent.id == intent_id
    ).with_for_update(nowait=False)


def skip_locked(query: Query) -> Query:
    """
    FOR UPDATE SKIP LOCKED

    已被其他 transaction 鎖住的 row 直接跳過，不等待。
    SQLite 不支援 row lock，會直接忽略；
    搶同一個資源的最終判定靠 claim_resource 的條件式 UPDATE 與 partial unique index。
    """
    return query.with_for_update(skip_locked=True)
