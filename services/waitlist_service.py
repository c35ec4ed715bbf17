"""
Waitlist 計算服務

唯讀計算（排隊位置、預估可用時間、需求數量），每次呼叫都直接查 DB，不做快取。
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from database import get_settings
from models import CheckinBlock, RentalTier, Resource, Visit, WaitlistEntry, WaitlistStatus
from services.inventory_service import tier_condition
from services.time_service import utcnow

logger = logging.getLogger(__name__)


def count_active_entries(db: Session, tier: RentalTier) -> int:
    return db.query(WaitlistEntry).filter(
        WaitlistEntry.status == WaitlistStatus.ACTIVE,
        WaitlistEntry.desired_tier == tier
    ).count()


def compute_waitlist_info(
    db: Session,
    tier: RentalTier,
    now: Optional[datetime] = None
) -> Tuple[int, Optional[datetime]]:
    """
    計算新加入 waitlist 的排隊位置與預估可用時間

    流程：
    1. position = 該等級 ACTIVE 排隊數 + 1
    2. 找出仍在進行中（visit 未結束、ends_at 在未來）且資源屬於該等級的時段，依結束時間排序
    3. 第 position 個時段的結束時間 + 緩衝時間即為 ETA；時段不足時 ETA 為 None

    參數：
        db: SQLAlchemy Session
        tier: 想要的等級
        now: 計算基準時間（預設為現在）

    返回：
        (position, eta)
    """
    now = now or utcnow()
    position = count_active_entries(db, tier) + 1

    block = db.query(CheckinBlock).join(
        Visit, CheckinBlock.visit_id == Visit.id
    ).join(
        Resource, CheckinBlock.resource_id == Resource.id
    ).filter(
        Visit.ended_at.is_(None),
        CheckinBlock.ends_at > now,
        tier_condition(tier)
    ).order_by(
        CheckinBlock.ends_at.asc()
    ).offset(position - 1).first()

    if block is None:
        return position, None

    buffer = timedelta(minutes=get_settings().waitlist_eta_buffer_minutes)
    return position, block.ends_at + buffer


def count_pending_demand(db: Session, tier: RentalTier, now: Optional[datetime] = None) -> int:
    """
    demandCount：該等級仍有效的 ACTIVE 排隊數

    只計算停留尚未結束（visit 未結束且目前時段 ends_at 在未來）的排隊
    """
    now = now or utcnow()
    return db.query(WaitlistEntry).join(
        Visit, WaitlistEntry.visit_id == Visit.id
    ).join(
        CheckinBlock, WaitlistEntry.checkin_block_id == CheckinBlock.id
    ).filter(
        WaitlistEntry.status == WaitlistStatus.ACTIVE,
        WaitlistEntry.desired_tier == tier,
        Visit.ended_at.is_(None),
        CheckinBlock.ends_at > now
    ).count()


def reserved_resource_ids(db: Session, tier: RentalTier, now: Optional[datetime] = None) -> List[UUID]:
    """
    已保留給 OFFERED 排隊的資源，不能被新入住挑走

    停留已結束的 OFFERED 排隊不再保留資源
    """
    now = now or utcnow()
    rows = db.query(WaitlistEntry.resource_id).join(
        Visit, WaitlistEntry.visit_id == Visit.id
    ).join(
        CheckinBlock, WaitlistEntry.checkin_block_id == CheckinBlock.id
    ).filter(
        WaitlistEntry.status == WaitlistStatus.OFFERED,
        WaitlistEntry.desired_tier == tier,
        WaitlistEntry.resource_id.isnot(None),
        Visit.ended_at.is_(None),
        CheckinBlock.ends_at > now
    ).all()
    return [row[0] for row in rows]


def create_waitlist_entry(
    db: Session,
    visit_id: UUID,
    block_id: UUID,
    desired_tier: RentalTier,
    backup_tier: RentalTier,
    initial_resource_id: Optional[UUID] = None
) -> WaitlistEntry:
    entry = WaitlistEntry(
        visit_id=visit_id,
        checkin_block_id=block_id,
        desired_tier=desired_tier,
        backup_tier=backup_tier,
        status=WaitlistStatus.ACTIVE,
        initial_resource_id=initial_resource_id
    )
    db.add(entry)
    db.flush()
    logger.info(
        f"Waitlist entry {entry.id} created for visit {visit_id}: "
        f"{desired_tier.value} (backup {backup_tier.value})"
    )
    return entry
