"""
Visit / 時段計算

入住與續租共用的規則：
- INITIAL：從現在開始，initial_block_hours 小時後結束（進位到 15 分鐘）
- RENEWAL：從上一個時段的結束時間開始（不是現在）
  - 6 小時續租結束時間進位到 15 分鐘
  - 2 小時續租（FINAL2H）剛好 2 小時，不進位
- 同一個 Visit 的時段總長不能超過 max_visit_hours
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from database import get_settings
from models import BlockType, CheckinBlock, Visit
from core.exceptions import RenewalLimitExceeded, ValidationFailed
from services.time_service import round_up_to_quarter_hour


def get_open_visit(db: Session, customer_id: UUID) -> Optional[Visit]:
    return db.query(Visit).filter(
        Visit.customer_id == customer_id,
        Visit.ended_at.is_(None)
    ).order_by(Visit.started_at.desc()).first()


def latest_block(db: Session, visit_id: UUID) -> Optional[CheckinBlock]:
    return db.query(CheckinBlock).filter(
        CheckinBlock.visit_id == visit_id
    ).order_by(CheckinBlock.ends_at.desc()).first()


def visit_total_hours(db: Session, visit_id: UUID) -> float:
    blocks = db.query(CheckinBlock).filter(CheckinBlock.visit_id == visit_id).all()
    return sum(block.duration_hours for block in blocks)


def check_renewal(db: Session, visit: Visit, renewal_hours: int, now: datetime) -> CheckinBlock:
    """
    檢查這個 Visit 能不能續租

    返回：
        Visit 目前最後一個時段（新時段會接在它後面）

    異常：
        ValidationFailed: Visit 已結束、沒有時段、或不在退房前後的續租時間內
        RenewalLimitExceeded: 續租後總長超過上限
    """
    settings = get_settings()

    if visit.ended_at is not None:
        raise ValidationFailed("Visit has already ended")

    current = latest_block(db, visit.id)
    if current is None:
        raise ValidationFailed("Visit has no check-in blocks to renew")

    window = timedelta(minutes=settings.renewal_window_minutes)
    if abs(current.ends_at - now) > window:
        raise ValidationFailed(
            f"Renewal is only available within {settings.renewal_window_minutes} minutes of checkout"
        )

    if visit_total_hours(db, visit.id) + renewal_hours > settings.max_visit_hours:
        raise RenewalLimitExceeded(
            f"Renewal would exceed {settings.max_visit_hours}-hour maximum"
        )

    return current


def plan_initial_block(now: datetime) -> Tuple[BlockType, datetime, datetime]:
    hours = get_settings().initial_block_hours
    return BlockType.INITIAL, now, round_up_to_quarter_hour(now + timedelta(hours=hours))


def plan_renewal_block(previous: CheckinBlock, renewal_hours: int) -> Tuple[BlockType, datetime, datetime]:
    starts_at = previous.ends_at
    if renewal_hours == 2:
        return BlockType.FINAL2H, starts_at, starts_at + timedelta(hours=2)
    return BlockType.RENEWAL, starts_at, round_up_to_quarter_hour(
        starts_at + timedelta(hours=renewal_hours)
    )
