"""
權限檢查：主管 PIN 驗證

欠款放行（past-due bypass）需要 ADMIN 身分與正確 PIN，
這個檢查獨立於訂房邏輯之外，由 PaymentManager 呼叫。
"""
from uuid import UUID
import logging

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from models import Staff, StaffRole
from core.exceptions import Forbidden, NotFound, Unauthorized

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_pin(pin: str) -> str:
    return pwd_context.hash(pin)


def verify_pin(plain_pin: str, pin_hash: str) -> bool:
    return pwd_context.verify(plain_pin, pin_hash)


def require_admin_pin(db: Session, staff_id: UUID, pin: str) -> Staff:
    """
    驗證主管身分

    參數：
        db: SQLAlchemy Session
        staff_id: 主管的 Staff ID
        pin: 輸入的 PIN

    返回：
        通過驗證的 Staff

    異常：
        NotFound: 主管不存在或已停用
        Forbidden: 不是 ADMIN
        Unauthorized: PIN 錯誤
    """
    staff = db.query(Staff).filter(Staff.id == staff_id, Staff.active.is_(True)).first()
    if not staff:
        raise NotFound("Manager not found")

    if staff.role != StaffRole.ADMIN:
        logger.warning(f"Non-admin staff {staff_id} attempted past-due bypass")
        raise Forbidden("Manager role required")

    if not staff.pin_hash or not verify_pin(pin, staff.pin_hash):
        logger.warning(f"Invalid PIN for manager {staff_id}")
        raise Unauthorized("Invalid PIN")

    return staff
