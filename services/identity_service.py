"""
客人身分解析與資格判斷

掃描影像解碼不在這裡處理，呼叫端只傳入已解碼的字串
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import hashlib
import logging

from sqlalchemy.orm import Session

from database import get_settings
from models import Customer, RentalTier
from core.exceptions import NotFound, ValidationFailed
from services.time_service import age_on

logger = logging.getLogger(__name__)

BASE_RENTALS = [RentalTier.LOCKER, RentalTier.STANDARD, RentalTier.DOUBLE, RentalTier.SPECIAL]


def hash_id_scan(value: str) -> str:
    normalized = " ".join(value.split()).upper()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def resolve_customer(
    db: Session,
    customer_id: Optional[UUID] = None,
    id_scan_value: Optional[str] = None,
    membership_scan_value: Optional[str] = None,
    customer_name: Optional[str] = None,
) -> Customer:
    """
    找出（或建立）客人

    順序：customer_id -> 會員號碼 -> 證件掃描 hash -> 建立暫時客人

    異常：
        NotFound: 指定的 customer_id 不存在
        ValidationFailed: 沒有任何識別資訊
    """
    if customer_id is not None:
        customer = db.get(Customer, customer_id)
        if not customer:
            raise NotFound(f"Customer {customer_id} not found")
        return customer

    membership_number = membership_scan_value.strip() if membership_scan_value else None
    scan_hash = hash_id_scan(id_scan_value) if id_scan_value and id_scan_value.strip() else None

    if not membership_number and not scan_hash:
        raise ValidationFailed("customer_id, id_scan_value or membership_scan_value is required")

    if membership_number:
        customer = db.query(Customer).filter(
            Customer.membership_number == membership_number
        ).first()
        if customer:
            return customer

    if scan_hash:
        customer = db.query(Customer).filter(Customer.id_scan_hash == scan_hash).first()
        if customer:
            return customer

    customer = Customer(
        name=customer_name or (f"Member {membership_number}" if membership_number else "Guest"),
        membership_number=membership_number,
        id_scan_hash=scan_hash,
        past_due_balance=0,
    )
    db.add(customer)
    db.flush()
    logger.info(f"Created placeholder customer {customer.id}")
    return customer


def is_banned(customer: Customer, now: datetime) -> bool:
    return customer.banned_until is not None and customer.banned_until > now


def customer_age(customer: Optional[Customer], now: datetime) -> Optional[int]:
    if customer is None or customer.dob is None:
        return None
    return age_on(customer.dob, now.date())


def is_gym_locker_eligible(membership_number: Optional[str]) -> bool:
    """會員號碼落在設定的區間內（例如 "1000-1999,5000-5099"）才可租 GYM_LOCKER"""
    ranges = get_settings().gym_locker_eligible_ranges
    if not membership_number or not ranges.strip():
        return False
    try:
        number = int(membership_number)
    except ValueError:
        return False

    for part in ranges.split(","):
        bounds = [b.strip() for b in part.split("-")]
        if len(bounds) != 2:
            continue
        try:
            start, end = int(bounds[0]), int(bounds[1])
        except ValueError:
            continue
        if start <= number <= end:
            return True
    return False


def get_allowed_rentals(membership_number: Optional[str]) -> List[RentalTier]:
    allowed = list(BASE_RENTALS)
    if is_gym_locker_eligible(membership_number):
        allowed.append(RentalTier.GYM_LOCKER)
    return allowed
