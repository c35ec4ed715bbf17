"""
價格服務：入住/續租報價與升等費用

純計算邏輯，不讀寫 DB。輸入是等級、客人年齡、入住時間與會員狀態。
"""
from datetime import date, datetime, time
from typing import List, Optional

from models import MembershipCardType, RentalTier
from schemas import PriceLineItem, PriceQuote

NO_REFUNDS_MESSAGES = ["No refunds"]

MEMBERSHIP_FEE = 13
SIX_MONTH_MEMBERSHIP_FEE = 43
TWO_HOUR_RENEWAL_FEE = 20

ROOM_NAMES = {
    RentalTier.STANDARD: "Standard Room",
    RentalTier.DOUBLE: "Double Room",
    RentalTier.SPECIAL: "Special Room",
}

# (一般價, 平日折扣時段價)
BASE_ROOM_PRICES = {
    RentalTier.STANDARD: (30, 27),
    RentalTier.DOUBLE: (40, 37),
    RentalTier.SPECIAL: (50, 47),
}

YOUTH_ROOM_PRICES = {
    RentalTier.STANDARD: 30,
    RentalTier.DOUBLE: 50,
    RentalTier.SPECIAL: 50,
}

UPGRADE_FEES = {
    RentalTier.LOCKER: {RentalTier.STANDARD: 8, RentalTier.DOUBLE: 17, RentalTier.SPECIAL: 27},
    RentalTier.STANDARD: {RentalTier.DOUBLE: 9, RentalTier.SPECIAL: 19},
    RentalTier.DOUBLE: {RentalTier.SPECIAL: 9},
}


def is_weekday_discount_window(at: datetime) -> bool:
    """週一 8:00 到週五 16:00（含 16:00 整）"""
    if at.weekday() > 4:
        return False
    if 8 <= at.hour < 16:
        return True
    return at.hour == 16 and at.minute == 0


def is_youth(age: Optional[int]) -> bool:
    return age is not None and 18 <= age <= 24


def has_valid_six_month_membership(
    at: datetime,
    card_type: Optional[MembershipCardType],
    valid_until: Optional[date],
) -> bool:
    """會員效期以日期儲存，當天結束前都算有效"""
    if card_type != MembershipCardType.SIX_MONTH or valid_until is None:
        return False
    return at <= datetime.combine(valid_until, time.max)


def get_locker_price(tier: RentalTier, at: datetime, youth: bool) -> int:
    """
    置物櫃價格

    - GYM_LOCKER 永遠免費
    - 年輕客人：平日折扣時段免費，其他時段 7
    - 其他客人：平日折扣時段 16，週末（週五 16 點後到週一 8 點前）24，其餘 19
    """
    if tier == RentalTier.GYM_LOCKER:
        return 0

    discount = is_weekday_discount_window(at)
    if youth:
        return 0 if discount else 7

    if discount:
        return 16

    weekday = at.weekday()
    if weekday in (5, 6):
        return 24
    if weekday == 4 and at.hour >= 16:
        return 24
    if weekday == 0 and at.hour < 8:
        return 24
    return 19


def get_membership_fee(
    at: datetime,
    age: Optional[int],
    card_type: Optional[MembershipCardType],
    valid_until: Optional[date],
) -> int:
    """25 歲以上且沒有有效半年會員，需付當日會員費"""
    if age is not None and age < 25:
        return 0
    if has_valid_six_month_membership(at, card_type, valid_until):
        return 0
    return MEMBERSHIP_FEE


def _membership_line_items(
    at: datetime,
    age: Optional[int],
    card_type: Optional[MembershipCardType],
    valid_until: Optional[date],
    include_membership_purchase: bool,
):
    purchase_fee = SIX_MONTH_MEMBERSHIP_FEE if include_membership_purchase else 0
    # 購買半年會員時免收當日會員費
    membership_fee = 0 if include_membership_purchase else get_membership_fee(
        at, age, card_type, valid_until
    )

    items: List[PriceLineItem] = []
    if membership_fee > 0:
        items.append(PriceLineItem(description="Membership Fee", amount=membership_fee))
    if purchase_fee > 0:
        items.append(PriceLineItem(description="6 Month Membership", amount=purchase_fee))
    return membership_fee, purchase_fee, items


def calculate_price_quote(
    tier: RentalTier,
    at: datetime,
    age: Optional[int] = None,
    card_type: Optional[MembershipCardType] = None,
    valid_until: Optional[date] = None,
    include_membership_purchase: bool = False,
) -> PriceQuote:
    """
    計算入住報價

    參數：
        tier: 已鎖定的租用等級
        at: 入住時間（決定平日折扣與週末價）
        age: 客人年齡（未知時不套用年輕價，且需付會員費）
        card_type / valid_until: 會員卡資訊
        include_membership_purchase: 同時購買半年會員

    返回：
        PriceQuote
    """
    youth = is_youth(age)
    line_items: List[PriceLineItem] = []

    if tier in (RentalTier.LOCKER, RentalTier.GYM_LOCKER):
        rental_fee = get_locker_price(tier, at, youth)
        if rental_fee > 0:
            name = "Gym Locker" if tier == RentalTier.GYM_LOCKER else "Locker"
            line_items.append(PriceLineItem(description=name, amount=rental_fee))
        elif tier == RentalTier.GYM_LOCKER:
            line_items.append(PriceLineItem(description="Gym Locker (no cost)", amount=0))
    else:
        if youth:
            rental_fee = YOUTH_ROOM_PRICES[tier]
        else:
            regular, discounted = BASE_ROOM_PRICES[tier]
            rental_fee = discounted if is_weekday_discount_window(at) else regular
        line_items.append(PriceLineItem(description=ROOM_NAMES[tier], amount=rental_fee))

    membership_fee, purchase_fee, membership_items = _membership_line_items(
        at, age, card_type, valid_until, include_membership_purchase
    )
    line_items.extend(membership_items)

    return PriceQuote(
        rental_fee=rental_fee,
        membership_fee=membership_fee,
        total=rental_fee + membership_fee + purchase_fee,
        line_items=line_items,
        messages=list(NO_REFUNDS_MESSAGES),
    )


def calculate_renewal_quote(
    tier: RentalTier,
    renewal_hours: Optional[int],
    at: datetime,
    age: Optional[int] = None,
    card_type: Optional[MembershipCardType] = None,
    valid_until: Optional[date] = None,
    include_membership_purchase: bool = False,
) -> PriceQuote:
    """
    計算續租報價

    - 6 小時續租：與入住相同的完整價格
    - 2 小時續租：固定 20 + 當日會員費（若需要）
    """
    if (renewal_hours or 6) == 6:
        return calculate_price_quote(
            tier, at, age, card_type, valid_until, include_membership_purchase
        )

    line_items = [PriceLineItem(description="Renewal (2 Hours)", amount=TWO_HOUR_RENEWAL_FEE)]
    membership_fee, purchase_fee, membership_items = _membership_line_items(
        at, age, card_type, valid_until, include_membership_purchase
    )
    line_items.extend(membership_items)

    return PriceQuote(
        rental_fee=TWO_HOUR_RENEWAL_FEE,
        membership_fee=membership_fee,
        total=TWO_HOUR_RENEWAL_FEE + membership_fee + purchase_fee,
        line_items=line_items,
        messages=list(NO_REFUNDS_MESSAGES),
    )


def get_upgrade_fee(from_tier: RentalTier, to_tier: RentalTier) -> Optional[int]:
    """升等費用（僅供顯示，實際升等時才收取）；不支援的組合回傳 None"""
    return UPGRADE_FEES.get(from_tier, {}).get(to_tier)
