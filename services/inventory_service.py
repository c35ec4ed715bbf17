"""
Inventory 參考資料：資源等級查詢

Resource 的等級優先使用 DB 中儲存的 tier；沒有儲存等級的房間，
依設定中的房號清單判斷（deluxe -> DOUBLE，special -> SPECIAL，其餘 STANDARD）。
Allocator 與 Waitlist 只透過這裡取得「資源 X 的等級」，不直接處理房號。
"""

from sqlalchemy import and_, or_

from database import get_settings
from models import LOCKER_TIERS, RentalTier, Resource, ResourceKind


def room_tier_for_number(number: str) -> RentalTier:
    settings = get_settings()
    try:
        value = int(number)
    except (TypeError, ValueError):
        return RentalTier.STANDARD
    if value in settings.special_room_numbers:
        return RentalTier.SPECIAL
    if value in settings.deluxe_room_numbers:
        return RentalTier.DOUBLE
    return RentalTier.STANDARD


def get_resource_tier(resource: Resource) -> RentalTier:
    """取得資源的等級"""
    if resource.tier is not None:
        return resource.tier
    if resource.kind == ResourceKind.LOCKER:
        return RentalTier.LOCKER
    return room_tier_for_number(resource.number)


def kind_for_tier(tier: RentalTier) -> ResourceKind:
    return ResourceKind.LOCKER if tier in LOCKER_TIERS else ResourceKind.ROOM


def tier_condition(tier: RentalTier):
    """
    SQL 條件：資源屬於指定等級

    與 get_resource_tier 的判斷一致，可直接用在 query.filter()
    """
    if tier in LOCKER_TIERS:
        return and_(
            Resource.kind == ResourceKind.LOCKER,
            or_(Resource.tier == tier, Resource.tier.is_(None)),
        )

    settings = get_settings()
    special = [str(n) for n in settings.special_room_numbers]
    deluxe = [str(n) for n in settings.deluxe_room_numbers]
    if tier == RentalTier.SPECIAL:
        by_number = Resource.number.in_(special)
    elif tier == RentalTier.DOUBLE:
        by_number = Resource.number.in_(deluxe)
    else:
        by_number = Resource.number.notin_(special + deluxe)

    return and_(
        Resource.kind == ResourceKind.ROOM,
        or_(Resource.tier == tier, and_(Resource.tier.is_(None), by_number)),
    )
