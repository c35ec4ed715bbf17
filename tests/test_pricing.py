from datetime import date, datetime

import pytest

from models import MembershipCardType, RentalTier
from services import pricing_service

MONDAY_NOON = datetime(2024, 1, 8, 12, 0)
MONDAY_EARLY = datetime(2024, 1, 8, 7, 30)
TUESDAY_NIGHT = datetime(2024, 1, 9, 21, 0)
FRIDAY_FOUR = datetime(2024, 1, 12, 16, 0)
FRIDAY_LATE = datetime(2024, 1, 12, 16, 1)
SATURDAY = datetime(2024, 1, 13, 12, 0)


@pytest.mark.parametrize("at,expected", [
    (MONDAY_NOON, True),
    (FRIDAY_FOUR, True),
    (FRIDAY_LATE, False),
    (MONDAY_EARLY, False),
    (SATURDAY, False),
])
def test_weekday_discount_window(at, expected):
    assert pricing_service.is_weekday_discount_window(at) is expected


def test_standard_room_for_adult_pays_membership_fee():
    quote = pricing_service.calculate_price_quote(RentalTier.STANDARD, TUESDAY_NIGHT, age=30)

    assert quote.rental_fee == 30
    assert quote.membership_fee == 13
    assert quote.total == 43
    assert [item.description for item in quote.line_items] == ["Standard Room", "Membership Fee"]
    assert quote.messages == ["No refunds"]


def test_weekday_discount_applies_to_rooms():
    quote = pricing_service.calculate_price_quote(RentalTier.DOUBLE, MONDAY_NOON, age=40)
    assert quote.rental_fee == 37


def test_youth_pricing_skips_membership_fee():
    quote = pricing_service.calculate_price_quote(RentalTier.DOUBLE, SATURDAY, age=21)
    assert quote.rental_fee == 50
    assert quote.membership_fee == 0
    assert quote.total == 50


def test_valid_six_month_membership_waives_daily_fee():
    quote = pricing_service.calculate_price_quote(
        RentalTier.STANDARD, TUESDAY_NIGHT, age=30,
        card_type=MembershipCardType.SIX_MONTH, valid_until=date(2024, 1, 9),
    )
    assert quote.membership_fee == 0

    expired = pricing_service.calculate_price_quote(
        RentalTier.STANDARD, TUESDAY_NIGHT, age=30,
        card_type=MembershipCardType.SIX_MONTH, valid_until=date(2024, 1, 8),
    )
    assert expired.membership_fee == 13


def test_membership_purchase_replaces_daily_fee():
    quote = pricing_service.calculate_price_quote(
        RentalTier.STANDARD, TUESDAY_NIGHT, age=30, include_membership_purchase=True
    )
    assert quote.membership_fee == 0
    assert quote.total == 30 + 43
    assert quote.line_items[-1].description == "6 Month Membership"


@pytest.mark.parametrize("at,age,expected", [
    (MONDAY_NOON, 30, 16),
    (TUESDAY_NIGHT, 30, 19),
    (FRIDAY_LATE, 30, 24),
    (MONDAY_EARLY, 30, 24),
    (SATURDAY, 30, 24),
    (MONDAY_NOON, 20, 0),
    (SATURDAY, 20, 7),
])
def test_locker_prices(at, age, expected):
    assert pricing_service.get_locker_price(RentalTier.LOCKER, at, pricing_service.is_youth(age)) == expected


def test_gym_locker_is_free():
    quote = pricing_service.calculate_price_quote(RentalTier.GYM_LOCKER, SATURDAY, age=20)
    assert quote.total == 0
    assert quote.line_items[0].description == "Gym Locker (no cost)"


def test_two_hour_renewal_is_flat_fee():
    quote = pricing_service.calculate_renewal_quote(RentalTier.SPECIAL, 2, SATURDAY, age=30)
    assert quote.rental_fee == 20
    assert quote.total == 33
    assert quote.line_items[0].description == "Renewal (2 Hours)"


def test_six_hour_renewal_uses_full_price():
    renewal = pricing_service.calculate_renewal_quote(RentalTier.SPECIAL, 6, SATURDAY, age=30)
    initial = pricing_service.calculate_price_quote(RentalTier.SPECIAL, SATURDAY, age=30)
    assert renewal == initial


def test_unknown_age_pays_membership_fee():
    quote = pricing_service.calculate_price_quote(RentalTier.STANDARD, SATURDAY)
    assert quote.membership_fee == 13


def test_upgrade_fees():
    assert pricing_service.get_upgrade_fee(RentalTier.STANDARD, RentalTier.SPECIAL) == 19
    assert pricing_service.get_upgrade_fee(RentalTier.LOCKER, RentalTier.DOUBLE) == 17
    assert pricing_service.get_upgrade_fee(RentalTier.SPECIAL, RentalTier.STANDARD) is None
