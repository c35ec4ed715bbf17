"""
時間工具

所有時間一律以 naive UTC datetime 儲存與比較
"""
import calendar
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    """目前時間（naive UTC）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def round_up_to_quarter_hour(value: datetime) -> datetime:
    """
    無條件進位到下一個 15 分鐘整點

    範例：
        10:00:00 -> 10:00:00
        10:00:01 -> 10:15:00
        10:46:00 -> 11:00:00
    """
    floored = value.replace(minute=(value.minute // 15) * 15, second=0, microsecond=0)
    if floored == value:
        return value
    return floored + timedelta(minutes=15)


def add_months(value: date, months: int) -> date:
    """加上月數，日期超出當月天數時取當月最後一天"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def age_on(dob: date, on: date) -> int:
    years = on.year - dob.year
    if (on.month, on.day) < (dob.month, dob.day):
        years -= 1
    return years
