"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

每個異常都屬於一個封閉的 ErrorKind，ErrorKind 與 HTTP status 一對一對應。
API 層只需要 catch LaneEngineException 一次，就能轉成正確的 HTTPException。
"""
import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}

# 新增 ErrorKind 時必須同時補上 status 對應
_missing = set(ErrorKind) - set(ERROR_STATUS_CODES)
if _missing:
    raise RuntimeError(f"ErrorKind without HTTP status: {sorted(k.value for k in _missing)}")


class LaneEngineException(Exception):
    """所有業務異常的基類"""
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS_CODES[self.kind]


# ============ 依 ErrorKind 分類 ============

class ValidationFailed(LaneEngineException):
    """輸入或前置條件不符合"""
    kind = ErrorKind.VALIDATION


class Unauthorized(LaneEngineException):
    """憑證錯誤（例如主管 PIN 不符）"""
    kind = ErrorKind.UNAUTHORIZED


class Forbidden(LaneEngineException):
    """身分正確但沒有權限"""
    kind = ErrorKind.FORBIDDEN


class NotFound(LaneEngineException):
    kind = ErrorKind.NOT_FOUND


class Conflict(LaneEngineException):
    """與其他請求或既有狀態衝突"""
    kind = ErrorKind.CONFLICT


class InternalError(LaneEngineException):
    """內部不變量被破壞"""
    kind = ErrorKind.INTERNAL


# ============ Lane Session 相關異常 ============

class SessionNotFound(NotFound):
    def __init__(self, lane_id: str):
        self.lane_id = lane_id
        super().__init__(f"No active session for lane {lane_id}")


class InvalidStateTransition(ValidationFailed):
    """非法的狀態轉換"""
    pass


class SelectionAlreadyLocked(Conflict):
    """選擇已被鎖定，不能再提出新的選擇"""
    def __init__(self, message: str = "Selection is already locked"):
        super().__init__(message, code="SELECTION_LOCKED")


class CustomerBanned(Forbidden):
    def __init__(self, message: str = "Customer is banned"):
        super().__init__(message, code="CUSTOMER_BANNED")


class PastDueBlocked(Forbidden):
    """客人有欠款且尚未被主管放行"""
    def __init__(self, message: str = "Past-due balance must be resolved"):
        super().__init__(message, code="PAST_DUE_BLOCKED")


class RenewalLimitExceeded(ValidationFailed):
    def __init__(self, message: str = "Renewal would exceed 14-hour maximum"):
        super().__init__(message, code="RENEWAL_LIMIT_EXCEEDED")


# ============ Resource 相關異常 ============

class ResourceNotFound(NotFound):
    def __init__(self, kind: str, resource_id):
        self.resource_id = resource_id
        super().__init__(f"{kind.capitalize()} {resource_id} not found")


class ResourceAlreadyAssigned(Conflict):
    def __init__(self, message: str):
        super().__init__(message, code="RESOURCE_ALREADY_ASSIGNED")


class NoAvailableResources(Conflict):
    def __init__(self, message: str):
        super().__init__(message, code="NO_AVAILABLE_RESOURCES")


# ============ Payment 相關異常 ============

class PaymentIntentNotFound(NotFound):
    def __init__(self, intent_id):
        self.intent_id = intent_id
        super().__init__(f"Payment intent {intent_id} not found")
