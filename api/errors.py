"""
業務異常 -> HTTPException

每個 endpoint 只 catch 一次 LaneEngineException，交給這裡轉換
"""
from fastapi import HTTPException

from core.exceptions import LaneEngineException


def to_http_exception(e: LaneEngineException) -> HTTPException:
    detail = {"kind": e.kind.value, "message": e.message}
    if e.code:
        detail["code"] = e.code
    return HTTPException(status_code=e.status_code, detail=detail)
