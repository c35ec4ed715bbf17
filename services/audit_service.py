"""
稽核紀錄

指派資源、付款用途完成、人工覆寫等操作都會留下 before/after 快照
"""
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import AuditLog


def record_audit(
    db: Session,
    action: str,
    entity_type: str,
    entity_id,
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
    staff_id: Optional[UUID] = None,
) -> AuditLog:
    """
    新增一筆稽核紀錄（不 commit，跟著外層 transaction 一起提交）

    參數：
        db: SQLAlchemy Session
        action: 動作種類，例如 ASSIGN、UPGRADE_PAID、OVERRIDE
        entity_type / entity_id: 被操作的對象
        old_value / new_value: 前後快照（會以 JSON 儲存，UUID 轉成字串）
        staff_id: 執行操作的員工
    """
    entry = AuditLog(
        staff_id=staff_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_value=_jsonable(old_value),
        new_value=_jsonable(new_value),
    )
    db.add(entry)
    return entry


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return {k: (str(v) if isinstance(v, UUID) else v) for k, v in value.items()}
