from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache, wraps
from typing import List
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./lane_engine.db"

    # 入住時段規則
    initial_block_hours: int = 6
    max_visit_hours: int = 14
    renewal_window_minutes: int = 60

    # Waitlist ETA 緩衝時間
    waitlist_eta_buffer_minutes: int = 15

    # 房間等級參考資料（房號 -> 等級），由 inventory 層使用
    deluxe_room_numbers: List[int] = [216, 218, 225, 252, 262]
    special_room_numbers: List[int] = [201, 232, 256]

    # 會員號碼區間（例如 "1000-1999,5000-5099"）可租 GYM_LOCKER
    gym_locker_eligible_ranges: str = ""

    manual_signature_marker: str = "Manual Signature Override"
    membership_purchase_months: int = 6


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要特殊設定：connect_args={"check_same_thread": False}
# 這允許多執行緒存取同一個 SQLite 連線（FastAPI 的多執行緒環境需要）
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 搶同一筆 Resource 的操作（指派、最終 commit）使用 SERIALIZABLE
SerializableSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine.execution_options(isolation_level="SERIALIZABLE")
)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_serializable_db():
    """
    FastAPI dependency：提供 SERIALIZABLE isolation 的 Database Session

    用於會互相搶奪 Resource row 的操作（assign、sign-agreement）
    """
    db = SerializableSessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            # 所有 DB 操作都在一個 transaction 內
            session = LaneSession(...)
            db.add(session)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 排隊中的 broadcast 事件全部丟棄
        - 異常會被重新拋出（讓上層處理）

    commit 成功後：
        - 發送排隊中的 broadcast 事件
        - 對每個被標記的 lane session 重新從 DB 建立完整狀態並廣播

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
        - 不要在 @transactional 函式內呼叫另一個 @transactional 函式
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        # 找出 db session（可能在 args 或 kwargs）
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        # 避免 circular import
        from services.broadcast_service import discard_pending, publish_pending

        try:
            result = func(*args, **kwargs)
            db.commit()
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            discard_pending(db)
            raise

        publish_pending(db)
        return result

    return wrapper
