"""
資料模型

所有 SQLAlchemy model 與狀態 enum 集中在這裡：
- LaneSession：一條 lane 上一次入住/續租的協調紀錄
- Resource：房間或置物櫃（稀缺的實體資源）
- PaymentIntent：綁定已鎖定選擇的付款意圖
- Visit / CheckinBlock：一次連續停留與其時段
- WaitlistEntry：等待更高等級房間的排隊紀錄
- AuditLog：不可變的稽核紀錄
"""
import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)

from database import Base
from services.time_service import utcnow


# ============ Enums ============

class LaneSessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    AWAITING_ASSIGNMENT = "AWAITING_ASSIGNMENT"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_SESSION_STATUSES = (LaneSessionStatus.COMPLETED, LaneSessionStatus.CANCELLED)
OPEN_SESSION_STATUSES = tuple(
    s for s in LaneSessionStatus if s not in TERMINAL_SESSION_STATUSES
)


class CheckinMode(str, enum.Enum):
    INITIAL = "INITIAL"
    RENEWAL = "RENEWAL"


class RentalTier(str, enum.Enum):
    LOCKER = "LOCKER"
    GYM_LOCKER = "GYM_LOCKER"
    STANDARD = "STANDARD"
    DOUBLE = "DOUBLE"
    SPECIAL = "SPECIAL"


ROOM_TIERS = (RentalTier.STANDARD, RentalTier.DOUBLE, RentalTier.SPECIAL)
LOCKER_TIERS = (RentalTier.LOCKER, RentalTier.GYM_LOCKER)


class Actor(str, enum.Enum):
    """協商雙方：櫃台員工或客人（kiosk）"""
    CUSTOMER = "CUSTOMER"
    EMPLOYEE = "EMPLOYEE"


class ResourceKind(str, enum.Enum):
    ROOM = "room"
    LOCKER = "locker"


class ResourceStatus(str, enum.Enum):
    CLEAN = "CLEAN"
    DIRTY = "DIRTY"
    CLEANING = "CLEANING"
    OCCUPIED = "OCCUPIED"


class PaymentStatus(str, enum.Enum):
    DUE = "DUE"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CREDIT = "CREDIT"


class PaymentPurposeType(str, enum.Enum):
    CHECKIN = "CHECKIN"
    UPGRADE = "UPGRADE"
    FINAL_EXTENSION = "FINAL_EXTENSION"


class BlockType(str, enum.Enum):
    INITIAL = "INITIAL"
    RENEWAL = "RENEWAL"
    FINAL2H = "FINAL2H"


class WaitlistStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OFFERED = "OFFERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class MembershipCardType(str, enum.Enum):
    NONE = "NONE"
    SIX_MONTH = "SIX_MONTH"


class MembershipPurchaseIntent(str, enum.Enum):
    PURCHASE = "PURCHASE"
    RENEW = "RENEW"


class SignatureMethod(str, enum.Enum):
    DIGITAL = "DIGITAL"
    MANUAL = "MANUAL"


class StaffRole(str, enum.Enum):
    STAFF = "STAFF"
    ADMIN = "ADMIN"


# ============ Models ============

class Customer(Base):
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    dob = Column(Date, nullable=True)
    membership_number = Column(String(50), nullable=True, unique=True)
    membership_card_type = Column(Enum(MembershipCardType), nullable=True)
    membership_valid_until = Column(Date, nullable=True)
    banned_until = Column(DateTime, nullable=True)
    past_due_balance = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    primary_language = Column(String(2), nullable=True)
    id_scan_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    role = Column(Enum(StaffRole), nullable=False, default=StaffRole.STAFF)
    pin_hash = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class Resource(Base):
    """
    房間或置物櫃

    不變量：assigned_customer_id 不為 NULL 時，status 必須是 OCCUPIED
    """
    __tablename__ = "resources"
    __table_args__ = (
        UniqueConstraint("kind", "number", name="uq_resources_kind_number"),
        CheckConstraint(
            "assigned_customer_id IS NULL OR status = 'OCCUPIED'",
            name="ck_resources_assignee_occupied",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    kind = Column(Enum(ResourceKind), nullable=False)
    number = Column(String(10), nullable=False)
    tier = Column(Enum(RentalTier), nullable=True)
    status = Column(Enum(ResourceStatus), nullable=False, default=ResourceStatus.CLEAN)
    assigned_customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    last_status_change = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class LaneSession(Base):
    """
    Lane 協調紀錄

    不變量：
    - 每條 lane 同時最多只有一筆非終止狀態的 session（partial unique index）
    - 同一個資源同時最多只被一筆非終止狀態的 session 暫定持有（partial unique index）
    - selection_confirmed 為 True 時，desired_rental_type 是鎖定當下的 proposed_rental_type 快照
    """
    __tablename__ = "lane_sessions"
    __table_args__ = (
        Index(
            "uq_lane_sessions_open_lane",
            "lane_id",
            unique=True,
            postgresql_where=text("status NOT IN ('COMPLETED', 'CANCELLED')"),
            sqlite_where=text("status NOT IN ('COMPLETED', 'CANCELLED')"),
        ),
        Index(
            "uq_lane_sessions_open_resource",
            "assigned_resource_id",
            unique=True,
            postgresql_where=text(
                "assigned_resource_id IS NOT NULL AND status NOT IN ('COMPLETED', 'CANCELLED')"
            ),
            sqlite_where=text(
                "assigned_resource_id IS NOT NULL AND status NOT IN ('COMPLETED', 'CANCELLED')"
            ),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lane_id = Column(String(50), nullable=False, index=True)
    status = Column(Enum(LaneSessionStatus), nullable=False, default=LaneSessionStatus.ACTIVE)
    staff_id = Column(Uuid, ForeignKey("staff.id"), nullable=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    customer_display_name = Column(String(200), nullable=True)
    membership_number = Column(String(50), nullable=True)

    checkin_mode = Column(Enum(CheckinMode), nullable=True)
    renewal_hours = Column(Integer, nullable=True)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=True)

    # 選擇協商
    desired_rental_type = Column(Enum(RentalTier), nullable=True)
    waitlist_desired_type = Column(Enum(RentalTier), nullable=True)
    backup_rental_type = Column(Enum(RentalTier), nullable=True)
    proposed_rental_type = Column(Enum(RentalTier), nullable=True)
    proposed_by = Column(Enum(Actor), nullable=True)
    selection_confirmed = Column(Boolean, nullable=False, default=False)
    selection_confirmed_by = Column(Enum(Actor), nullable=True)
    selection_locked_at = Column(DateTime, nullable=True)

    # 暫定資源（實體 commit 要等到簽約）
    assigned_resource_id = Column(Uuid, nullable=True)
    assigned_resource_type = Column(Enum(ResourceKind), nullable=True)

    # 付款
    payment_intent_id = Column(Uuid, nullable=True)
    price_quote_json = Column(JSON, nullable=True)
    last_payment_decline_reason = Column(String(255), nullable=True)
    last_payment_decline_at = Column(DateTime, nullable=True)

    # 欠款
    past_due_bypassed = Column(Boolean, nullable=False, default=False)
    past_due_bypassed_by_staff_id = Column(Uuid, nullable=True)
    past_due_bypassed_at = Column(DateTime, nullable=True)
    last_past_due_decline_reason = Column(String(255), nullable=True)
    last_past_due_decline_at = Column(DateTime, nullable=True)

    membership_purchase_intent = Column(Enum(MembershipPurchaseIntent), nullable=True)
    membership_purchase_requested_at = Column(DateTime, nullable=True)

    agreement_signed_method = Column(Enum(SignatureMethod), nullable=True)
    kiosk_acknowledged_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def selection_state(self) -> str:
        """NONE -> PROPOSED -> LOCKED"""
        if self.selection_confirmed:
            return "LOCKED"
        if self.proposed_rental_type is not None:
            return "PROPOSED"
        return "NONE"


class PaymentIntent(Base):
    """
    付款意圖

    不變量：每個 lane session 同時最多只有一筆 DUE（partial unique index）
    purpose 是帶 type 判別欄位的 tagged union（見 schemas.PaymentPurpose）
    """
    __tablename__ = "payment_intents"
    __table_args__ = (
        Index(
            "uq_payment_intents_one_due",
            "lane_session_id",
            unique=True,
            postgresql_where=text("status = 'DUE'"),
            sqlite_where=text("status = 'DUE'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lane_session_id = Column(Uuid, ForeignKey("lane_sessions.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.DUE)
    purpose = Column(JSON, nullable=False)
    quote_json = Column(JSON, nullable=True)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    failure_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Visit(Base):
    __tablename__ = "visits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)


class CheckinBlock(Base):
    """Occupancy block：一段綁定單一資源與等級的停留時段"""
    __tablename__ = "checkin_blocks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=False, index=True)
    block_type = Column(Enum(BlockType), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    rental_type = Column(Enum(RentalTier), nullable=False)
    resource_id = Column(Uuid, ForeignKey("resources.id"), nullable=True)
    session_id = Column(Uuid, ForeignKey("lane_sessions.id"), nullable=True)
    agreement_signed = Column(Boolean, nullable=False, default=False)
    agreement_document = Column(LargeBinary, nullable=True)
    agreement_signed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def duration_hours(self) -> float:
        return (self.ends_at - self.starts_at).total_seconds() / 3600


class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    visit_id = Column(Uuid, ForeignKey("visits.id"), nullable=False)
    checkin_block_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=False)
    desired_tier = Column(Enum(RentalTier), nullable=False)
    backup_tier = Column(Enum(RentalTier), nullable=False)
    status = Column(Enum(WaitlistStatus), nullable=False, default=WaitlistStatus.ACTIVE)
    # OFFERED 時被保留給這筆排隊的房間
    resource_id = Column(Uuid, ForeignKey("resources.id"), nullable=True)
    initial_resource_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Agreement(Base):
    __tablename__ = "agreements"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(200), nullable=False)
    version = Column(String(50), nullable=False)
    body_text = Column(Text, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AgreementSignature(Base):
    """簽名（或人工覆寫標記）的不可變稽核紀錄"""
    __tablename__ = "agreement_signatures"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id = Column(Uuid, ForeignKey("agreements.id"), nullable=False)
    checkin_block_id = Column(Uuid, ForeignKey("checkin_blocks.id"), nullable=False)
    customer_name = Column(String(200), nullable=False)
    membership_number = Column(String(50), nullable=True)
    signed_at = Column(DateTime, nullable=False)
    signature_method = Column(Enum(SignatureMethod), nullable=False)
    signature_payload = Column(Text, nullable=False)
    agreement_text_snapshot = Column(Text, nullable=False)
    agreement_version = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    staff_id = Column(Uuid, nullable=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
