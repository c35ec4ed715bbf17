"""
Agreement Manager：簽約並實體 commit 資源

這是唯一把資源從 CLEAN 變成 OCCUPIED 的地方（waitlist 流程除外）。

前置條件：
1. checkin mode 是 INITIAL 或 RENEWAL
2. 選擇已鎖定
3. 付款意圖存在且已付清

流程：
1. 決定要 commit 的資源（暫定指派的資源 / 續租沿用 / 自動挑選）
2. 資源 CLEAN -> OCCUPIED，assignee 設為客人（條件式 UPDATE，影響 0 筆表示被其他 lane 搶先）
3. 建立 Visit 與時段（INITIAL），或接在上一個時段後面（RENEWAL）
4. 產生簽約文件並保存不可變的簽名紀錄
5. 若有排隊需求，建立 waitlist entry
6. session 進入 COMPLETED，送出最終的 ASSIGNMENT_CREATED
"""
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional, Tuple
import logging

from database import get_settings, transactional
from models import (
    Agreement,
    AgreementSignature,
    CheckinBlock,
    CheckinMode,
    Customer,
    LaneSession,
    LaneSessionStatus,
    MembershipCardType,
    MembershipPurchaseIntent,
    PaymentIntent,
    PaymentStatus,
    RentalTier,
    Resource,
    ResourceKind,
    ResourceStatus,
    SignatureMethod,
    Visit,
)
from core.state_machine import LaneSessionStateMachine
from core.lane_session_manager import get_open_session
from core.locks import with_resource_lock
from core.resource_allocator import ResourceAllocator, claim_resource, ensure_not_held_elsewhere
from core.exceptions import (
    InternalError,
    NoAvailableResources,
    NotFound,
    ResourceAlreadyAssigned,
    ResourceNotFound,
    ValidationFailed,
)
from services import visit_service, waitlist_service
from services.agreement_renderer import render_signed_agreement
from services.audit_service import record_audit
from services.broadcast_service import mark_session_dirty, queue_event
from services.inventory_service import kind_for_tier
from services.time_service import add_months, utcnow

logger = logging.getLogger(__name__)

MIN_SIGNATURE_LENGTH = 16
CLAIM_ATTEMPTS = 3


def normalize_signature(payload: Optional[str]) -> str:
    """
    取出簽名內容

    接受 data URL（data:image/png;base64,....），只保留逗號後面的部分
    """
    value = (payload or "").strip()
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1].strip()
    if len(value) < MIN_SIGNATURE_LENGTH:
        raise ValidationFailed("Signature is required")
    return value


class AgreementManager:
    """簽約與最終 commit"""

    @staticmethod
    @transactional
    def sign_agreement(
        db: Session,
        lane_id: str,
        signature_payload: str,
        session_id: Optional[UUID] = None,
    ) -> Tuple[LaneSession, CheckinBlock, Resource]:
        """
        客人簽名並完成入住/續租

        返回：
            (LaneSession, CheckinBlock, Resource)

        異常：
            ValidationFailed: 簽名無效或前置條件不符
            SessionNotFound: lane 上沒有符合的非終止 session（例如重送）
            Conflict: 預選的資源已被其他 lane 拿走，或沒有可用資源
        """
        signature = normalize_signature(signature_payload)
        return _commit(db, lane_id, session_id, SignatureMethod.DIGITAL, signature, None)

    @staticmethod
    @transactional
    def manual_signature_override(
        db: Session,
        lane_id: str,
        session_id: Optional[UUID] = None,
        staff_id: Optional[UUID] = None,
    ) -> Tuple[LaneSession, CheckinBlock, Resource]:
        """
        員工以人工覆寫標記取代簽名（紙本簽名等情況），其餘步驟與 sign_agreement 相同
        """
        marker = get_settings().manual_signature_marker
        session, block, resource = _commit(
            db, lane_id, session_id, SignatureMethod.MANUAL, marker, staff_id
        )
        record_audit(
            db,
            action="OVERRIDE",
            entity_type="lane_session",
            entity_id=session.id,
            old_value={"agreement_signed": False},
            new_value={"agreement_signed": True, "method": SignatureMethod.MANUAL.value, "block_id": block.id},
            staff_id=staff_id,
        )
        return session, block, resource


def _require_paid_intent(db: Session, session: LaneSession) -> PaymentIntent:
    if session.checkin_mode not in (CheckinMode.INITIAL, CheckinMode.RENEWAL):
        raise ValidationFailed("Session has no check-in mode")
    if not session.selection_confirmed:
        raise ValidationFailed("Selection must be locked before signing")
    if session.payment_intent_id is None:
        raise ValidationFailed("Payment is required before signing")

    intent = db.get(PaymentIntent, session.payment_intent_id)
    if intent is None or intent.status != PaymentStatus.PAID:
        raise ValidationFailed("Payment must be completed before signing")
    return intent


def _lock_preselected(db: Session, session: LaneSession) -> Resource:
    resource = with_resource_lock(session.assigned_resource_id, db).first()
    if not resource:
        raise ResourceNotFound(
            (session.assigned_resource_type or ResourceKind.ROOM).value, session.assigned_resource_id
        )
    if resource.status != ResourceStatus.CLEAN or resource.assigned_customer_id is not None:
        raise ResourceAlreadyAssigned(
            f"{resource.kind.value.capitalize()} {resource.number} is no longer available"
        )
    ensure_not_held_elsewhere(db, resource, session.id)
    return resource


def _lock_renewal_resource(db: Session, previous: CheckinBlock, customer: Customer) -> Resource:
    """續租且沒有預選資源時，沿用目前時段的資源"""
    if previous.resource_id is None:
        raise ValidationFailed("Current block has no resource to continue")
    resource = with_resource_lock(previous.resource_id, db).first()
    if not resource:
        raise ResourceNotFound("resource", previous.resource_id)
    if resource.assigned_customer_id not in (None, customer.id):
        raise ResourceAlreadyAssigned(
            f"{resource.kind.value.capitalize()} {resource.number} is assigned to another customer"
        )
    if resource.assigned_customer_id is None and resource.status != ResourceStatus.CLEAN:
        raise ResourceAlreadyAssigned(
            f"{resource.kind.value.capitalize()} {resource.number} is no longer available"
        )
    return resource


def _claim_auto_selected(db: Session, tier: RentalTier, customer_id: UUID, now) -> Resource:
    """
    自動挑選資源並 commit

    挑到的資源在 UPDATE 前被其他 lane commit 走時，重新挑選（最多 CLAIM_ATTEMPTS 次）
    """
    for _ in range(CLAIM_ATTEMPTS):
        resource = ResourceAllocator.select_for_new_checkin(db, tier)
        if resource is None:
            break
        if claim_resource(db, resource, customer_id, now):
            return resource

    noun = "lockers" if kind_for_tier(tier) == ResourceKind.LOCKER else "rooms"
    raise NoAvailableResources(f"No available {noun}")


def _extend_membership(customer: Customer, intent: MembershipPurchaseIntent, now) -> None:
    months = get_settings().membership_purchase_months
    today = now.date()
    base = today
    if (
        intent == MembershipPurchaseIntent.RENEW
        and customer.membership_valid_until
        and customer.membership_valid_until > today
    ):
        base = customer.membership_valid_until
    customer.membership_card_type = MembershipCardType.SIX_MONTH
    customer.membership_valid_until = add_months(base, months)
    logger.info(f"Customer {customer.id} membership valid until {customer.membership_valid_until}")


def _commit(
    db: Session,
    lane_id: str,
    session_id: Optional[UUID],
    method: SignatureMethod,
    signature: str,
    staff_id: Optional[UUID],
) -> Tuple[LaneSession, CheckinBlock, Resource]:
    # 1. 前置條件
    session = get_open_session(db, lane_id, session_id)
    _require_paid_intent(db, session)

    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    if not customer:
        raise ValidationFailed("Session has no customer")

    tier = session.desired_rental_type or session.backup_rental_type
    if tier is None:
        raise ValidationFailed("Session has no rental type")

    agreement = db.query(Agreement).filter(
        Agreement.active.is_(True)
    ).order_by(Agreement.created_at.desc()).first()
    if not agreement:
        raise NotFound("No active agreement found")

    now = utcnow()

    # 2. 決定時段
    previous = None
    if session.checkin_mode == CheckinMode.RENEWAL:
        visit = db.get(Visit, session.visit_id) if session.visit_id else visit_service.get_open_visit(
            db, customer.id
        )
        if visit is None or visit.customer_id != customer.id or visit.ended_at is not None:
            raise ValidationFailed("No active visit to renew")
        renewal_hours = session.renewal_hours or 6
        previous = visit_service.check_renewal(db, visit, renewal_hours, now)
        block_type, starts_at, ends_at = visit_service.plan_renewal_block(previous, renewal_hours)
    else:
        visit = None
        block_type, starts_at, ends_at = visit_service.plan_initial_block(now)

    # 3. 決定資源並實體 commit（CLEAN -> OCCUPIED，條件式 UPDATE）
    if session.assigned_resource_id is not None:
        resource = _lock_preselected(db, session)
        if not claim_resource(db, resource, customer.id, now):
            raise ResourceAlreadyAssigned(
                f"{resource.kind.value.capitalize()} {resource.number} was committed by another lane"
            )
    elif previous is not None:
        resource = _lock_renewal_resource(db, previous, customer)
        if not claim_resource(db, resource, customer.id, now, renewing=True):
            raise ResourceAlreadyAssigned(
                f"{resource.kind.value.capitalize()} {resource.number} is assigned to another customer"
            )
    else:
        resource = _claim_auto_selected(db, tier, customer.id, now)

    # 4. Visit 與時段
    if visit is None:
        visit = Visit(customer_id=customer.id, started_at=now)
        db.add(visit)
        db.flush()

    document = render_signed_agreement(
        agreement,
        customer_name=customer.name,
        membership_number=customer.membership_number,
        signed_at=now,
        signature_method=method,
        signature_payload=signature,
    )

    block = CheckinBlock(
        visit_id=visit.id,
        block_type=block_type,
        starts_at=starts_at,
        ends_at=ends_at,
        rental_type=tier,
        resource_id=resource.id,
        session_id=session.id,
        agreement_signed=True,
        agreement_document=document,
        agreement_signed_at=now,
    )
    db.add(block)
    db.flush()

    # 5. 簽名紀錄
    db.add(AgreementSignature(
        agreement_id=agreement.id,
        checkin_block_id=block.id,
        customer_name=customer.name,
        membership_number=customer.membership_number,
        signed_at=now,
        signature_method=method,
        signature_payload=signature,
        agreement_text_snapshot=agreement.body_text,
        agreement_version=agreement.version,
    ))

    # 6. 排隊
    if session.waitlist_desired_type and session.backup_rental_type:
        entry = waitlist_service.create_waitlist_entry(
            db,
            visit_id=visit.id,
            block_id=block.id,
            desired_tier=session.waitlist_desired_type,
            backup_tier=session.backup_rental_type,
            initial_resource_id=resource.id,
        )
        queue_event(db, lane_id, "WAITLIST_UPDATED", {
            "session_id": session.id,
            "waitlist_id": entry.id,
            "desired_tier": entry.desired_tier.value,
            "backup_tier": entry.backup_tier.value,
        })

    # 7. 會員購買
    if session.membership_purchase_intent is not None:
        _extend_membership(customer, session.membership_purchase_intent, now)

    # 8. 確認資源真的已經 commit
    db.flush()
    db.refresh(resource)
    if resource.status != ResourceStatus.OCCUPIED or resource.assigned_customer_id != customer.id:
        raise InternalError(f"Resource {resource.id} was not committed to customer {customer.id}")

    # 9. 完成 session
    session.assigned_resource_id = resource.id
    session.assigned_resource_type = resource.kind
    session.visit_id = visit.id
    session.agreement_signed_method = method
    LaneSessionStateMachine.transition(session, LaneSessionStatus.COMPLETED)

    queue_event(db, lane_id, "ASSIGNMENT_CREATED", {
        "session_id": session.id,
        "resource_type": resource.kind.value,
        "resource_id": resource.id,
        "resource_number": resource.number,
        "rental_type": tier.value,
        "visit_id": visit.id,
        "block_id": block.id,
        "ends_at": ends_at.isoformat(),
        "final": True,
    })
    mark_session_dirty(db, session.id)

    logger.info(
        f"Lane {lane_id}: session {session.id} committed {resource.kind.value} {resource.number} "
        f"({block_type.value} {starts_at.isoformat()} - {ends_at.isoformat()}, {method.value})"
    )
    return session, block, resource
