"""
Lane Check-in API Endpoints

職責：
1. 開始 session、reset、kiosk ack
2. 選擇協商（propose / confirm / acknowledge / waitlist）
3. 資源指派與客人確認
4. Waitlist 資訊查詢
5. 付款意圖、櫃台收款、欠款處理
6. 簽約（數位簽名 / 人工覆寫）

所有業務邏輯都在 core/ 的 Manager 中，這裡只負責轉換 request/response 與錯誤。
搶同一筆 Resource 的操作（assign、簽約）使用 SERIALIZABLE session。
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db, get_serializable_db
from models import Customer, LaneSession, RentalTier
from schemas import (
    AcknowledgeSelectionRequest,
    AssignResourceRequest,
    AssignResourceResponse,
    ConfirmSelectionRequest,
    CustomerConfirmRequest,
    CustomerConfirmResponse,
    KioskAckResponse,
    LanguageRequest,
    ManualSignatureRequest,
    MembershipPurchaseIntentRequest,
    NoteRequest,
    PastDueBypassRequest,
    PastDueResponse,
    PastDueSettleRequest,
    PaymentIntentResponse,
    ProposeSelectionRequest,
    ResetResponse,
    SelectionResponse,
    SessionStatePayload,
    SignAgreementRequest,
    SignAgreementResponse,
    StartSessionRequest,
    StartSessionResponse,
    TakePaymentRequest,
    TakePaymentResponse,
    WaitlistDesiredRequest,
    WaitlistInfoResponse,
)
from core.agreement_manager import AgreementManager
from core.lane_session_manager import LaneSessionManager
from core.payment_manager import PaymentManager
from core.resource_allocator import ResourceAllocator
from core.selection_manager import SelectionManager
from core.exceptions import LaneEngineException
from services import identity_service, pricing_service, waitlist_service
from services.broadcast_service import build_session_payload
from services.inventory_service import get_resource_tier
from api.errors import to_http_exception

router = APIRouter(prefix="/api/lanes", tags=["checkin"])
logger = logging.getLogger(__name__)


def _selection_response(session: LaneSession, already_locked: bool = False) -> SelectionResponse:
    return SelectionResponse(
        session_id=session.id,
        status=session.status,
        proposed_rental_type=session.proposed_rental_type,
        proposed_by=session.proposed_by,
        selection_confirmed=session.selection_confirmed,
        selection_confirmed_by=session.selection_confirmed_by,
        desired_rental_type=session.desired_rental_type,
        selection_locked_at=session.selection_locked_at,
        already_locked=already_locked,
    )


def _internal_error(action: str, e: Exception, db: Session) -> HTTPException:
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    db.rollback()
    return HTTPException(status_code=500, detail="Internal error")


# ============ Session 生命週期 ============

@router.post("/{lane_id}/start", response_model=StartSessionResponse)
def start_session(lane_id: str, data: StartSessionRequest, db: Session = Depends(get_db)):
    """
    開始 lane session（員工掃描證件或會員卡後呼叫）

    - 帶 visit_id 表示續租
    - 被禁止入場的客人回傳 403
    - 已在店內且不是續租回傳 409 ALREADY_CHECKED_IN
    """
    try:
        session, customer = LaneSessionManager.start_session(
            db,
            lane_id,
            staff_id=data.staff_id,
            customer_id=data.customer_id,
            id_scan_value=data.id_scan_value,
            membership_scan_value=data.membership_scan_value,
            customer_name=data.customer_name,
            visit_id=data.visit_id,
            renewal_hours=data.renewal_hours,
        )

        balance = float(customer.past_due_balance or 0)
        blocked = balance > 0 and not session.past_due_bypassed
        return StartSessionResponse(
            session_id=session.id,
            lane_id=lane_id,
            customer_id=customer.id,
            customer_name=customer.name,
            membership_number=customer.membership_number,
            mode=session.checkin_mode.value,
            renewal_hours=session.renewal_hours,
            visit_id=session.visit_id,
            banned=False,
            eligible=not blocked,
            allowed_rentals=identity_service.get_allowed_rentals(customer.membership_number),
            past_due_balance=balance,
            past_due_blocked=blocked,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("start session", e, db)


@router.post("/{lane_id}/reset", response_model=ResetResponse)
def reset_lane(lane_id: str, db: Session = Depends(get_db)):
    """Reset lane（idempotent；lane 上從來沒有 session 才回傳 404）"""
    try:
        session, already_completed = LaneSessionManager.reset(db, lane_id)
        return ResetResponse(
            session_id=session.id if session else None,
            already_completed=already_completed,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("reset lane", e, db)


@router.post("/{lane_id}/kiosk-ack", response_model=KioskAckResponse)
def kiosk_ack(lane_id: str, db: Session = Depends(get_db)):
    try:
        session = LaneSessionManager.kiosk_ack(db, lane_id)
        return KioskAckResponse(
            session_id=session.id,
            kiosk_acknowledged_at=session.kiosk_acknowledged_at,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("record kiosk ack", e, db)


@router.get("/{lane_id}/session", response_model=SessionStatePayload)
def get_session_state(lane_id: str, db: Session = Depends(get_db)):
    """polling 用：lane 上最新 session 的完整狀態"""
    try:
        state = LaneSessionManager.get_session_snapshot(db, lane_id)
        if state is None:
            raise HTTPException(status_code=404, detail="No session for lane")
        return state

    except HTTPException:
        raise
    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("get session state", e, db)


@router.post("/{lane_id}/language", response_model=SessionStatePayload)
def set_language(lane_id: str, data: LanguageRequest, db: Session = Depends(get_db)):
    try:
        session = LaneSessionManager.set_language(db, lane_id, data.language)
        return build_session_payload(db, session.id)[1]

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("set language", e, db)


@router.post("/{lane_id}/notes", response_model=SessionStatePayload)
def add_note(lane_id: str, data: NoteRequest, db: Session = Depends(get_db)):
    try:
        session = LaneSessionManager.add_note(db, lane_id, data.note, data.staff_id)
        return build_session_payload(db, session.id)[1]

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("add note", e, db)


@router.post("/{lane_id}/membership-purchase-intent", response_model=SessionStatePayload)
def set_membership_purchase_intent(
    lane_id: str,
    data: MembershipPurchaseIntentRequest,
    db: Session = Depends(get_db)
):
    try:
        session = LaneSessionManager.set_membership_purchase_intent(db, lane_id, data.intent)
        return build_session_payload(db, session.id)[1]

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("set membership purchase intent", e, db)


# ============ 選擇協商 ============

@router.post("/{lane_id}/propose-selection", response_model=SelectionResponse)
def propose_selection(lane_id: str, data: ProposeSelectionRequest, db: Session = Depends(get_db)):
    try:
        session = SelectionManager.propose_selection(
            db,
            lane_id,
            data.rental_type,
            data.proposed_by,
            waitlist_desired_type=data.waitlist_desired_type,
            backup_rental_type=data.backup_rental_type,
        )
        return _selection_response(session)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("propose selection", e, db)


@router.post("/{lane_id}/confirm-selection", response_model=SelectionResponse)
def confirm_selection(lane_id: str, data: ConfirmSelectionRequest, db: Session = Depends(get_db)):
    """鎖定選擇；已鎖定時回傳第一次鎖定的結果"""
    try:
        session, already_locked = SelectionManager.confirm_selection(db, lane_id, data.confirmed_by)
        return _selection_response(session, already_locked)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("confirm selection", e, db)


@router.post("/{lane_id}/acknowledge-selection", response_model=SelectionResponse)
def acknowledge_selection(lane_id: str, data: AcknowledgeSelectionRequest, db: Session = Depends(get_db)):
    try:
        session = SelectionManager.acknowledge_selection(db, lane_id, data.acknowledged_by)
        return _selection_response(session)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("acknowledge selection", e, db)


@router.post("/{lane_id}/waitlist-desired", response_model=SessionStatePayload)
def set_waitlist_desired(lane_id: str, data: WaitlistDesiredRequest, db: Session = Depends(get_db)):
    try:
        session = SelectionManager.set_waitlist_desired(
            db, lane_id, data.waitlist_desired_type, data.backup_rental_type
        )
        return build_session_payload(db, session.id)[1]

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("set waitlist desired", e, db)


# ============ 資源指派 ============

@router.post("/{lane_id}/assign", response_model=AssignResourceResponse)
def assign_resource(
    lane_id: str,
    data: AssignResourceRequest,
    db: Session = Depends(get_serializable_db)
):
    """
    暫定指派房間/置物櫃

    同一個資源同時被多條 lane 指派時，只有一個成功，其他回傳 409
    """
    try:
        session, resource, needs_confirmation = ResourceAllocator.assign_resource(
            db, lane_id, data.resource_type, data.resource_id, data.staff_id
        )
        return AssignResourceResponse(
            session_id=session.id,
            resource_type=resource.kind,
            resource_id=resource.id,
            resource_number=resource.number,
            resource_tier=get_resource_tier(resource),
            needs_confirmation=needs_confirmation,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("assign resource", e, db)


@router.post("/{lane_id}/customer-confirm", response_model=CustomerConfirmResponse)
def customer_confirm(lane_id: str, data: CustomerConfirmRequest, db: Session = Depends(get_db)):
    try:
        session = ResourceAllocator.customer_confirm(db, lane_id, data.session_id, data.confirmed)
        return CustomerConfirmResponse(session_id=session.id, confirmed=data.confirmed)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("record customer confirmation", e, db)


@router.get("/{lane_id}/waitlist-info", response_model=WaitlistInfoResponse)
def get_waitlist_info(
    lane_id: str,
    desired_tier: RentalTier = Query(...),
    current_tier: Optional[RentalTier] = Query(None),
    db: Session = Depends(get_db)
):
    """排隊位置、預估可用時間，以及（有目前等級時）升等費用"""
    try:
        position, eta = waitlist_service.compute_waitlist_info(db, desired_tier)
        upgrade_fee = (
            pricing_service.get_upgrade_fee(current_tier, desired_tier) if current_tier else None
        )
        return WaitlistInfoResponse(
            desired_tier=desired_tier,
            position=position,
            estimated_ready_at=eta,
            upgrade_fee=upgrade_fee,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("compute waitlist info", e, db)


# ============ 付款 ============

@router.post("/{lane_id}/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(lane_id: str, db: Session = Depends(get_db)):
    try:
        intent, quote = PaymentManager.create_payment_intent(db, lane_id)
        return PaymentIntentResponse(
            payment_intent_id=intent.id,
            amount=float(intent.amount),
            status=intent.status,
            quote=quote,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("create payment intent", e, db)


@router.post("/{lane_id}/take-payment", response_model=TakePaymentResponse)
def take_payment(lane_id: str, data: TakePaymentRequest, db: Session = Depends(get_db)):
    try:
        intent = PaymentManager.take_payment(
            db, lane_id, data.outcome, data.decline_reason, data.staff_id
        )
        return TakePaymentResponse(
            payment_intent_id=intent.id,
            status=intent.status,
            failure_reason=intent.failure_reason,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("take payment", e, db)


@router.post("/{lane_id}/past-due/settle", response_model=PastDueResponse)
def settle_past_due(lane_id: str, data: PastDueSettleRequest, db: Session = Depends(get_db)):
    try:
        session, customer = PaymentManager.settle_past_due(
            db, lane_id, data.outcome, data.decline_reason
        )
        return PastDueResponse(
            session_id=session.id,
            past_due_balance=float(customer.past_due_balance or 0),
            past_due_bypassed=session.past_due_bypassed,
            decline_reason=session.last_past_due_decline_reason,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("settle past-due balance", e, db)


@router.post("/{lane_id}/past-due/bypass", response_model=PastDueResponse)
def bypass_past_due(lane_id: str, data: PastDueBypassRequest, db: Session = Depends(get_db)):
    """主管放行欠款（需要 ADMIN 與正確 PIN）"""
    try:
        session = PaymentManager.bypass_past_due(db, lane_id, data.manager_id, data.manager_pin)
        customer = db.get(Customer, session.customer_id) if session.customer_id else None
        return PastDueResponse(
            session_id=session.id,
            past_due_balance=float(customer.past_due_balance or 0) if customer else 0.0,
            past_due_bypassed=session.past_due_bypassed,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("bypass past-due balance", e, db)


# ============ 簽約 ============

def _sign_response(session, block, resource) -> SignAgreementResponse:
    return SignAgreementResponse(
        session_id=session.id,
        visit_id=block.visit_id,
        block_id=block.id,
        resource_type=resource.kind,
        resource_id=resource.id,
        resource_number=resource.number,
        starts_at=block.starts_at,
        ends_at=block.ends_at,
        signature_method=session.agreement_signed_method,
    )


@router.post("/{lane_id}/sign-agreement", response_model=SignAgreementResponse)
def sign_agreement(
    lane_id: str,
    data: SignAgreementRequest,
    db: Session = Depends(get_serializable_db)
):
    """客人簽名並完成入住/續租（付款後才可呼叫）"""
    try:
        session, block, resource = AgreementManager.sign_agreement(
            db, lane_id, data.signature_payload, data.session_id
        )
        return _sign_response(session, block, resource)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("sign agreement", e, db)


@router.post("/{lane_id}/manual-signature-override", response_model=SignAgreementResponse)
def manual_signature_override(
    lane_id: str,
    data: ManualSignatureRequest,
    db: Session = Depends(get_serializable_db)
):
    try:
        session, block, resource = AgreementManager.manual_signature_override(
            db, lane_id, data.session_id, data.staff_id
        )
        return _sign_response(session, block, resource)

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("apply manual signature override", e, db)
