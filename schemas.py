"""
Pydantic Schemas

Request / Response model、廣播 payload，以及付款用途（PaymentPurpose）tagged union
"""
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from models import (
    Actor,
    LaneSessionStatus,
    MembershipPurchaseIntent,
    PaymentMethod,
    PaymentStatus,
    RentalTier,
    ResourceKind,
    SignatureMethod,
)


# ============ 價格 ============

class PriceLineItem(BaseModel):
    description: str
    amount: float


class PriceQuote(BaseModel):
    rental_fee: float
    membership_fee: float
    total: float
    line_items: List[PriceLineItem]
    messages: List[str]


# ============ 付款用途（tagged union） ============

class CheckinPurpose(BaseModel):
    """一般入住/續租付款，付清後 session 進入 AWAITING_SIGNATURE"""
    type: Literal["CHECKIN"] = "CHECKIN"


class UpgradePurpose(BaseModel):
    type: Literal["UPGRADE"] = "UPGRADE"
    waitlist_id: UUID


class FinalExtensionPurpose(BaseModel):
    type: Literal["FINAL_EXTENSION"] = "FINAL_EXTENSION"
    visit_id: UUID
    block_id: UUID


PaymentPurpose = Annotated[
    Union[CheckinPurpose, UpgradePurpose, FinalExtensionPurpose],
    Field(discriminator="type"),
]

_purpose_adapter = TypeAdapter(PaymentPurpose)


def parse_payment_purpose(raw: Dict[str, Any]):
    """
    從 JSON 欄位還原 PaymentPurpose

    缺少 type 或 type 不在封閉集合內時會拋出 pydantic.ValidationError
    """
    return _purpose_adapter.validate_python(raw)


def dump_payment_purpose(purpose) -> Dict[str, Any]:
    return _purpose_adapter.dump_python(purpose, mode="json")


# ============ Lane Session Requests ============

class StartSessionRequest(BaseModel):
    staff_id: Optional[UUID] = None
    customer_id: Optional[UUID] = None
    id_scan_value: Optional[str] = None
    membership_scan_value: Optional[str] = None
    customer_name: Optional[str] = None
    visit_id: Optional[UUID] = None
    renewal_hours: Optional[Literal[2, 6]] = None


class ProposeSelectionRequest(BaseModel):
    rental_type: RentalTier
    proposed_by: Actor
    waitlist_desired_type: Optional[RentalTier] = None
    backup_rental_type: Optional[RentalTier] = None


class ConfirmSelectionRequest(BaseModel):
    confirmed_by: Actor


class AcknowledgeSelectionRequest(BaseModel):
    acknowledged_by: Actor


class WaitlistDesiredRequest(BaseModel):
    waitlist_desired_type: Optional[RentalTier] = None
    backup_rental_type: Optional[RentalTier] = None


class AssignResourceRequest(BaseModel):
    resource_type: ResourceKind
    resource_id: UUID
    staff_id: Optional[UUID] = None


class CustomerConfirmRequest(BaseModel):
    session_id: UUID
    confirmed: bool


class TakePaymentRequest(BaseModel):
    outcome: Literal["CASH_SUCCESS", "CREDIT_SUCCESS", "CREDIT_DECLINE"]
    decline_reason: Optional[str] = None
    staff_id: Optional[UUID] = None


class PastDueSettleRequest(BaseModel):
    outcome: Literal["CASH_SUCCESS", "CREDIT_SUCCESS", "CREDIT_DECLINE"]
    decline_reason: Optional[str] = None


class PastDueBypassRequest(BaseModel):
    manager_id: UUID
    manager_pin: str = Field(..., min_length=1)


class SignAgreementRequest(BaseModel):
    signature_payload: str
    session_id: Optional[UUID] = None


class ManualSignatureRequest(BaseModel):
    session_id: Optional[UUID] = None
    staff_id: Optional[UUID] = None


class LanguageRequest(BaseModel):
    language: Literal["EN", "ES"]


class NoteRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)
    staff_id: Optional[UUID] = None


class MembershipPurchaseIntentRequest(BaseModel):
    intent: Optional[MembershipPurchaseIntent] = None


class MarkPaidRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    staff_id: Optional[UUID] = None


# ============ Responses ============

class StartSessionResponse(BaseModel):
    session_id: UUID
    lane_id: str
    customer_id: UUID
    customer_name: str
    membership_number: Optional[str] = None
    mode: str
    renewal_hours: Optional[int] = None
    visit_id: Optional[UUID] = None
    banned: bool
    eligible: bool
    allowed_rentals: List[RentalTier]
    past_due_balance: float
    past_due_blocked: bool


class SelectionResponse(BaseModel):
    session_id: UUID
    status: LaneSessionStatus
    proposed_rental_type: Optional[RentalTier] = None
    proposed_by: Optional[Actor] = None
    selection_confirmed: bool
    selection_confirmed_by: Optional[Actor] = None
    desired_rental_type: Optional[RentalTier] = None
    selection_locked_at: Optional[datetime] = None
    already_locked: bool = False


class AssignResourceResponse(BaseModel):
    success: bool = True
    session_id: UUID
    resource_type: ResourceKind
    resource_id: UUID
    resource_number: str
    resource_tier: Optional[RentalTier] = None
    needs_confirmation: bool = False


class CustomerConfirmResponse(BaseModel):
    session_id: UUID
    confirmed: bool


class WaitlistInfoResponse(BaseModel):
    desired_tier: RentalTier
    position: int
    estimated_ready_at: Optional[datetime] = None
    upgrade_fee: Optional[float] = None


class PaymentIntentResponse(BaseModel):
    payment_intent_id: UUID
    amount: float
    status: PaymentStatus
    quote: PriceQuote


class MarkPaidResponse(BaseModel):
    payment_intent_id: UUID
    status: PaymentStatus
    already_paid: bool = False


class TakePaymentResponse(BaseModel):
    payment_intent_id: UUID
    status: PaymentStatus
    failure_reason: Optional[str] = None


class PastDueResponse(BaseModel):
    session_id: UUID
    past_due_balance: float
    past_due_bypassed: bool
    decline_reason: Optional[str] = None


class SignAgreementResponse(BaseModel):
    session_id: UUID
    visit_id: UUID
    block_id: UUID
    resource_type: ResourceKind
    resource_id: UUID
    resource_number: str
    starts_at: datetime
    ends_at: datetime
    signature_method: SignatureMethod


class ResetResponse(BaseModel):
    success: bool = True
    session_id: Optional[UUID] = None
    already_completed: bool = False


class KioskAckResponse(BaseModel):
    session_id: UUID
    kiosk_acknowledged_at: datetime


# ============ Broadcast Payload ============

class SessionStatePayload(BaseModel):
    """
    SESSION_UPDATED 的完整狀態 payload

    每次 commit 後都從 DB 重新建立，client 以這份資料為準
    """
    session_id: UUID
    lane_id: str
    status: LaneSessionStatus
    customer_name: str = ""
    membership_number: Optional[str] = None
    customer_membership_valid_until: Optional[date] = None
    membership_purchase_intent: Optional[MembershipPurchaseIntent] = None
    kiosk_acknowledged_at: Optional[datetime] = None
    allowed_rentals: List[RentalTier] = []
    mode: str = "CHECKIN"
    renewal_hours: Optional[int] = None
    proposed_rental_type: Optional[RentalTier] = None
    proposed_by: Optional[Actor] = None
    selection_confirmed: bool = False
    selection_confirmed_by: Optional[Actor] = None
    desired_rental_type: Optional[RentalTier] = None
    waitlist_desired_type: Optional[RentalTier] = None
    backup_rental_type: Optional[RentalTier] = None
    customer_primary_language: Optional[str] = None
    customer_dob_month_day: Optional[str] = None
    customer_last_visit_at: Optional[datetime] = None
    customer_notes: Optional[str] = None
    customer_has_encrypted_lookup_marker: bool = False
    past_due_balance: Optional[float] = None
    past_due_blocked: bool = False
    past_due_bypassed: bool = False
    payment_intent_id: Optional[UUID] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    payment_total: Optional[float] = None
    payment_line_items: Optional[List[PriceLineItem]] = None
    payment_failure_reason: Optional[str] = None
    agreement_signed: bool = False
    agreement_signed_method: Optional[SignatureMethod] = None
    assigned_resource_type: Optional[ResourceKind] = None
    assigned_resource_number: Optional[str] = None
    visit_id: Optional[UUID] = None
    block_ends_at: Optional[datetime] = None
    checkout_at: Optional[datetime] = None


class LaneEvent(BaseModel):
    """Lane channel 上的一則事件"""
    model_config = ConfigDict(use_enum_values=True)

    type: str
    lane_id: str
    payload: Dict[str, Any]
    timestamp: datetime
