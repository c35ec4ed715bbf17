"""
Broadcast 服務：lane channel 上的即時事件

運作方式：
1. Manager 在 transaction 內呼叫 queue_event() / mark_session_dirty()，
   事件先暫存在 SQLAlchemy Session.info
2. @transactional commit 成功後呼叫 publish_pending()：
   先送出細部事件，再對每個被標記的 session 從 DB 重新建立完整狀態，送出 SESSION_UPDATED
3. rollback 時呼叫 discard_pending()，什麼都不送

SESSION_UPDATED 永遠從 DB 重建，不沿用記憶體中的差異，
所以漏掉任何一則訊息的 client 只要收到下一則就會回到一致狀態。
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID
import logging
import threading

from sqlalchemy.orm import Session

from models import CheckinBlock, Customer, LaneSession, PaymentIntent, Resource, Visit
from schemas import LaneEvent, PriceLineItem, SessionStatePayload
from core.exceptions import NotFound
from services.identity_service import get_allowed_rentals
from services.time_service import utcnow

logger = logging.getLogger(__name__)

SESSION_UPDATED = "SESSION_UPDATED"

_PENDING_EVENTS = "lane_pending_events"
_DIRTY_SESSIONS = "lane_dirty_sessions"

Subscriber = Callable[[Dict[str, Any]], None]


class LaneBroadcaster:
    """
    Lane-scoped 發佈/訂閱

    訂閱者是同步 callback；WebSocket route 會把訊息轉進自己的 asyncio queue。
    單一訂閱者失敗只記 log，不影響其他訂閱者。
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, lane_id: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers[lane_id].append(callback)

    def unsubscribe(self, lane_id: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(lane_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(lane_id, None)

    def subscriber_count(self, lane_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(lane_id, []))

    def publish(self, lane_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        message = LaneEvent(
            type=event_type,
            lane_id=lane_id,
            payload=payload,
            timestamp=utcnow()
        ).model_dump(mode="json")

        with self._lock:
            callbacks = list(self._subscribers.get(lane_id, []))

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.warning(f"Lane {lane_id} subscriber failed on {event_type}: {e}", exc_info=True)

        return message


broadcaster = LaneBroadcaster()


# ============ Transaction 內排隊 ============

def queue_event(db: Session, lane_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    """暫存一則細部事件，commit 成功後才會送出"""
    db.info.setdefault(_PENDING_EVENTS, []).append((lane_id, event_type, payload))


def mark_session_dirty(db: Session, session_id: UUID) -> None:
    """標記 lane session 已變更，commit 後會送出一則 SESSION_UPDATED"""
    dirty = db.info.setdefault(_DIRTY_SESSIONS, [])
    if session_id not in dirty:
        dirty.append(session_id)


def discard_pending(db: Session) -> None:
    db.info.pop(_PENDING_EVENTS, None)
    db.info.pop(_DIRTY_SESSIONS, None)


def publish_pending(db: Session) -> None:
    """
    commit 成功後送出暫存的事件

    順序：細部事件在前，完整狀態（SESSION_UPDATED）在後。
    建立 payload 失敗只記 log，commit 已經完成，不能讓呼叫端以為失敗。
    """
    events = db.info.pop(_PENDING_EVENTS, [])
    dirty = db.info.pop(_DIRTY_SESSIONS, [])

    for lane_id, event_type, payload in events:
        broadcaster.publish(lane_id, event_type, payload)

    for session_id in dirty:
        try:
            lane_id, state = build_session_payload(db, session_id)
        except Exception as e:
            logger.error(f"Failed to build session payload for {session_id}: {e}", exc_info=True)
            continue
        broadcaster.publish(lane_id, SESSION_UPDATED, state.model_dump(mode="json"))


def publish_best_effort(lane_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    """transaction 之外的廣播（例如 ASSIGNMENT_FAILED），失敗直接吞掉"""
    try:
        broadcaster.publish(lane_id, event_type, payload)
    except Exception as e:
        logger.warning(f"Best-effort broadcast {event_type} on lane {lane_id} failed: {e}")


# ============ 完整狀態 projection ============

def _line_items(raw: Optional[Dict[str, Any]]) -> Optional[List[PriceLineItem]]:
    if not isinstance(raw, dict):
        return None
    items = []
    for item in raw.get("line_items") or []:
        if isinstance(item, dict) and isinstance(item.get("description"), str):
            try:
                items.append(PriceLineItem(description=item["description"], amount=float(item["amount"])))
            except (KeyError, TypeError, ValueError):
                continue
    return items or None


def build_session_payload(db: Session, session_id: UUID) -> Tuple[str, SessionStatePayload]:
    """
    從 DB 建立 lane session 的完整狀態

    純 projection：只讀取、不修改任何資料

    返回：
        (lane_id, SessionStatePayload)

    異常：
        NotFound: session 不存在
    """
    session = db.get(LaneSession, session_id)
    if session is None:
        raise NotFound(f"Lane session {session_id} not found")

    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    membership_number = (customer.membership_number if customer else None) or session.membership_number

    past_due_balance = float(customer.past_due_balance or 0) if customer else 0.0
    past_due_bypassed = bool(session.past_due_bypassed)

    dob_month_day = None
    if customer and customer.dob:
        dob_month_day = f"{customer.dob.month:02d}/{customer.dob.day:02d}"

    last_visit_at = None
    active_visit_id = None
    active_block_ends_at = None
    if session.customer_id:
        last_block = db.query(CheckinBlock).join(
            Visit, CheckinBlock.visit_id == Visit.id
        ).filter(
            Visit.customer_id == session.customer_id
        ).order_by(CheckinBlock.starts_at.desc()).first()
        if last_block:
            last_visit_at = last_block.starts_at

        active_block = db.query(CheckinBlock).join(
            Visit, CheckinBlock.visit_id == Visit.id
        ).filter(
            Visit.customer_id == session.customer_id,
            Visit.ended_at.is_(None)
        ).order_by(CheckinBlock.ends_at.desc()).first()
        if active_block:
            active_visit_id = active_block.visit_id
            active_block_ends_at = active_block.ends_at

    # 這個 session 簽約後產生的時段
    session_block = db.query(CheckinBlock).filter(
        CheckinBlock.session_id == session.id
    ).order_by(CheckinBlock.created_at.desc()).first()

    assigned_number = None
    if session.assigned_resource_id:
        resource = db.get(Resource, session.assigned_resource_id)
        assigned_number = resource.number if resource else None

    if session.payment_intent_id:
        intent = db.get(PaymentIntent, session.payment_intent_id)
    else:
        intent = db.query(PaymentIntent).filter(
            PaymentIntent.lane_session_id == session.id
        ).order_by(PaymentIntent.created_at.desc()).first()

    state = SessionStatePayload(
        session_id=session.id,
        lane_id=session.lane_id,
        status=session.status,
        customer_name=(customer.name if customer else None) or session.customer_display_name or "",
        membership_number=membership_number,
        customer_membership_valid_until=customer.membership_valid_until if customer else None,
        membership_purchase_intent=session.membership_purchase_intent,
        kiosk_acknowledged_at=session.kiosk_acknowledged_at,
        allowed_rentals=get_allowed_rentals(membership_number),
        mode=session.checkin_mode.value if session.checkin_mode else "INITIAL",
        renewal_hours=session.renewal_hours,
        proposed_rental_type=session.proposed_rental_type,
        proposed_by=session.proposed_by,
        selection_confirmed=bool(session.selection_confirmed),
        selection_confirmed_by=session.selection_confirmed_by,
        desired_rental_type=session.desired_rental_type,
        waitlist_desired_type=session.waitlist_desired_type,
        backup_rental_type=session.backup_rental_type,
        customer_primary_language=customer.primary_language if customer else None,
        customer_dob_month_day=dob_month_day,
        customer_last_visit_at=last_visit_at,
        customer_notes=customer.notes if customer else None,
        customer_has_encrypted_lookup_marker=bool(customer and customer.id_scan_hash),
        past_due_balance=past_due_balance if past_due_balance > 0 else None,
        past_due_blocked=past_due_balance > 0 and not past_due_bypassed,
        past_due_bypassed=past_due_bypassed,
        payment_intent_id=intent.id if intent else None,
        payment_status=intent.status if intent else None,
        payment_method=intent.payment_method if intent else None,
        payment_total=float(intent.amount) if intent else None,
        payment_line_items=_line_items(session.price_quote_json) or _line_items(
            intent.quote_json if intent else None
        ),
        payment_failure_reason=intent.failure_reason if intent else None,
        agreement_signed=bool(session_block and session_block.agreement_signed),
        agreement_signed_method=session.agreement_signed_method,
        assigned_resource_type=session.assigned_resource_type,
        assigned_resource_number=assigned_number,
        visit_id=session_block.visit_id if session_block else active_visit_id,
        block_ends_at=session_block.ends_at if session_block else active_block_ends_at,
        checkout_at=session_block.ends_at if session_block else None,
    )
    return session.lane_id, state
