"""
Payment API Endpoints

付款意圖不一定屬於某條 lane（升等、最終延長），所以 mark-paid 以意圖 ID 為準
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import MarkPaidRequest, MarkPaidResponse
from core.payment_manager import PaymentManager
from core.exceptions import LaneEngineException
from api.errors import to_http_exception

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/{intent_id}/mark-paid", response_model=MarkPaidResponse)
def mark_paid(intent_id: UUID, data: MarkPaidRequest, db: Session = Depends(get_db)):
    """
    標記付清（idempotent）

    已付清時回傳 already_paid=True，不做任何修改
    """
    try:
        intent, already_paid = PaymentManager.mark_paid(
            db, intent_id, data.payment_method, data.staff_id
        )
        return MarkPaidResponse(
            payment_intent_id=intent.id,
            status=intent.status,
            already_paid=already_paid,
        )

    except LaneEngineException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to mark payment intent {intent_id} paid: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
