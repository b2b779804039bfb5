from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session
from slowapi import Limiter
from slowapi.util import get_remote_address

from eventpay.config import get_settings
from eventpay.database import get_db
from eventpay.schemas.refund import RefundRequest, RefundResponse
from eventpay.services.catalog import EventCatalog, get_catalog
from eventpay.services.identity import Caller, get_current_caller_required
from eventpay.services.notifier import Notifier
from eventpay.services.refunds import RefundService

settings = get_settings()

router = APIRouter(prefix="/refunds", tags=["refunds"])
limiter = Limiter(key_func=get_remote_address)


@router.post("", response_model=RefundResponse)
@limiter.limit(settings.refund_rate_limit)
async def request_refund(
    request: Request,
    refund_request: RefundRequest,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_current_caller_required),
    db: Session = Depends(get_db),
    catalog: EventCatalog = Depends(get_catalog)
):
    outcome = RefundService(db, catalog).request_refund(caller, refund_request)
    if outcome.notification:
        Notifier(background_tasks).send(outcome.notification)
    return outcome.response


@router.get("")
async def refunds_health():
    return {"message": "Refunds API is working", "methods": ["POST"]}
