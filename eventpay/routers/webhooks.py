from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eventpay.database import get_db
from eventpay.services.catalog import EventCatalog, get_catalog
from eventpay.services.dispatcher import WebhookDispatcher
from eventpay.services.notifier import Notifier

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str = Header(None, alias="stripe-signature"),
    db: Session = Depends(get_db),
    catalog: EventCatalog = Depends(get_catalog)
):
    # Signature is computed over the exact bytes Stripe sent
    payload = await request.body()

    result = WebhookDispatcher(db, catalog).handle(payload, stripe_signature)
    Notifier(background_tasks).send_all(result.notifications)

    return JSONResponse(status_code=result.status_code, content=result.body)
