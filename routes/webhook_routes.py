from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from db.config import get_archive_db, get_mysql_session
from models.mysql_models import User
from models.schemas import WabaSourceRequest, WabaSourceResponse
from routes.deps import require_super_admin, serialize
from services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_webhook_service(
    request: Request,
    session: Session = Depends(get_mysql_session),
    archive_db=Depends(get_archive_db)
) -> WebhookService:
    return WebhookService(
        session,
        archive_db,
        verify_token=request.app.state.config.webhook.verify_token
    )


@router.get(
    "/whatsapp",
    response_class=PlainTextResponse,
    summary="Verify webhook subscription",
    description="Echoes hub.challenge when hub.verify_token matches"
)
def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    service: WebhookService = Depends(get_webhook_service)
):
    return service.verify_subscription(mode, token, challenge)


@router.post(
    "/whatsapp",
    response_model=dict,
    summary="Receive WhatsApp events",
    description="Archives the payload and turns message status updates into billing log writes"
)
def receive_webhook(
    payload: dict = Body(...),
    service: WebhookService = Depends(get_webhook_service)
):
    return {"success": True, "data": service.ingest(payload)}


@router.post(
    "/sources",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Map phone number to tenant"
)
def register_source(
    request: WabaSourceRequest,
    user: User = Depends(require_super_admin),
    service: WebhookService = Depends(get_webhook_service)
):
    source = service.register_source(request.user_id, request.phone_number_id, request.waba_id)
    return {"success": True, "data": serialize(WabaSourceResponse, source)}
