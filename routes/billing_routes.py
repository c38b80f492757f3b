from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from db.config import get_archive_db, get_mysql_session
from models.mysql_models import User
from models.schemas import (
    BillingLogResponse,
    BillingStatus,
    Category,
    ChargeRequest,
    SettleRequest,
)
from routes.deps import (
    get_access_service,
    get_current_user,
    require_admin,
    require_super_admin,
    serialize,
)
from services.access_service import AccessService
from services.billing_service import BillingService, LogFilters
from services.errors import AuthorizationError
from services.price_service import PriceService

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_billing_service(
    session: Session = Depends(get_mysql_session),
    archive_db=Depends(get_archive_db)
) -> BillingService:
    return BillingService(session, price_service=PriceService(session, archive_db))


def get_log_filters(
    search: Optional[str] = Query(None, max_length=255),
    category: Optional[Category] = Query(None),
    billing_status: Optional[BillingStatus] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None)
) -> LogFilters:
    return LogFilters(
        search=search,
        category=category.value if category else None,
        billing_status=billing_status.value if billing_status else None,
        start_date=start_date,
        end_date=end_date
    )


def _logs_response(result: dict) -> dict:
    return {
        "success": True,
        "data": {
            "logs": serialize(BillingLogResponse, result["logs"]),
            "pagination": result["pagination"],
            "statistics": result["statistics"]
        }
    }


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.post(
    "/charges",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Record conversation charge",
    description="Bills a conversation once; repeating the same user and conversation returns the stored log"
)
def record_charge(
    request: ChargeRequest,
    user: User = Depends(require_super_admin),
    service: BillingService = Depends(get_billing_service)
):
    log = service.record_charge(
        user_id=request.user_id,
        conversation_id=request.conversation_id,
        category=request.category.value,
        recipient_number=request.recipient_number,
        start_time=request.start_time,
        end_time=request.end_time,
        amount_paise=request.amount_paise,
        country_code=request.country_code,
        country_name=request.country_name,
        charge_mode=request.charge_mode.value,
        message_id=request.message_id
    )
    return {"success": True, "data": serialize(BillingLogResponse, log)}


@router.post(
    "/charges/settle",
    response_model=dict,
    summary="Settle pending charge",
    description="Marks a pending charge paid, or failed with any held funds released"
)
def settle_charge(
    request: SettleRequest,
    user: User = Depends(require_super_admin),
    service: BillingService = Depends(get_billing_service)
):
    log = service.settle_charge(
        request.user_id,
        request.conversation_id,
        request.delivered,
        message_id=request.message_id
    )
    return {"success": True, "data": serialize(BillingLogResponse, log)}


@router.get(
    "/logs",
    response_model=dict,
    summary="Own billing logs",
    description="Paginated billing logs of the caller with per-category statistics"
)
def list_my_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    filters: LogFilters = Depends(get_log_filters),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
):
    return _logs_response(service.list_logs([user.id], filters, page, limit))


@router.get(
    "/logs/export",
    summary="Export own billing logs",
    description="CSV export of the caller's billing logs"
)
def export_my_logs(
    filters: LogFilters = Depends(get_log_filters),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
):
    return _csv_response(service.export_csv([user.id], filters), "billing_logs.csv")


@router.get(
    "/logs/all",
    response_model=dict,
    summary="All billing logs",
    description="Cross-tenant billing logs"
)
def list_all_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[int] = Query(None, gt=0),
    filters: LogFilters = Depends(get_log_filters),
    user: User = Depends(require_super_admin),
    service: BillingService = Depends(get_billing_service)
):
    filters.user_id = user_id
    return _logs_response(service.list_logs(None, filters, page, limit))


@router.get(
    "/logs/all/export",
    summary="Export all billing logs",
    description="Cross-tenant CSV export with a leading user_id column"
)
def export_all_logs(
    user_id: Optional[int] = Query(None, gt=0),
    filters: LogFilters = Depends(get_log_filters),
    user: User = Depends(require_super_admin),
    service: BillingService = Depends(get_billing_service)
):
    filters.user_id = user_id
    return _csv_response(
        service.export_csv(None, filters, include_user_id=True),
        "billing_logs_all.csv"
    )


@router.get(
    "/managed/logs",
    response_model=dict,
    summary="Managed users' billing logs",
    description="Billing logs of the users the caller manages"
)
def list_managed_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[int] = Query(None, gt=0),
    filters: LogFilters = Depends(get_log_filters),
    user: User = Depends(require_admin),
    access: AccessService = Depends(get_access_service),
    service: BillingService = Depends(get_billing_service)
):
    user_ids: Optional[List[int]] = None
    if user.role != "super_admin":
        user_ids = access.managed_user_ids(user.id)
        if user_id is not None and user_id not in user_ids:
            raise AuthorizationError("Access denied")

    filters.user_id = user_id
    return _logs_response(service.list_logs(user_ids, filters, page, limit))
