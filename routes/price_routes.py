from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from db.config import get_archive_db, get_mysql_session
from models.mysql_models import User
from models.schemas import (
    Category,
    OverrideRequest,
    OverrideResponse,
    PlanAssignRequest,
    PlanCreateRequest,
    PlanPatch,
    PlanResponse,
    PriceQuoteResponse,
    UserPlanAssignmentResponse,
)
from routes.deps import (
    get_access_service,
    get_current_user,
    require_admin,
    require_super_admin,
    serialize,
)
from services.access_service import AccessService
from services.price_service import PriceService

router = APIRouter(prefix="/billing", tags=["Pricing"])


def get_price_service(
    session: Session = Depends(get_mysql_session),
    archive_db=Depends(get_archive_db)
) -> PriceService:
    return PriceService(session, archive_db)


@router.get(
    "/plans",
    response_model=dict,
    summary="List price plans",
    description="Lists every price plan"
)
def list_plans(
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    return {"data": serialize(PlanResponse, service.list_plans())}


@router.post(
    "/plans",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Create price plan",
    description="Super admins may create default plans; aggregators create non-default plans at or above their own base rates"
)
def create_plan(
    request: PlanCreateRequest,
    user: User = Depends(get_current_user),
    service: PriceService = Depends(get_price_service)
):
    plan = service.create_plan(user, request)
    return {"success": True, "data": serialize(PlanResponse, plan)}


@router.put(
    "/plans/{plan_id}",
    response_model=dict,
    summary="Update price plan",
    description="Applies only the fields present in the body; setting is_default clears the previous default"
)
def update_plan(
    plan_id: int,
    patch: PlanPatch,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    plan = service.update_plan(plan_id, patch, actor_id=user.id)
    return {"success": True, "data": serialize(PlanResponse, plan)}


@router.post(
    "/plans/{plan_id}/default",
    response_model=dict,
    summary="Set default plan",
    description="Makes this plan the only default plan"
)
def set_default_plan(
    plan_id: int,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    plan = service.set_default_plan(plan_id, actor_id=user.id)
    return {"success": True, "data": serialize(PlanResponse, plan)}


@router.get(
    "/plans/{plan_id}/history",
    response_model=dict,
    summary="Get plan history",
    description="Archived snapshots of every change to the plan"
)
def get_plan_history(
    plan_id: int,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    return {"data": service.get_plan_history(plan_id)}


@router.get(
    "/plans/{plan_id}/overrides",
    response_model=dict,
    summary="List country overrides"
)
def list_overrides(
    plan_id: int,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    return {"data": serialize(OverrideResponse, service.list_overrides(plan_id))}


@router.put(
    "/plans/{plan_id}/overrides",
    response_model=dict,
    summary="Set country override",
    description="Creates or replaces the rate for one country and category"
)
def upsert_override(
    plan_id: int,
    request: OverrideRequest,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    override = service.upsert_override(
        plan_id,
        request.country_code,
        request.category.value,
        request.amount_paise,
        request.currency
    )
    return {"success": True, "data": serialize(OverrideResponse, override)}


@router.delete(
    "/plans/{plan_id}/overrides/{override_id}",
    response_model=dict,
    summary="Remove country override"
)
def delete_override(
    plan_id: int,
    override_id: int,
    user: User = Depends(require_super_admin),
    service: PriceService = Depends(get_price_service)
):
    service.delete_override(plan_id, override_id)
    return {"success": True, "message": "Override removed"}


@router.get(
    "/my-plans",
    response_model=dict,
    summary="List own plans",
    description="Plans created by the calling aggregator or super admin"
)
def list_my_plans(
    user: User = Depends(require_admin),
    service: PriceService = Depends(get_price_service)
):
    return {"data": serialize(PlanResponse, service.list_plans_created_by(user.id))}


@router.post(
    "/users/{user_id}/plan",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Assign plan to user",
    description="Adds a plan assignment row; earlier assignments are kept as history"
)
def assign_plan(
    user_id: int,
    request: PlanAssignRequest,
    user: User = Depends(get_current_user),
    access: AccessService = Depends(get_access_service),
    service: PriceService = Depends(get_price_service)
):
    access.require_manage(user, user_id)
    assignment = service.assign_plan(user_id, request.price_plan_id, request.effective_from)
    return {"success": True, "data": serialize(UserPlanAssignmentResponse, assignment)}


@router.get(
    "/users/{user_id}/plan",
    response_model=dict,
    summary="Get user's current plan"
)
def get_user_plan(
    user_id: int,
    user: User = Depends(get_current_user),
    access: AccessService = Depends(get_access_service),
    service: PriceService = Depends(get_price_service)
):
    access.require_billing_access(user, user_id)
    plan = service.get_current_plan(user_id)
    return {"data": serialize(PlanResponse, plan) if plan else None}


@router.get(
    "/users/{user_id}/price",
    response_model=dict,
    summary="Quote a message price",
    description="Resolves the per-message price for a category, applying country overrides and the default plan"
)
def get_user_price(
    user_id: int,
    category: Category = Query(...),
    country_code: Optional[str] = Query(None, max_length=10),
    user: User = Depends(get_current_user),
    access: AccessService = Depends(get_access_service),
    service: PriceService = Depends(get_price_service)
):
    access.require_billing_access(user, user_id)
    quote = service.resolve_quote(user_id, category.value, country_code)
    response = PriceQuoteResponse(
        user_id=user_id,
        category=category,
        country_code=country_code,
        amount_paise=quote.amount_paise,
        currency=quote.currency,
        price_plan_id=quote.price_plan_id
    )
    return {"data": response.model_dump(mode="json")}
