import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Union

from pymongo.errors import PyMongoError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.mysql_models import (
    CATEGORIES,
    MAX_PAISE,
    PricePlan,
    PricePlanOverride,
    User,
    UserPricePlan,
    as_naive_utc,
    utcnow,
)
from models.schemas import PlanCreateRequest, PlanPatch
from services.errors import (
    AuthorizationError,
    BelowFloorPriceError,
    ConflictError,
    NoPlanAvailableError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RATE_FIELDS = tuple(f"{category}_paise" for category in CATEGORIES)


@dataclass(frozen=True)
class PriceQuote:
    amount_paise: int
    currency: str
    price_plan_id: int


def normalize_price_input(value: Union[int, float, str, Decimal]) -> int:
    """Convert an administrative price input to integer paise.

    Values below 10 are read as whole currency units (``1.5`` -> 150 paise),
    anything else is taken as paise already. Rounds half up.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid price: {value}")

    if not amount.is_finite():
        raise ValidationError(f"Invalid price: {value}")
    if amount < 0:
        raise ValidationError("Price cannot be negative")

    if amount < 10:
        amount = amount * 100
    paise = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if paise > MAX_PAISE:
        raise ValidationError(f"Price must not exceed {MAX_PAISE} paise")
    return paise


def _validate_category(category: str) -> str:
    if category not in CATEGORIES:
        raise ValidationError(f"Invalid category: {category}")
    return category


class PriceService:
    HISTORY_COLLECTION = "price_plan_history"

    def __init__(self, mysql_session: Session, archive_db=None):
        self.mysql_session = mysql_session
        self.collection = archive_db[self.HISTORY_COLLECTION] if archive_db is not None else None

    # Resolution

    def get_current_plan(self, user_id: int, at: Optional[datetime] = None) -> Optional[PricePlan]:
        at = as_naive_utc(at) if at else utcnow()
        return self.mysql_session.query(PricePlan).join(
            UserPricePlan, UserPricePlan.price_plan_id == PricePlan.id
        ).filter(
            UserPricePlan.user_id == user_id,
            UserPricePlan.effective_from <= at
        ).order_by(
            UserPricePlan.effective_from.desc(),
            UserPricePlan.id.desc()
        ).first()

    def get_default_plan(self) -> Optional[PricePlan]:
        return self.mysql_session.query(PricePlan).filter(
            PricePlan.is_default.is_(True)
        ).order_by(PricePlan.id).first()

    def get_effective_plan(self, user_id: int, at: Optional[datetime] = None) -> PricePlan:
        plan = self.get_current_plan(user_id, at) or self.get_default_plan()
        if not plan:
            raise NoPlanAvailableError()
        return plan

    def resolve_quote(
        self,
        user_id: int,
        category: str,
        country_code: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> PriceQuote:
        _validate_category(category)
        plan = self.get_effective_plan(user_id, at)

        if country_code:
            override = self.mysql_session.query(PricePlanOverride).filter(
                PricePlanOverride.price_plan_id == plan.id,
                PricePlanOverride.country_code == country_code.upper(),
                PricePlanOverride.category == category
            ).first()
            if override:
                return PriceQuote(override.amount_paise, override.currency, plan.id)

        return PriceQuote(plan.rate_for(category), plan.currency, plan.id)

    def resolve_price(
        self,
        user_id: int,
        category: str,
        country_code: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> int:
        return self.resolve_quote(user_id, category, country_code, at).amount_paise

    # Plans

    def list_plans(self) -> List[PricePlan]:
        return self.mysql_session.query(PricePlan).order_by(PricePlan.id).all()

    def list_plans_created_by(self, user_id: int) -> List[PricePlan]:
        return self.mysql_session.query(PricePlan).filter(
            PricePlan.created_by == user_id
        ).order_by(PricePlan.id).all()

    def get_plan(self, plan_id: int) -> PricePlan:
        plan = self.mysql_session.query(PricePlan).filter(PricePlan.id == plan_id).first()
        if not plan:
            raise NotFoundError("Price plan not found")
        return plan

    def _ensure_name_free(self, name: str, plan_id: Optional[int] = None):
        query = self.mysql_session.query(PricePlan.id).filter(PricePlan.name == name)
        if plan_id is not None:
            query = query.filter(PricePlan.id != plan_id)
        if query.first():
            raise ConflictError("Price plan name already exists")

    def _clear_default(self, keep_id: Optional[int] = None):
        defaults = self.mysql_session.query(PricePlan).filter(
            PricePlan.is_default.is_(True)
        ).with_for_update().all()
        for plan in defaults:
            if plan.id != keep_id:
                plan.is_default = False
                logger.info(f"Cleared default flag on price plan {plan.id}")

    def _commit_plan(self, plan: PricePlan):
        try:
            self.mysql_session.commit()
        except IntegrityError:
            self.mysql_session.rollback()
            raise ConflictError("Price plan name already exists")
        self.mysql_session.refresh(plan)

    def create_plan(self, requester: User, data: PlanCreateRequest) -> PricePlan:
        if requester.role not in ("super_admin", "aggregator"):
            raise AuthorizationError("Only administrators and aggregators can create price plans")

        rates = {
            field: normalize_price_input(getattr(data, field))
            for field in RATE_FIELDS
        }
        is_default = data.is_default

        if requester.role == "aggregator":
            is_default = False
            base = self.get_current_plan(requester.id)
            if not base:
                raise NoPlanAvailableError("No base plan assigned to your account")

            below = [
                {"field": field, "message": f"must be at least {getattr(base, field)}"}
                for field in RATE_FIELDS
                if rates[field] < getattr(base, field)
            ]
            if below:
                logger.warning(f"Aggregator {requester.id} attempted plan below floor: {below}")
                raise BelowFloorPriceError(errors=below)

        self._ensure_name_free(data.name)

        if is_default:
            self._clear_default()

        plan = PricePlan(
            name=data.name,
            currency=data.currency,
            is_default=is_default,
            created_by=requester.id,
            **rates
        )
        self.mysql_session.add(plan)
        self._commit_plan(plan)

        logger.info(f"Price plan {plan.id} '{plan.name}' created by user {requester.id}")
        self._archive(plan, "created", requester.id)
        return plan

    def update_plan(self, plan_id: int, patch: PlanPatch, actor_id: Optional[int] = None) -> PricePlan:
        fields = patch.present_fields()
        if not fields:
            raise ValidationError("No fields to update")

        plan = self.mysql_session.query(PricePlan).filter(
            PricePlan.id == plan_id
        ).with_for_update().first()
        if not plan:
            raise NotFoundError("Price plan not found")

        for field in fields:
            value = getattr(patch, field)
            if value is None:
                raise ValidationError(f"{field} cannot be null")

            if field in RATE_FIELDS:
                value = normalize_price_input(value)
            elif field == "name":
                self._ensure_name_free(value, plan.id)
            elif field == "is_default" and value:
                self._clear_default(keep_id=plan.id)

            setattr(plan, field, value)

        self._commit_plan(plan)

        logger.info(f"Price plan {plan.id} updated: {', '.join(fields)}")
        self._archive(plan, "updated", actor_id)
        return plan

    def set_default_plan(self, plan_id: int, actor_id: Optional[int] = None) -> PricePlan:
        plan = self.mysql_session.query(PricePlan).filter(
            PricePlan.id == plan_id
        ).with_for_update().first()
        if not plan:
            raise NotFoundError("Price plan not found")

        self._clear_default(keep_id=plan.id)
        plan.is_default = True
        self._commit_plan(plan)

        logger.info(f"Price plan {plan.id} is now the default plan")
        self._archive(plan, "set_default", actor_id)
        return plan

    def assign_plan(
        self,
        user_id: int,
        plan_id: int,
        effective_from: Optional[datetime] = None
    ) -> UserPricePlan:
        if not self.mysql_session.query(User.id).filter(User.id == user_id).first():
            raise NotFoundError("User not found")
        self.get_plan(plan_id)

        assignment = UserPricePlan(
            user_id=user_id,
            price_plan_id=plan_id,
            effective_from=as_naive_utc(effective_from) if effective_from else utcnow()
        )
        self.mysql_session.add(assignment)
        self.mysql_session.commit()
        self.mysql_session.refresh(assignment)

        logger.info(f"Price plan {plan_id} assigned to user {user_id} from {assignment.effective_from}")
        return assignment

    # Country overrides

    def list_overrides(self, plan_id: int) -> List[PricePlanOverride]:
        self.get_plan(plan_id)
        return self.mysql_session.query(PricePlanOverride).filter(
            PricePlanOverride.price_plan_id == plan_id
        ).order_by(PricePlanOverride.country_code, PricePlanOverride.category).all()

    def upsert_override(
        self,
        plan_id: int,
        country_code: str,
        category: str,
        amount: Union[int, float, Decimal],
        currency: str = "INR"
    ) -> PricePlanOverride:
        _validate_category(category)
        self.get_plan(plan_id)
        country_code = country_code.strip().upper()
        amount_paise = normalize_price_input(amount)

        override = self.mysql_session.query(PricePlanOverride).filter(
            PricePlanOverride.price_plan_id == plan_id,
            PricePlanOverride.country_code == country_code,
            PricePlanOverride.category == category
        ).with_for_update().first()

        if override:
            override.amount_paise = amount_paise
            override.currency = currency
        else:
            override = PricePlanOverride(
                price_plan_id=plan_id,
                country_code=country_code,
                category=category,
                amount_paise=amount_paise,
                currency=currency
            )
            self.mysql_session.add(override)

        self.mysql_session.commit()
        self.mysql_session.refresh(override)
        logger.info(f"Override {country_code}/{category} on plan {plan_id} set to {amount_paise}")
        return override

    def delete_override(self, plan_id: int, override_id: int) -> None:
        override = self.mysql_session.query(PricePlanOverride).filter(
            PricePlanOverride.id == override_id,
            PricePlanOverride.price_plan_id == plan_id
        ).first()
        if not override:
            raise NotFoundError("Override not found")

        self.mysql_session.delete(override)
        self.mysql_session.commit()
        logger.info(f"Override {override_id} removed from plan {plan_id}")

    # History archive

    def _snapshot(self, plan: PricePlan) -> dict:
        return {
            "id": plan.id,
            "name": plan.name,
            "currency": plan.currency,
            "utility_paise": plan.utility_paise,
            "marketing_paise": plan.marketing_paise,
            "authentication_paise": plan.authentication_paise,
            "service_paise": plan.service_paise,
            "is_default": plan.is_default,
            "created_by": plan.created_by,
        }

    def _archive(self, plan: PricePlan, action: str, actor_id: Optional[int]):
        if self.collection is None:
            return
        try:
            self.collection.insert_one({
                "plan_id": plan.id,
                "action": action,
                "actor_id": actor_id,
                "plan": self._snapshot(plan),
                "recorded_at": utcnow()
            })
        except PyMongoError:
            logger.exception(f"Failed to archive {action} of price plan {plan.id}")

    def get_plan_history(self, plan_id: int) -> List[dict]:
        self.get_plan(plan_id)
        if self.collection is None:
            return []
        cursor = self.collection.find({"plan_id": plan_id}, {"_id": 0}).sort("recorded_at", 1)
        return list(cursor)
