from typing import List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from datetime import datetime
from enum import Enum

from models.mysql_models import MAX_PAISE


class Role(str, Enum):
    USER = "user"
    AGGREGATOR = "aggregator"
    SUPER_ADMIN = "super_admin"


class Category(str, Enum):
    UTILITY = "utility"
    MARKETING = "marketing"
    AUTHENTICATION = "authentication"
    SERVICE = "service"


class BillingStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class TransactionType(str, Enum):
    RECHARGE = "RECHARGE"
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"
    SUSPENSE_DEBIT = "SUSPENSE_DEBIT"
    SUSPENSE_REFUND = "SUSPENSE_REFUND"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class ChargeMode(str, Enum):
    NONE = "none"
    DEBIT = "debit"
    HOLD = "hold"


class RelationshipType(str, Enum):
    BUSINESS = "business"
    AGGREGATOR = "aggregator"


class RelationshipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Auth and users

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserResponse(ORMModel):
    id: int
    name: str
    email: str
    role: str
    is_approved: bool
    is_active: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class SetRoleRequest(BaseModel):
    role: Role


class SetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6)


class AdminCreateBusinessRequest(RegisterRequest):
    aggregator_user_id: Optional[int] = Field(None, gt=0)


class MoveBusinessRequest(BaseModel):
    child_user_id: int = Field(..., gt=0)
    aggregator_user_id: int = Field(..., gt=0)


class RelationshipStatusRequest(BaseModel):
    status: RelationshipStatus


# Price plans

class PlanCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency: str = "INR"
    utility_paise: float = Field(..., ge=0, le=MAX_PAISE)
    marketing_paise: float = Field(..., ge=0, le=MAX_PAISE)
    authentication_paise: float = Field(..., ge=0, le=MAX_PAISE)
    service_paise: float = Field(0, ge=0, le=MAX_PAISE)
    is_default: bool = False


class PlanPatch(BaseModel):
    """Partial plan update.

    Only the fields the caller actually sent are applied; ``model_fields_set``
    carries the presence flag for each field.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    currency: Optional[str] = None
    utility_paise: Optional[float] = Field(None, ge=0, le=MAX_PAISE)
    marketing_paise: Optional[float] = Field(None, ge=0, le=MAX_PAISE)
    authentication_paise: Optional[float] = Field(None, ge=0, le=MAX_PAISE)
    service_paise: Optional[float] = Field(None, ge=0, le=MAX_PAISE)
    is_default: Optional[bool] = None

    def present_fields(self) -> List[str]:
        return [name for name in type(self).model_fields if name in self.model_fields_set]


class PlanResponse(ORMModel):
    id: int
    name: str
    currency: str
    utility_paise: int
    marketing_paise: int
    authentication_paise: int
    service_paise: int
    is_default: bool
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlanAssignRequest(BaseModel):
    price_plan_id: int = Field(..., gt=0)
    effective_from: Optional[datetime] = None


class UserPlanAssignmentResponse(ORMModel):
    id: int
    user_id: int
    price_plan_id: int
    effective_from: datetime
    created_at: Optional[datetime] = None


class OverrideRequest(BaseModel):
    country_code: str = Field(..., min_length=1, max_length=10)
    category: Category
    amount_paise: float = Field(..., ge=0, le=MAX_PAISE)
    currency: str = "INR"


class OverrideResponse(ORMModel):
    id: int
    price_plan_id: int
    country_code: str
    category: str
    amount_paise: int
    currency: str


class PriceQuoteResponse(BaseModel):
    user_id: int
    category: Category
    country_code: Optional[str] = None
    amount_paise: int
    currency: str
    price_plan_id: int


# Billing logs

class ChargeRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    conversation_id: str = Field(..., min_length=1, max_length=255)
    category: Category
    recipient_number: str = Field(..., min_length=1, max_length=20)
    start_time: datetime
    end_time: datetime
    amount_paise: Optional[int] = Field(None, ge=0, le=MAX_PAISE)
    country_code: Optional[str] = Field(None, max_length=10)
    country_name: Optional[str] = Field(None, max_length=100)
    charge_mode: ChargeMode = ChargeMode.NONE
    message_id: Optional[str] = Field(None, max_length=255)


class SettleRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    conversation_id: str = Field(..., min_length=1, max_length=255)
    delivered: bool
    message_id: Optional[str] = Field(None, max_length=255)


class BillingLogResponse(ORMModel):
    id: int
    user_id: int
    conversation_id: str
    message_id: Optional[str] = None
    category: str
    recipient_number: str
    start_time: datetime
    end_time: datetime
    billing_status: str
    amount_paise: int
    amount_currency: str
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    price_plan_id: Optional[int] = None
    wallet_tx_id: Optional[int] = None
    created_at: Optional[datetime] = None


# Wallet

class RechargeRequest(BaseModel):
    amount_paise: int = Field(..., gt=0, le=MAX_PAISE)
    currency: str = "INR"
    reference: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=60)


class AdjustRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    amount_paise: int = Field(..., ge=-MAX_PAISE, le=MAX_PAISE)
    currency: str = "INR"
    details: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=60)

    @field_validator("amount_paise")
    @classmethod
    def non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount_paise must not be zero")
        return value


class TransferRequest(BaseModel):
    to_user_id: int = Field(..., gt=0)
    amount_paise: int = Field(..., gt=0, le=MAX_PAISE)
    details: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=55)


class SystemRechargeRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    amount_paise: int = Field(..., gt=0, le=MAX_PAISE)
    details: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=60)


class TransactionPostRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    type: TransactionType
    amount_paise: int = Field(..., ge=-MAX_PAISE, le=MAX_PAISE)
    transaction_id: str = Field(..., min_length=1, max_length=64)
    currency: str = "INR"
    details: Optional[str] = Field(None, max_length=255)
    from_label: Optional[str] = Field(None, max_length=100)
    to_label: Optional[str] = Field(None, max_length=100)


class WalletTransactionResponse(ORMModel):
    id: int
    user_id: int
    transaction_id: str
    type: str
    status: str
    amount_paise: int
    currency: str
    details: Optional[str] = None
    from_label: Optional[str] = None
    to_label: Optional[str] = None
    balance_after_paise: Optional[int] = None
    suspense_balance_after_paise: Optional[int] = None
    created_at: Optional[datetime] = None


class WalletAccountResponse(ORMModel):
    user_id: int
    currency: str
    balance_paise: int
    suspense_balance_paise: int
    updated_at: Optional[datetime] = None


class SystemWalletResponse(ORMModel):
    wallet_type: str
    currency: str
    balance_paise: int


# Contacts

class ContactBase(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    telegram_id: Optional[str] = Field(None, max_length=100)
    viber_id: Optional[str] = Field(None, max_length=100)
    line_id: Optional[str] = Field(None, max_length=100)
    instagram_id: Optional[str] = Field(None, max_length=100)
    facebook_id: Optional[str] = Field(None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value


class ContactCreateRequest(ContactBase):
    whatsapp_number: str = Field(..., min_length=1, max_length=20)


class ContactUpdateRequest(ContactBase):
    whatsapp_number: Optional[str] = Field(None, min_length=1, max_length=20)


class ContactImportRequest(BaseModel):
    upsert: bool = True
    dedupe: bool = True
    contacts: List[ContactCreateRequest] = Field(..., min_length=1)


class ContactResponse(ORMModel):
    id: int
    user_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    whatsapp_number: str
    phone: Optional[str] = None
    telegram_id: Optional[str] = None
    viber_id: Optional[str] = None
    line_id: Optional[str] = None
    instagram_id: Optional[str] = None
    facebook_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


# Webhooks

class WabaSourceRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    phone_number_id: Optional[str] = Field(None, max_length=64)
    waba_id: Optional[str] = Field(None, max_length=64)


class WabaSourceResponse(ORMModel):
    id: int
    user_id: int
    phone_number_id: Optional[str] = None
    waba_id: Optional[str] = None
