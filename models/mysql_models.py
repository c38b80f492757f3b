from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

ROLES = ("user", "aggregator", "super_admin")
CATEGORIES = ("utility", "marketing", "authentication", "service")
BILLING_STATUSES = ("pending", "paid", "failed")
# Money columns are 32-bit signed integers.
MAX_PAISE = 2_147_483_647
TRANSACTION_TYPES = (
    "RECHARGE",
    "DEBIT",
    "REFUND",
    "ADJUSTMENT",
    "SUSPENSE_DEBIT",
    "SUSPENSE_REFUND",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Columns store naive UTC; aware values are converted, naive ones are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class User(Base):
    __tablename__ = "users_whatsapp"
    __table_args__ = (
        CheckConstraint(_in("role", ROLES), name="ck_users_role"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user", index=True)
    is_approved = Column(Boolean, nullable=False, default=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_login_at = Column(DateTime, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)


class UserRelationship(Base):
    __tablename__ = "user_relationships"
    __table_args__ = (
        UniqueConstraint("parent_user_id", "child_user_id", name="uq_user_relationships_pair"),
        CheckConstraint(_in("relationship_type", ("business", "aggregator")), name="ck_user_relationships_type"),
        CheckConstraint(_in("status", ("active", "inactive", "pending")), name="ck_user_relationships_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    child_user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    relationship_type = Column(String(20), nullable=False, default="business")
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PricePlan(Base):
    __tablename__ = "price_plans"
    __table_args__ = (
        CheckConstraint(
            "utility_paise >= 0 AND marketing_paise >= 0 "
            "AND authentication_paise >= 0 AND service_paise >= 0",
            name="ck_price_plans_non_negative",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    currency = Column(String(10), nullable=False, default="INR")
    utility_paise = Column(Integer, nullable=False, default=0)
    marketing_paise = Column(Integer, nullable=False, default=0)
    authentication_paise = Column(Integer, nullable=False, default=0)
    service_paise = Column(Integer, nullable=False, default=0)
    is_default = Column(Boolean, nullable=False, default=False, index=True)
    created_by = Column(Integer, ForeignKey("users_whatsapp.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def rate_for(self, category: str) -> int:
        return getattr(self, f"{category}_paise")


class PricePlanOverride(Base):
    __tablename__ = "price_plan_overrides"
    __table_args__ = (
        UniqueConstraint("price_plan_id", "country_code", "category", name="uq_price_plan_overrides"),
        CheckConstraint(_in("category", CATEGORIES), name="ck_price_plan_overrides_category"),
        CheckConstraint("amount_paise >= 0", name="ck_price_plan_overrides_amount"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    price_plan_id = Column(Integer, ForeignKey("price_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    country_code = Column(String(10), nullable=False, index=True)
    category = Column(String(50), nullable=False)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="INR")


class UserPricePlan(Base):
    __tablename__ = "user_price_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    price_plan_id = Column(Integer, ForeignKey("price_plans.id", ondelete="RESTRICT"), nullable=False)
    effective_from = Column(DateTime, nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"
    __table_args__ = (
        CheckConstraint("balance_paise >= 0", name="ck_wallet_accounts_balance"),
        CheckConstraint("suspense_balance_paise >= 0", name="ck_wallet_accounts_suspense"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    currency = Column(String(10), nullable=False, default="INR")
    balance_paise = Column(Integer, nullable=False, default=0)
    suspense_balance_paise = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint(_in("type", TRANSACTION_TYPES), name="ck_wallet_transactions_type"),
        CheckConstraint(_in("status", ("completed", "pending", "failed")), name="ck_wallet_transactions_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(String(64), unique=True, nullable=False)
    type = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="completed", index=True)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="INR")
    details = Column(String(255), nullable=True)
    from_label = Column(String(100), nullable=True)
    to_label = Column(String(100), nullable=True)
    balance_after_paise = Column(Integer, nullable=True)
    suspense_balance_after_paise = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class BillingLog(Base):
    __tablename__ = "billing_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "conversation_id", name="uq_billing_logs_conversation_per_user"),
        CheckConstraint(_in("category", CATEGORIES), name="ck_billing_logs_category"),
        CheckConstraint(_in("billing_status", BILLING_STATUSES), name="ck_billing_logs_status"),
        Index("idx_billing_logs_start_time", "start_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(255), nullable=False, index=True)
    message_id = Column(String(255), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(50), nullable=False, index=True)
    recipient_number = Column(String(20), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    billing_status = Column(String(20), nullable=False, default="pending", index=True)
    amount_paise = Column(Integer, nullable=False)
    amount_currency = Column(String(10), nullable=False, default="INR")
    country_code = Column(String(10), nullable=True)
    country_name = Column(String(100), nullable=True)
    price_plan_id = Column(Integer, ForeignKey("price_plans.id"), nullable=True)
    wallet_tx_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SystemWallet(Base):
    __tablename__ = "system_wallet"
    __table_args__ = (
        CheckConstraint(_in("wallet_type", ("main", "reserve")), name="ck_system_wallet_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_type = Column(String(20), unique=True, nullable=False, default="main")
    currency = Column(String(10), nullable=False, default="INR")
    balance_paise = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("user_id", "whatsapp_number", name="uq_contacts_user_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    whatsapp_number = Column(String(20), nullable=False)
    phone = Column(String(20), nullable=True)
    telegram_id = Column(String(100), nullable=True)
    viber_id = Column(String(100), nullable=True)
    line_id = Column(String(100), nullable=True)
    instagram_id = Column(String(100), nullable=True)
    facebook_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    last_seen_at = Column(DateTime, default=utcnow)


class WabaSource(Base):
    __tablename__ = "waba_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users_whatsapp.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number_id = Column(String(64), nullable=True, index=True)
    waba_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)
