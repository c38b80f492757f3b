import csv
import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.mysql_models import (
    BILLING_STATUSES,
    CATEGORIES,
    MAX_PAISE,
    BillingLog,
    WalletTransaction,
    as_naive_utc,
)
from services.errors import BillingError, NotFoundError, ValidationError
from services.price_service import PriceService
from services.query_utils import normalize_paging, pagination, parse_date_bound
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)

CHARGE_MODES = ("none", "debit", "hold")
CSV_COLUMNS = [
    "conversation_id",
    "category",
    "recipient_number",
    "start_time",
    "end_time",
    "billing_status",
    "amount",
    "currency",
    "country",
]


@dataclass
class LogFilters:
    search: Optional[str] = None
    category: Optional[str] = None
    billing_status: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    user_id: Optional[int] = None


def format_csv_time(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def format_major_units(amount_paise: int) -> str:
    return str((Decimal(amount_paise) / Decimal(100)).quantize(Decimal("0.001")))


class BillingService:
    """Per-conversation charge records.

    A (user_id, conversation_id) pair is billed at most once; repeated
    deliveries of the same conversation return the stored row. Wallet
    effects of a charge are applied in the same transaction as the log row.
    """

    def __init__(
        self,
        mysql_session: Session,
        price_service: Optional[PriceService] = None,
        wallet_service: Optional[WalletService] = None
    ):
        self.mysql_session = mysql_session
        self.price_service = price_service or PriceService(mysql_session)
        self.wallet_service = wallet_service or WalletService(mysql_session)

    def _charge_tx_id(self, prefix: str, user_id: int, conversation_id: str) -> str:
        tx_id = f"{prefix}-{user_id}-{conversation_id}"
        if len(tx_id) <= 64:
            return tx_id
        digest = hashlib.sha1(f"{user_id}:{conversation_id}".encode()).hexdigest()
        return f"{prefix}-{digest}"

    def find_log(self, user_id: int, conversation_id: str) -> Optional[BillingLog]:
        return self.mysql_session.query(BillingLog).filter(
            BillingLog.user_id == user_id,
            BillingLog.conversation_id == conversation_id
        ).first()

    def record_charge(
        self,
        user_id: int,
        conversation_id: str,
        category: str,
        recipient_number: str,
        start_time: datetime,
        end_time: datetime,
        amount_paise: Optional[int] = None,
        country_code: Optional[str] = None,
        country_name: Optional[str] = None,
        charge_mode: str = "none",
        message_id: Optional[str] = None
    ) -> BillingLog:
        if category not in CATEGORIES:
            raise ValidationError(f"Invalid category: {category}")
        if charge_mode not in CHARGE_MODES:
            raise ValidationError(f"Invalid charge mode: {charge_mode}")
        if amount_paise is not None and amount_paise < 0:
            raise ValidationError("amount_paise cannot be negative")
        if amount_paise is not None and amount_paise > MAX_PAISE:
            raise ValidationError(f"amount_paise must not exceed {MAX_PAISE}")

        start_time = as_naive_utc(start_time)
        end_time = as_naive_utc(end_time)
        if end_time < start_time:
            raise ValidationError("end_time must not be before start_time")

        existing = self.find_log(user_id, conversation_id)
        if existing:
            logger.info(f"Conversation {conversation_id} already billed for user {user_id}")
            return existing

        quote = self.price_service.resolve_quote(user_id, category, country_code)
        amount = quote.amount_paise if amount_paise is None else amount_paise

        log = BillingLog(
            conversation_id=conversation_id,
            message_id=message_id,
            user_id=user_id,
            category=category,
            recipient_number=recipient_number,
            start_time=start_time,
            end_time=end_time,
            billing_status="pending",
            amount_paise=amount,
            amount_currency=quote.currency,
            country_code=country_code.upper() if country_code else None,
            country_name=country_name,
            price_plan_id=quote.price_plan_id
        )

        try:
            self.mysql_session.add(log)
            self.mysql_session.flush()

            if charge_mode == "debit":
                if amount > 0:
                    tx = self.wallet_service.apply_transaction(
                        user_id,
                        "DEBIT",
                        amount,
                        self._charge_tx_id("BL", user_id, conversation_id),
                        currency=quote.currency,
                        details=f"{category} conversation {conversation_id}",
                        from_label=f"user:{user_id}",
                        to_label="billing"
                    )
                    log.wallet_tx_id = tx.id
                log.billing_status = "paid"
            elif charge_mode == "hold" and amount > 0:
                tx = self.wallet_service.apply_transaction(
                    user_id,
                    "SUSPENSE_DEBIT",
                    amount,
                    self._charge_tx_id("SH", user_id, conversation_id),
                    currency=quote.currency,
                    details=f"Hold for {category} conversation {conversation_id}",
                    from_label=f"user:{user_id}",
                    to_label="suspense"
                )
                log.wallet_tx_id = tx.id

            self.mysql_session.commit()
        except BillingError:
            self.mysql_session.rollback()
            raise
        except IntegrityError:
            # Lost the race against a concurrent insert of the same conversation.
            self.mysql_session.rollback()
            existing = self.find_log(user_id, conversation_id)
            if not existing:
                raise
            logger.info(f"Conversation {conversation_id} billed concurrently for user {user_id}")
            return existing

        self.mysql_session.refresh(log)
        logger.info(
            f"Recorded {category} charge {amount} for conversation {conversation_id} "
            f"(user {user_id}, mode {charge_mode}, status {log.billing_status})"
        )
        return log

    def settle_charge(
        self,
        user_id: int,
        conversation_id: str,
        delivered: bool,
        message_id: Optional[str] = None
    ) -> BillingLog:
        """Close a pending charge as paid or failed.

        ``message_id`` also matches the message that opened the charge, so a
        status callback without a conversation block still finds its log.
        """
        key = BillingLog.conversation_id == conversation_id
        if message_id:
            key = or_(key, BillingLog.message_id == message_id)
        log = self.mysql_session.query(BillingLog).filter(
            BillingLog.user_id == user_id,
            key
        ).order_by(BillingLog.id).with_for_update().first()
        if not log:
            raise NotFoundError("Billing log not found")

        if log.billing_status != "pending":
            logger.info(f"Billing log {log.id} already {log.billing_status}; settlement ignored")
            return log

        try:
            if delivered:
                log.billing_status = "paid"
            else:
                log.billing_status = "failed"
                hold = None
                if log.wallet_tx_id:
                    hold = self.mysql_session.get(WalletTransaction, log.wallet_tx_id)
                if hold is not None and hold.type == "SUSPENSE_DEBIT":
                    self.wallet_service.apply_transaction(
                        user_id,
                        "SUSPENSE_REFUND",
                        hold.amount_paise,
                        self._charge_tx_id("SR", user_id, log.conversation_id),
                        currency=hold.currency,
                        details=f"Release hold for conversation {log.conversation_id}",
                        from_label="suspense",
                        to_label=f"user:{user_id}"
                    )
            self.mysql_session.commit()
        except BillingError:
            self.mysql_session.rollback()
            raise

        self.mysql_session.refresh(log)
        logger.info(f"Billing log {log.id} settled as {log.billing_status}")
        return log

    def _filtered_query(self, user_ids: Optional[List[int]], filters: LogFilters):
        query = self.mysql_session.query(BillingLog)

        if user_ids is not None:
            query = query.filter(BillingLog.user_id.in_(user_ids))
        if filters.user_id is not None:
            query = query.filter(BillingLog.user_id == filters.user_id)

        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            query = query.filter(or_(
                BillingLog.conversation_id.ilike(pattern),
                BillingLog.recipient_number.ilike(pattern),
                BillingLog.country_name.ilike(pattern),
                BillingLog.country_code.ilike(pattern)
            ))

        if filters.category:
            if filters.category not in CATEGORIES:
                raise ValidationError(f"Invalid category: {filters.category}")
            query = query.filter(BillingLog.category == filters.category)

        if filters.billing_status:
            if filters.billing_status not in BILLING_STATUSES:
                raise ValidationError(f"Invalid billing status: {filters.billing_status}")
            query = query.filter(BillingLog.billing_status == filters.billing_status)

        start = parse_date_bound(filters.start_date)
        if start:
            query = query.filter(BillingLog.start_time >= start)
        end = parse_date_bound(filters.end_date, end_of_day=True)
        if end:
            query = query.filter(BillingLog.start_time <= end)

        return query

    def statistics(self, user_ids: Optional[List[int]], filters: Optional[LogFilters] = None) -> dict:
        query = self._filtered_query(user_ids, filters or LogFilters())
        rows = query.with_entities(
            BillingLog.category,
            func.count(BillingLog.id),
            func.coalesce(func.sum(BillingLog.amount_paise), 0)
        ).group_by(BillingLog.category).all()

        stats = {category: {"count": 0, "amount": 0} for category in CATEGORIES}
        for category, count, amount in rows:
            stats[category] = {"count": int(count), "amount": int(amount)}
        return stats

    def list_logs(
        self,
        user_ids: Optional[List[int]],
        filters: Optional[LogFilters] = None,
        page: int = 1,
        limit: int = 20
    ) -> dict:
        filters = filters or LogFilters()
        page, limit = normalize_paging(page, limit)
        query = self._filtered_query(user_ids, filters)

        total = query.count()
        logs = query.order_by(
            BillingLog.start_time.desc(),
            BillingLog.id.desc()
        ).offset((page - 1) * limit).limit(limit).all()

        return {
            "logs": logs,
            "pagination": pagination(page, limit, total),
            "statistics": self.statistics(user_ids, filters)
        }

    def export_csv(
        self,
        user_ids: Optional[List[int]],
        filters: Optional[LogFilters] = None,
        include_user_id: bool = False
    ) -> str:
        logs = self._filtered_query(user_ids, filters or LogFilters()).order_by(
            BillingLog.start_time.desc(),
            BillingLog.id.desc()
        ).all()

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow((["user_id"] if include_user_id else []) + CSV_COLUMNS)

        for log in logs:
            row = [
                log.conversation_id,
                log.category,
                log.recipient_number,
                format_csv_time(log.start_time),
                format_csv_time(log.end_time),
                log.billing_status,
                format_major_units(log.amount_paise),
                log.amount_currency,
                log.country_name or ""
            ]
            if include_user_id:
                row.insert(0, log.user_id)
            writer.writerow(row)

        return buffer.getvalue()
