import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson.errors import InvalidDocument
from dateutil import parser
from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import CATEGORIES, User, WabaSource, as_naive_utc, utcnow
from services.billing_service import BillingService
from services.errors import (
    AuthorizationError,
    BillingError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CONVERSATION_WINDOW = timedelta(hours=24)
SETTLING_STATUSES = {"delivered": True, "read": True, "failed": False}


@dataclass
class StatusEvent:
    message_id: str
    status: str
    recipient_id: str
    timestamp: datetime
    phone_number_id: Optional[str] = None
    waba_id: Optional[str] = None
    conversation_id: Optional[str] = None
    category: Optional[str] = None
    billable: bool = False

    @property
    def billing_key(self) -> str:
        return self.conversation_id or self.message_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "status": self.status,
            "recipient_id": self.recipient_id,
            "timestamp": self.timestamp.isoformat(),
            "phone_number_id": self.phone_number_id,
            "conversation_id": self.conversation_id,
            "category": self.category,
            "billable": self.billable
        }


@dataclass
class IngestStats:
    received: int = 0
    processed: int = 0
    failed: int = 0
    ignored: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    def record(self, status: str, outcome: str):
        setattr(self, outcome, getattr(self, outcome) + 1)
        self.by_status[status] = self.by_status.get(status, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "processed": self.processed,
            "failed": self.failed,
            "ignored": self.ignored
        }


class WebhookParser:
    @staticmethod
    def parse_timestamp(ts: Any) -> datetime:
        if isinstance(ts, datetime):
            return as_naive_utc(ts)
        if (isinstance(ts, (int, float)) and not isinstance(ts, bool)) or (isinstance(ts, str) and ts.isdigit()):
            try:
                return datetime.fromtimestamp(int(ts), timezone.utc).replace(tzinfo=None)
            except (ValueError, OverflowError, OSError):
                logger.debug(f"Out of range webhook timestamp {ts!r}")
        elif isinstance(ts, str):
            try:
                return as_naive_utc(parser.parse(ts))
            except (ValueError, OverflowError):
                logger.debug(f"Unparseable webhook timestamp {ts!r}")
        return utcnow()

    @staticmethod
    def _dicts(items) -> List[Dict[str, Any]]:
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _dict(value) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @staticmethod
    def changes(payload: Dict[str, Any]):
        for entry in WebhookParser._dicts(payload.get("entry")):
            for change in WebhookParser._dicts(entry.get("changes")):
                yield entry, change

    @staticmethod
    def classify(payload: Dict[str, Any]) -> str:
        if not isinstance(payload, dict):
            return "unknown"
        if payload.get("object") == "tech_partner":
            return "tech_partner"
        if payload.get("object") != "whatsapp_business_account":
            return "unknown"

        changes = [change for _, change in WebhookParser.changes(payload)]
        if any(change.get("field") == "account_update" for change in changes):
            return "tech_partner"
        if any(WebhookParser._dict(change.get("value")).get("statuses") for change in changes):
            return "message_status"
        if any(WebhookParser._dict(change.get("value")).get("messages") for change in changes):
            return "incoming_message"
        return "unknown"

    @staticmethod
    def parse_statuses(payload: Dict[str, Any]) -> List[StatusEvent]:
        events = []
        for entry, change in WebhookParser.changes(payload):
            value = WebhookParser._dict(change.get("value"))
            phone_number_id = WebhookParser._dict(value.get("metadata")).get("phone_number_id")

            for status in WebhookParser._dicts(value.get("statuses")):
                if not status.get("id") or not status.get("status"):
                    continue

                conversation = WebhookParser._dict(status.get("conversation"))
                pricing = WebhookParser._dict(status.get("pricing"))
                category = pricing.get("category") or WebhookParser._dict(conversation.get("origin")).get("type")

                events.append(StatusEvent(
                    message_id=str(status["id"]),
                    status=str(status["status"]).lower(),
                    recipient_id=str(status.get("recipient_id") or ""),
                    timestamp=WebhookParser.parse_timestamp(status.get("timestamp")),
                    phone_number_id=str(phone_number_id) if phone_number_id else None,
                    waba_id=str(entry["id"]) if entry.get("id") else None,
                    conversation_id=str(conversation["id"]) if conversation.get("id") else None,
                    category=category.lower() if isinstance(category, str) else None,
                    billable=bool(pricing.get("billable", False))
                ))
        return events


class WebhookService:
    """Turns WhatsApp status callbacks into billing log writes.

    ``sent`` opens a charge with a suspense hold, ``delivered``/``read``
    marks it paid and ``failed`` releases the hold. Raw payloads are archived
    to Mongo.
    """

    EVENTS_COLLECTION = "webhook_events"

    def __init__(
        self,
        mysql_session: Session,
        archive_db=None,
        verify_token: str = "",
        billing_service: Optional[BillingService] = None
    ):
        self.mysql_session = mysql_session
        self.collection = archive_db[self.EVENTS_COLLECTION] if archive_db is not None else None
        self.verify_token = verify_token
        self.billing_service = billing_service or BillingService(mysql_session)

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            logger.info("Webhook subscription verified")
            return challenge or ""
        logger.warning("Webhook verification failed")
        raise AuthorizationError("Verification failed")

    def classify(self, payload: Dict[str, Any]) -> str:
        return WebhookParser.classify(payload)

    def parse_statuses(self, payload: Dict[str, Any]) -> List[StatusEvent]:
        return WebhookParser.parse_statuses(payload)

    def resolve_tenant(self, phone_number_id: Optional[str], waba_id: Optional[str] = None) -> Optional[int]:
        source = None
        if phone_number_id:
            source = self.mysql_session.query(WabaSource).filter(
                WabaSource.phone_number_id == phone_number_id
            ).order_by(WabaSource.id.desc()).first()
        if source is None and waba_id:
            source = self.mysql_session.query(WabaSource).filter(
                WabaSource.waba_id == waba_id
            ).order_by(WabaSource.id.desc()).first()
        return source.user_id if source else None

    def register_source(
        self,
        user_id: int,
        phone_number_id: Optional[str] = None,
        waba_id: Optional[str] = None
    ) -> WabaSource:
        if not phone_number_id and not waba_id:
            raise ValidationError("phone_number_id or waba_id is required")
        if not self.mysql_session.query(User.id).filter(User.id == user_id).first():
            raise NotFoundError("User not found")

        source = None
        if phone_number_id:
            source = self.mysql_session.query(WabaSource).filter(
                WabaSource.phone_number_id == phone_number_id
            ).first()

        if source:
            source.user_id = user_id
            source.waba_id = waba_id or source.waba_id
        else:
            source = WabaSource(user_id=user_id, phone_number_id=phone_number_id, waba_id=waba_id)
            self.mysql_session.add(source)

        self.mysql_session.commit()
        self.mysql_session.refresh(source)
        logger.info(f"WABA source {phone_number_id or waba_id} mapped to user {user_id}")
        return source

    def _process_status(self, event: StatusEvent) -> bool:
        user_id = self.resolve_tenant(event.phone_number_id, event.waba_id)
        if user_id is None:
            logger.debug(f"No tenant for phone number {event.phone_number_id}")
            return False

        if event.status == "sent":
            if not event.billable or event.category not in CATEGORIES:
                return False
            charge = dict(
                user_id=user_id,
                conversation_id=event.billing_key,
                category=event.category,
                recipient_number=event.recipient_id[:20],
                start_time=event.timestamp,
                end_time=event.timestamp + CONVERSATION_WINDOW,
                message_id=event.message_id
            )
            try:
                self.billing_service.record_charge(charge_mode="hold", **charge)
            except InsufficientFundsError:
                logger.warning(f"Insufficient funds to hold {event.billing_key}; recording without hold")
                self.billing_service.record_charge(charge_mode="none", **charge)
            return True

        if event.status in SETTLING_STATUSES:
            try:
                self.billing_service.settle_charge(
                    user_id,
                    event.billing_key,
                    SETTLING_STATUSES[event.status],
                    message_id=event.message_id
                )
            except NotFoundError:
                return False
            return True

        return False

    def _archive(self, payload: Dict[str, Any], webhook_type: str):
        if self.collection is None:
            return None
        try:
            result = self.collection.insert_one({
                "webhook_type": webhook_type,
                "payload": payload,
                "received_at": utcnow()
            })
            return result.inserted_id
        except (PyMongoError, InvalidDocument, OverflowError):
            logger.exception("Failed to archive webhook payload")
            return None

    def _archive_summary(self, archive_id, summary: Dict[str, Any]):
        if self.collection is None or archive_id is None:
            return
        try:
            self.collection.update_one({"_id": archive_id}, {"$set": {"summary": summary}})
        except PyMongoError:
            logger.exception("Failed to store webhook processing summary")

    def ingest(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        webhook_type = self.classify(payload)
        archive_id = self._archive(payload, webhook_type)

        events = self.parse_statuses(payload) if webhook_type == "message_status" else []
        stats = IngestStats(received=len(events))

        for event in events:
            try:
                outcome = "processed" if self._process_status(event) else "ignored"
            except BillingError as e:
                outcome = "failed"
                logger.warning(f"Status {event.status} for {event.message_id} rejected: {e.message}")
            except SQLAlchemyError:
                self.mysql_session.rollback()
                outcome = "failed"
                logger.exception(f"Database error processing status {event.status} for {event.message_id}")
            except OverflowError:
                outcome = "failed"
                logger.warning(f"Status {event.status} for {event.message_id} has an unusable timestamp")
            stats.record(event.status, outcome)

        summary = {"type": webhook_type, **stats.to_dict()}
        self._archive_summary(archive_id, {**summary, "by_status": stats.by_status})
        logger.info(f"Webhook {webhook_type} processed: {stats.to_dict()}")
        return summary
