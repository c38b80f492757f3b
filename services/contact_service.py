import csv
import io
import logging
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.mysql_models import Contact, utcnow
from models.schemas import ContactCreateRequest, ContactImportRequest, ContactUpdateRequest
from services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

MAX_CONTACTS_LIMIT = 200
OPTIONAL_FIELDS = (
    "name",
    "email",
    "phone",
    "telegram_id",
    "viber_id",
    "line_id",
    "instagram_id",
    "facebook_id",
)
EXPORT_COLUMNS = [
    "id",
    "name",
    "email",
    "whatsapp_number",
    "phone",
    "telegram_id",
    "viber_id",
    "line_id",
    "instagram_id",
    "facebook_id",
    "created_at",
    "last_seen_at",
]


class ContactService:
    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    def _owned(self, owner_id: int):
        return self.mysql_session.query(Contact).filter(Contact.user_id == owner_id)

    def _search(self, query, search: Optional[str]):
        if not search:
            return query
        pattern = f"%{search.strip()}%"
        return query.filter(or_(
            Contact.name.ilike(pattern),
            Contact.email.ilike(pattern),
            Contact.whatsapp_number.ilike(pattern),
            Contact.phone.ilike(pattern)
        ))

    def list_contacts(
        self,
        owner_id: int,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Contact]:
        query = self._search(self._owned(owner_id), search).order_by(
            Contact.created_at.desc(),
            Contact.id.desc()
        )
        if limit:
            query = query.limit(min(limit, MAX_CONTACTS_LIMIT))
        if offset:
            query = query.offset(offset)
        return query.all()

    def get_contact(self, owner_id: int, contact_id: int) -> Contact:
        contact = self._owned(owner_id).filter(Contact.id == contact_id).first()
        if not contact:
            raise NotFoundError("Contact not found")
        return contact

    def _number_taken(self, owner_id: int, number: str, exclude_id: Optional[int] = None) -> bool:
        query = self._owned(owner_id).filter(Contact.whatsapp_number == number)
        if exclude_id is not None:
            query = query.filter(Contact.id != exclude_id)
        return query.first() is not None

    def _commit(self):
        try:
            self.mysql_session.commit()
        except IntegrityError:
            self.mysql_session.rollback()
            raise ConflictError("Contact with this WhatsApp number already exists")

    def create_contact(self, owner_id: int, data: ContactCreateRequest) -> Contact:
        number = data.whatsapp_number.strip()
        if self._number_taken(owner_id, number):
            raise ConflictError("Contact with this WhatsApp number already exists")

        contact = Contact(
            user_id=owner_id,
            whatsapp_number=number,
            **{field: getattr(data, field) for field in OPTIONAL_FIELDS}
        )
        self.mysql_session.add(contact)
        self._commit()
        self.mysql_session.refresh(contact)
        logger.info(f"Contact {contact.id} created for user {owner_id}")
        return contact

    def update_contact(self, owner_id: int, contact_id: int, data: ContactUpdateRequest) -> Contact:
        contact = self.get_contact(owner_id, contact_id)
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return contact

        if "whatsapp_number" in changes:
            number = (changes["whatsapp_number"] or "").strip()
            if not number:
                changes.pop("whatsapp_number")
            elif self._number_taken(owner_id, number, exclude_id=contact.id):
                raise ConflictError("Contact with this WhatsApp number already exists")
            else:
                changes["whatsapp_number"] = number

        for field, value in changes.items():
            setattr(contact, field, value)
        contact.last_seen_at = utcnow()

        self._commit()
        self.mysql_session.refresh(contact)
        return contact

    def delete_contact(self, owner_id: int, contact_id: int) -> None:
        contact = self.get_contact(owner_id, contact_id)
        self.mysql_session.delete(contact)
        self.mysql_session.commit()
        logger.info(f"Contact {contact_id} deleted for user {owner_id}")

    def import_contacts(self, owner_id: int, request: ContactImportRequest) -> dict:
        rows = request.contacts
        if request.dedupe:
            seen = set()
            unique_rows = []
            for row in rows:
                key = row.whatsapp_number.strip()
                if key in seen:
                    continue
                seen.add(key)
                unique_rows.append(row)
            rows = unique_rows

        numbers = [row.whatsapp_number.strip() for row in rows]
        existing: Dict[str, Contact] = {
            contact.whatsapp_number: contact
            for contact in self._owned(owner_id).filter(Contact.whatsapp_number.in_(numbers)).all()
        }

        inserted = 0
        updated = 0
        try:
            for row in rows:
                number = row.whatsapp_number.strip()
                contact = existing.get(number)

                if contact is None:
                    contact = Contact(
                        user_id=owner_id,
                        whatsapp_number=number,
                        **{field: getattr(row, field) for field in OPTIONAL_FIELDS}
                    )
                    self.mysql_session.add(contact)
                    existing[number] = contact
                    inserted += 1
                elif request.upsert:
                    # Blank values in the import never erase stored data.
                    for field in OPTIONAL_FIELDS:
                        value = getattr(row, field)
                        if value is not None:
                            setattr(contact, field, value)
                    updated += 1

            self.mysql_session.commit()
        except IntegrityError:
            self.mysql_session.rollback()
            raise ConflictError("Import conflicted with existing contacts")

        summary = {
            "total": len(request.contacts),
            "inserted": inserted,
            "updated": updated,
            "skipped_duplicate_rows": len(request.contacts) - len(rows)
        }
        logger.info(f"Imported contacts for user {owner_id}: {summary}")
        return summary

    def export_csv(self, owner_id: int, search: Optional[str] = None) -> str:
        contacts = self._search(self._owned(owner_id), search).order_by(
            Contact.created_at.desc(),
            Contact.id.desc()
        ).all()

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for contact in contacts:
            row = []
            for column in EXPORT_COLUMNS:
                value = getattr(contact, column)
                if value is None:
                    row.append("")
                elif hasattr(value, "isoformat"):
                    row.append(value.isoformat())
                else:
                    row.append(value)
            writer.writerow(row)
        return buffer.getvalue()
