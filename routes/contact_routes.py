from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.mysql_models import User
from models.schemas import (
    ContactCreateRequest,
    ContactImportRequest,
    ContactResponse,
    ContactUpdateRequest,
)
from routes.deps import get_current_user, serialize
from services.contact_service import MAX_CONTACTS_LIMIT, ContactService

router = APIRouter(prefix="/contacts", tags=["Contacts"])


def get_contact_service(session: Session = Depends(get_mysql_session)) -> ContactService:
    return ContactService(session)


@router.get("/", response_model=dict, summary="List contacts")
def list_contacts(
    search: Optional[str] = Query(None, max_length=255),
    limit: Optional[int] = Query(None, ge=1, le=MAX_CONTACTS_LIMIT),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    contacts = service.list_contacts(user.id, search=search, limit=limit, offset=offset)
    return {"success": True, "data": serialize(ContactResponse, contacts), "count": len(contacts)}


@router.get("/export", summary="Export contacts as CSV")
def export_contacts(
    search: Optional[str] = Query(None, max_length=255),
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    return Response(
        content=service.export_csv(user.id, search),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="contacts.csv"'}
    )


@router.get("/{contact_id}", response_model=dict, summary="Get contact")
def get_contact(
    contact_id: int,
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    return {"success": True, "data": serialize(ContactResponse, service.get_contact(user.id, contact_id))}


@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create contact")
def create_contact(
    request: ContactCreateRequest,
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    contact = service.create_contact(user.id, request)
    return {"success": True, "data": serialize(ContactResponse, contact)}


@router.put("/{contact_id}", response_model=dict, summary="Update contact")
def update_contact(
    contact_id: int,
    request: ContactUpdateRequest,
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    contact = service.update_contact(user.id, contact_id, request)
    return {"success": True, "data": serialize(ContactResponse, contact)}


@router.delete("/{contact_id}", response_model=dict, summary="Delete contact")
def delete_contact(
    contact_id: int,
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    service.delete_contact(user.id, contact_id)
    return {"success": True, "message": "Contact deleted"}


@router.post(
    "/import",
    response_model=dict,
    summary="Import contacts",
    description="Bulk insert; with upsert existing numbers are updated, with dedupe repeated numbers in the payload are skipped"
)
def import_contacts(
    request: ContactImportRequest,
    user: User = Depends(get_current_user),
    service: ContactService = Depends(get_contact_service)
):
    summary = service.import_contacts(user.id, request)
    return {"success": True, "message": "Import completed", "summary": summary}
