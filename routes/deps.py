from typing import Any, Optional, Type

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.mysql_models import User
from services.access_service import AccessService
from services.auth_service import AuthService
from services.errors import AuthenticationError, AuthorizationError

security = HTTPBearer(auto_error=False)


def get_app_config(request: Request):
    return request.app.state.config


def get_auth_service(request: Request, session: Session = Depends(get_mysql_session)) -> AuthService:
    return AuthService(session, request.app.state.config.auth)


def get_access_service(session: Session = Depends(get_mysql_session)) -> AccessService:
    return AccessService(session)


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Security(security),
    auth: AuthService = Depends(get_auth_service)
) -> User:
    """Resolve the bearer token to an active, approved user."""
    if creds is None or not creds.credentials:
        raise AuthenticationError("Access token required")
    return auth.authenticate_token(creds.credentials)


def require_super_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "super_admin":
        raise AuthorizationError("Super admin access required")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Aggregators and super admins."""
    if user.role not in ("aggregator", "super_admin"):
        raise AuthorizationError("Aggregator or super admin access required")
    return user


def serialize(schema: Type[BaseModel], obj: Any):
    if isinstance(obj, list):
        return [schema.model_validate(item).model_dump(mode="json") for item in obj]
    return schema.model_validate(obj).model_dump(mode="json")
