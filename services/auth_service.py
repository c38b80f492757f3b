import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import List, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import AuthConfig
from models.mysql_models import ROLES, User, UserRelationship, utcnow
from models.schemas import RegisterRequest
from services.access_service import AccessService
from services.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def password_context(rounds: int = 12) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


class AuthService:
    def __init__(self, mysql_session: Session, auth_config: AuthConfig):
        self.mysql_session = mysql_session
        self.config = auth_config
        self.pwd_context = password_context(auth_config.bcrypt_rounds)
        self.access = AccessService(mysql_session)

    # Credentials

    def hash_password(self, plain: str) -> str:
        return self.pwd_context.hash(plain)

    def verify_password(self, plain: str, hashed: str) -> bool:
        return self.pwd_context.verify(plain, hashed)

    def create_access_token(self, user: User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=self.config.jwt_expires_hours)
        return jwt.encode(
            {"sub": str(user.id), "email": user.email, "role": user.role, "exp": expire},
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm
        )

    def decode_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.config.jwt_secret, algorithms=[self.config.jwt_algorithm])
        except JWTError:
            raise AuthenticationError("Invalid or expired token")

    def _check_can_sign_in(self, user: User):
        if not user.is_active:
            raise AuthenticationError("Account is deactivated")
        if not user.is_approved:
            raise AuthenticationError("Account is not approved yet")

    def authenticate_token(self, token: str) -> User:
        payload = self.decode_token(token)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise AuthenticationError("Invalid or expired token")

        user = self.mysql_session.query(User).filter(User.id == user_id).first()
        if not user:
            raise AuthenticationError("User not found")
        self._check_can_sign_in(user)
        return user

    def login(self, email: str, password: str) -> Tuple[str, User]:
        user = self.mysql_session.query(User).filter(
            User.email == email.lower().strip()
        ).first()
        if not user or not self.verify_password(password, user.password_hash):
            logger.warning(f"Failed login for {email}")
            raise AuthenticationError("Invalid email or password")
        self._check_can_sign_in(user)

        user.last_login_at = utcnow()
        self.mysql_session.commit()
        self.mysql_session.refresh(user)

        logger.info(f"User {user.id} logged in")
        return self.create_access_token(user), user

    # Users

    def _new_user(self, data: RegisterRequest, role: str, approved_by: int = None) -> User:
        email = data.email.lower().strip()
        if self.mysql_session.query(User.id).filter(User.email == email).first():
            raise ConflictError("Email already registered")

        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=self.hash_password(data.password),
            role=role,
            is_approved=approved_by is not None,
            is_active=True,
            approved_by=approved_by,
            approved_at=utcnow() if approved_by is not None else None
        )
        self.mysql_session.add(user)
        self.mysql_session.flush()
        return user

    def _commit_new_user(self, user: User) -> User:
        try:
            self.mysql_session.commit()
        except IntegrityError:
            self.mysql_session.rollback()
            raise ConflictError("Email already registered")
        self.mysql_session.refresh(user)
        return user

    def register(self, data: RegisterRequest) -> User:
        user = self._commit_new_user(self._new_user(data, "user"))
        logger.info(f"User {user.id} registered; awaiting approval")
        return user

    def get_user(self, user_id: int) -> User:
        user = self.mysql_session.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_users(self, requester: User) -> List[User]:
        if requester.role == "super_admin":
            return self.mysql_session.query(User).order_by(User.id).all()
        if requester.role == "aggregator":
            return self.list_businesses(requester.id)
        raise AuthorizationError()

    def list_pending(self) -> List[User]:
        return self.mysql_session.query(User).filter(
            User.is_approved.is_(False)
        ).order_by(User.created_at, User.id).all()

    def list_businesses(self, aggregator_id: int) -> List[User]:
        return self.mysql_session.query(User).join(
            UserRelationship, UserRelationship.child_user_id == User.id
        ).filter(
            UserRelationship.parent_user_id == aggregator_id,
            UserRelationship.status == "active"
        ).order_by(User.id).all()

    def approve_user(self, user_id: int, approver_id: int) -> User:
        user = self.get_user(user_id)
        user.is_approved = True
        user.approved_by = approver_id
        user.approved_at = utcnow()
        self.mysql_session.commit()
        self.mysql_session.refresh(user)
        logger.info(f"User {user_id} approved by {approver_id}")
        return user

    def set_role(self, user_id: int, role: str) -> User:
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}")
        user = self.get_user(user_id)
        user.role = role
        self.mysql_session.commit()
        self.mysql_session.refresh(user)
        logger.info(f"User {user_id} role set to {role}")
        return user

    def set_active(self, user_id: int, active: bool, actor_id: int) -> User:
        if user_id == actor_id and not active:
            raise ValidationError("You cannot deactivate your own account")
        user = self.get_user(user_id)
        user.is_active = active
        self.mysql_session.commit()
        self.mysql_session.refresh(user)
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'} by {actor_id}")
        return user

    def set_password(self, user_id: int, password: str) -> User:
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        user = self.get_user(user_id)
        user.password_hash = self.hash_password(password)
        self.mysql_session.commit()
        logger.info(f"Password reset for user {user_id}")
        return user

    # Tenancy

    def create_aggregator(self, data: RegisterRequest, actor_id: int) -> User:
        user = self._commit_new_user(self._new_user(data, "aggregator", approved_by=actor_id))
        logger.info(f"Aggregator {user.id} created by {actor_id}")
        return user

    def _require_aggregator(self, aggregator_id: int) -> User:
        aggregator = self.get_user(aggregator_id)
        if aggregator.role != "aggregator":
            raise ValidationError("Target user is not an aggregator")
        return aggregator

    def create_business(self, aggregator_id: int, data: RegisterRequest, actor_id: int) -> User:
        """Create an approved business user and link it under ``aggregator_id`` atomically."""
        self._require_aggregator(aggregator_id)

        user = self._new_user(data, "user", approved_by=actor_id)
        self.access.link_child(aggregator_id, user.id, "business")
        user = self._commit_new_user(user)

        logger.info(f"Business {user.id} created under aggregator {aggregator_id}")
        return user

    def move_business(self, child_id: int, aggregator_id: int) -> UserRelationship:
        self._require_aggregator(aggregator_id)
        child = self.get_user(child_id)
        if child.role != "user":
            raise ValidationError("Only business users can be moved between aggregators")

        relationship = self.access.move_child(child_id, aggregator_id)
        self.mysql_session.commit()
        self.mysql_session.refresh(relationship)

        logger.info(f"Business {child_id} moved to aggregator {aggregator_id}")
        return relationship
