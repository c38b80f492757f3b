import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from models.mysql_models import User, UserRelationship
from services.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

RELATIONSHIP_STATUSES = ("active", "inactive", "pending")


class AccessService:
    """Decides which tenants a caller may see or manage.

    An aggregator reaches a child user only through an *active*
    ``user_relationships`` row where it is the parent. Relationships are
    never deleted; their status is toggled instead.
    """

    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    def _active_relationship(self, parent_id: int, child_id: int) -> Optional[UserRelationship]:
        return self.mysql_session.query(UserRelationship).filter(
            UserRelationship.parent_user_id == parent_id,
            UserRelationship.child_user_id == child_id,
            UserRelationship.status == "active"
        ).first()

    def can_access_user_billing(self, requester: User, target_user_id: int) -> bool:
        if requester.role == "super_admin":
            return True
        if requester.id == target_user_id:
            return True
        if requester.role == "aggregator":
            return self._active_relationship(requester.id, target_user_id) is not None
        return False

    def can_manage_user(self, requester: User, target_user_id: int) -> bool:
        if requester.role == "super_admin":
            return True
        if requester.role == "aggregator":
            return self._active_relationship(requester.id, target_user_id) is not None
        return False

    def require_billing_access(self, requester: User, target_user_id: int) -> None:
        if not self.can_access_user_billing(requester, target_user_id):
            logger.warning(f"User {requester.id} denied billing access to user {target_user_id}")
            raise AuthorizationError("Access denied")

    def require_manage(self, requester: User, target_user_id: int) -> None:
        if not self.can_manage_user(requester, target_user_id):
            logger.warning(f"User {requester.id} denied management of user {target_user_id}")
            raise AuthorizationError("Access denied")

    def managed_user_ids(self, parent_id: int) -> List[int]:
        rows = self.mysql_session.query(UserRelationship.child_user_id).filter(
            UserRelationship.parent_user_id == parent_id,
            UserRelationship.status == "active"
        ).order_by(UserRelationship.child_user_id).all()
        return [row[0] for row in rows]

    def link_child(self, parent_id: int, child_id: int, relationship_type: str = "business") -> UserRelationship:
        """Create (or reactivate) a parent/child link. Does not commit."""
        if parent_id == child_id:
            raise ValidationError("A user cannot manage itself")

        existing = self.mysql_session.query(UserRelationship).filter(
            UserRelationship.parent_user_id == parent_id,
            UserRelationship.child_user_id == child_id
        ).first()

        if existing:
            existing.status = "active"
            existing.relationship_type = relationship_type
            return existing

        relationship = UserRelationship(
            parent_user_id=parent_id,
            child_user_id=child_id,
            relationship_type=relationship_type,
            status="active"
        )
        self.mysql_session.add(relationship)
        return relationship

    def move_child(self, child_id: int, new_parent_id: int) -> UserRelationship:
        """Deactivate every other active parent link and link ``new_parent_id``. Does not commit."""
        current = self.mysql_session.query(UserRelationship).filter(
            UserRelationship.child_user_id == child_id,
            UserRelationship.status == "active",
            UserRelationship.parent_user_id != new_parent_id
        ).all()
        for relationship in current:
            relationship.status = "inactive"

        return self.link_child(new_parent_id, child_id, "business")

    def set_relationship_status(self, parent_id: int, child_id: int, status: str) -> UserRelationship:
        if status not in RELATIONSHIP_STATUSES:
            raise ValidationError(f"Invalid relationship status: {status}")

        relationship = self.mysql_session.query(UserRelationship).filter(
            UserRelationship.parent_user_id == parent_id,
            UserRelationship.child_user_id == child_id
        ).first()
        if not relationship:
            raise NotFoundError("Relationship not found")

        relationship.status = status
        self.mysql_session.commit()
        logger.info(f"Relationship {parent_id}->{child_id} set to {status}")
        return relationship
