"""
Authorization gate for cross-tenant reads and management
"""

import pytest

from models.mysql_models import UserRelationship
from services.access_service import AccessService
from services.errors import AuthorizationError, NotFoundError, ValidationError


class TestBillingAccess:
    """Super admin sees all, users see themselves, aggregators see active children"""

    def test_super_admin_sees_everyone(self, db_session, make_user):
        admin = make_user(role="super_admin")
        other = make_user()
        assert AccessService(db_session).can_access_user_billing(admin, other.id)

    def test_user_sees_only_self(self, db_session, make_user):
        user = make_user()
        other = make_user()
        access = AccessService(db_session)

        assert access.can_access_user_billing(user, user.id)
        assert not access.can_access_user_billing(user, other.id)

    def test_aggregator_needs_active_relationship(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        active_child = make_user()
        paused_child = make_user()
        stranger = make_user()
        link(aggregator, active_child)
        link(aggregator, paused_child, status="inactive")
        access = AccessService(db_session)

        assert access.can_access_user_billing(aggregator, aggregator.id)
        assert access.can_access_user_billing(aggregator, active_child.id)
        assert not access.can_access_user_billing(aggregator, paused_child.id)
        assert not access.can_access_user_billing(aggregator, stranger.id)

    def test_child_cannot_see_parent(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        child = make_user()
        link(aggregator, child)
        assert not AccessService(db_session).can_access_user_billing(child, aggregator.id)

    def test_require_raises(self, db_session, make_user):
        with pytest.raises(AuthorizationError) as exc:
            AccessService(db_session).require_billing_access(make_user(), make_user().id)
        assert exc.value.status_code == 403


class TestManagement:
    def test_manage_excludes_self_for_plain_user(self, db_session, make_user):
        user = make_user()
        assert not AccessService(db_session).can_manage_user(user, user.id)

    def test_aggregator_manages_active_children(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        child = make_user()
        link(aggregator, child)
        access = AccessService(db_session)

        assert access.can_manage_user(aggregator, child.id)
        with pytest.raises(AuthorizationError):
            access.require_manage(aggregator, make_user().id)

    def test_managed_user_ids(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        first = make_user()
        second = make_user()
        link(aggregator, second)
        link(aggregator, first)
        link(aggregator, make_user(), status="pending")

        assert AccessService(db_session).managed_user_ids(aggregator.id) == sorted([first.id, second.id])


class TestRelationships:
    def test_link_child_reactivates(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        child = make_user()
        original = link(aggregator, child, status="inactive")
        access = AccessService(db_session)

        relationship = access.link_child(aggregator.id, child.id)
        db_session.commit()

        assert relationship.id == original.id
        assert relationship.status == "active"
        assert db_session.query(UserRelationship).count() == 1

    def test_link_to_self_rejected(self, db_session, make_user):
        user = make_user(role="aggregator")
        with pytest.raises(ValidationError):
            AccessService(db_session).link_child(user.id, user.id)

    def test_move_child_leaves_one_active_parent(self, db_session, make_user, link):
        old_parent = make_user(role="aggregator")
        new_parent = make_user(role="aggregator")
        child = make_user()
        link(old_parent, child)
        access = AccessService(db_session)

        access.move_child(child.id, new_parent.id)
        db_session.commit()

        active = db_session.query(UserRelationship).filter(
            UserRelationship.child_user_id == child.id,
            UserRelationship.status == "active"
        ).all()
        assert [row.parent_user_id for row in active] == [new_parent.id]
        assert not access.can_access_user_billing(old_parent, child.id)

    def test_set_relationship_status(self, db_session, make_user, link):
        aggregator = make_user(role="aggregator")
        child = make_user()
        link(aggregator, child)
        access = AccessService(db_session)

        access.set_relationship_status(aggregator.id, child.id, "inactive")
        assert not access.can_manage_user(aggregator, child.id)

        with pytest.raises(ValidationError):
            access.set_relationship_status(aggregator.id, child.id, "deleted")
        with pytest.raises(NotFoundError):
            access.set_relationship_status(child.id, aggregator.id, "active")
