"""
Accounts, tokens and tenancy management
"""

import pytest

from config import AuthConfig
from models.mysql_models import UserRelationship
from models.schemas import RegisterRequest
from services.auth_service import AuthService
from services.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from conftest import TEST_PASSWORD


@pytest.fixture
def auth(db_session, app_config):
    return AuthService(db_session, app_config.auth)


def _register_request(email, name="New Business", password="pass1234"):
    return RegisterRequest(name=name, email=email, password=password)


class TestLogin:
    def test_login_returns_token_for_approved_user(self, auth, make_user):
        user = make_user(email="owner@example.com")

        token, logged_in = auth.login("Owner@Example.com ", TEST_PASSWORD)

        assert logged_in.id == user.id
        assert logged_in.last_login_at is not None
        assert auth.authenticate_token(token).id == user.id

    def test_wrong_password(self, auth, make_user):
        make_user(email="owner@example.com")
        with pytest.raises(AuthenticationError) as exc:
            auth.login("owner@example.com", "wrong")
        assert exc.value.message == "Invalid email or password"

    def test_unknown_email(self, auth):
        with pytest.raises(AuthenticationError):
            auth.login("ghost@example.com", TEST_PASSWORD)

    def test_unapproved_user_rejected(self, auth, make_user):
        make_user(email="pending@example.com", approved=False)
        with pytest.raises(AuthenticationError) as exc:
            auth.login("pending@example.com", TEST_PASSWORD)
        assert exc.value.message == "Account is not approved yet"

    def test_deactivated_user_rejected(self, auth, make_user):
        make_user(email="gone@example.com", active=False)
        with pytest.raises(AuthenticationError) as exc:
            auth.login("gone@example.com", TEST_PASSWORD)
        assert exc.value.message == "Account is deactivated"

    def test_token_from_other_secret_rejected(self, db_session, auth, make_user):
        user = make_user()
        foreign = AuthService(db_session, AuthConfig(jwt_secret="someone-else", bcrypt_rounds=4))
        with pytest.raises(AuthenticationError):
            auth.authenticate_token(foreign.create_access_token(user))

    def test_token_for_deactivated_user_rejected(self, db_session, auth, make_user):
        user = make_user()
        token = auth.create_access_token(user)
        user.is_active = False
        db_session.commit()
        with pytest.raises(AuthenticationError):
            auth.authenticate_token(token)


class TestUsers:
    def test_register_awaits_approval(self, auth, make_user):
        admin = make_user(role="super_admin")
        user = auth.register(_register_request("Fresh@Example.com"))

        assert user.email == "fresh@example.com"
        assert user.role == "user"
        assert user.is_approved is False
        assert [pending.id for pending in auth.list_pending()] == [user.id]

        approved = auth.approve_user(user.id, admin.id)
        assert approved.is_approved is True
        assert approved.approved_by == admin.id
        assert auth.list_pending() == []

    def test_register_duplicate_email(self, auth, make_user):
        make_user(email="taken@example.com")
        with pytest.raises(ConflictError):
            auth.register(_register_request("taken@example.com"))

    def test_set_role(self, auth, make_user):
        user = make_user()
        assert auth.set_role(user.id, "aggregator").role == "aggregator"
        with pytest.raises(ValidationError):
            auth.set_role(user.id, "owner")
        with pytest.raises(NotFoundError):
            auth.set_role(999, "user")

    def test_cannot_deactivate_self(self, auth, make_user):
        admin = make_user(role="super_admin")
        with pytest.raises(ValidationError):
            auth.set_active(admin.id, False, admin.id)

    def test_deactivate_and_reactivate(self, auth, make_user):
        admin = make_user(role="super_admin")
        user = make_user()
        assert auth.set_active(user.id, False, admin.id).is_active is False
        assert auth.set_active(user.id, True, admin.id).is_active is True

    def test_set_password(self, auth, make_user):
        user = make_user(email="reset@example.com")
        auth.set_password(user.id, "brand-new")

        token, _ = auth.login("reset@example.com", "brand-new")
        assert token
        with pytest.raises(ValidationError):
            auth.set_password(user.id, "short")

    def test_list_users_by_role(self, auth, make_user, link):
        admin = make_user(role="super_admin")
        aggregator = make_user(role="aggregator")
        child = make_user()
        make_user()
        link(aggregator, child)

        assert len(auth.list_users(admin)) == 4
        assert [user.id for user in auth.list_users(aggregator)] == [child.id]


class TestTenancy:
    def test_create_aggregator_is_approved(self, auth, make_user):
        admin = make_user(role="super_admin")
        aggregator = auth.create_aggregator(_register_request("agg@example.com"), admin.id)

        assert aggregator.role == "aggregator"
        assert aggregator.is_approved is True

    def test_create_business_links_under_aggregator(self, db_session, auth, make_user):
        aggregator = make_user(role="aggregator")

        business = auth.create_business(aggregator.id, _register_request("biz@example.com"), aggregator.id)

        assert business.role == "user"
        assert business.is_approved is True
        assert [user.id for user in auth.list_businesses(aggregator.id)] == [business.id]

    def test_create_business_under_non_aggregator(self, db_session, auth, make_user):
        owner = make_user()
        with pytest.raises(ValidationError):
            auth.create_business(owner.id, _register_request("biz@example.com"), owner.id)
        assert db_session.query(UserRelationship).count() == 0

    def test_move_business(self, db_session, auth, make_user, link):
        old_parent = make_user(role="aggregator")
        new_parent = make_user(role="aggregator")
        business = make_user()
        link(old_parent, business)

        relationship = auth.move_business(business.id, new_parent.id)

        assert relationship.parent_user_id == new_parent.id
        assert auth.list_businesses(old_parent.id) == []
        assert [user.id for user in auth.list_businesses(new_parent.id)] == [business.id]

    def test_only_plain_users_move(self, auth, make_user):
        target = make_user(role="aggregator")
        other_aggregator = make_user(role="aggregator")
        with pytest.raises(ValidationError):
            auth.move_business(other_aggregator.id, target.id)
