import itertools
import os
from datetime import datetime
from unittest.mock import MagicMock

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from app import create_app
from config import AppConfig, AuthConfig, DatabaseConfig, SeedConfig, WebhookConfig
from db.config import build_engine, build_session_factory
from db.seed import seed_defaults
from models.mysql_models import (
    Base,
    PricePlan,
    User,
    UserPricePlan,
    UserRelationship,
    utcnow,
)
from services.auth_service import AuthService, password_context

TEST_PASSWORD = "secret123"
_emails = itertools.count(1)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'billing.db'}"


@pytest.fixture
def engine(db_url):
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def locking_session_factory(engine, db_url):
    """Sessions on an engine built like the application's, with row locks honoured."""
    app_engine = build_engine(DatabaseConfig(url=db_url))
    yield build_session_factory(app_engine)
    app_engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mongo_db():
    return MagicMock()


@pytest.fixture
def app_config(db_url):
    return AppConfig(
        database=DatabaseConfig(url=db_url),
        auth=AuthConfig(jwt_secret="test-secret", bcrypt_rounds=4),
        webhook=WebhookConfig(verify_token="verify-me"),
        seed=SeedConfig(admin_email=None, admin_password=None, system_wallet_paise=10000000),
        run_startup_tasks=False
    )


@pytest.fixture
def client(app_config, engine, mongo_db):
    app = create_app(app_config, engine=engine, mongo_db=mongo_db)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seeded(db_session, app_config):
    """Main system wallet and the Default plan."""
    seed_defaults(db_session, app_config.seed, app_config.auth.bcrypt_rounds)
    return db_session


@pytest.fixture
def make_user(db_session):
    def _make_user(role="user", approved=True, active=True, email=None, name=None, password=TEST_PASSWORD):
        n = next(_emails)
        user = User(
            name=name or f"{role.title()} {n}",
            email=email or f"{role}{n}@example.com",
            password_hash=password_context(4).hash(password),
            role=role,
            is_approved=approved,
            is_active=active
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make_user


@pytest.fixture
def link(db_session):
    def _link(parent, child, status="active"):
        relationship = UserRelationship(
            parent_user_id=parent.id,
            child_user_id=child.id,
            relationship_type="business",
            status=status
        )
        db_session.add(relationship)
        db_session.commit()
        return relationship
    return _link


@pytest.fixture
def make_plan(db_session):
    def _make_plan(name, utility=100, marketing=150, authentication=80, service=120, is_default=False, currency="INR"):
        plan = PricePlan(
            name=name,
            currency=currency,
            utility_paise=utility,
            marketing_paise=marketing,
            authentication_paise=authentication,
            service_paise=service,
            is_default=is_default
        )
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan
    return _make_plan


@pytest.fixture
def assign(db_session):
    def _assign(user, plan, effective_from: datetime = None):
        row = UserPricePlan(
            user_id=user.id,
            price_plan_id=plan.id,
            effective_from=effective_from or utcnow()
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _assign


@pytest.fixture
def auth_headers(db_session, app_config):
    service = AuthService(db_session, app_config.auth)

    def _headers(user):
        return {"Authorization": f"Bearer {service.create_access_token(user)}"}
    return _headers
