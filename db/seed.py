import logging

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from config import SeedConfig
from models.mysql_models import Base, PricePlan, SystemWallet, User, utcnow
from services.auth_service import password_context

logger = logging.getLogger(__name__)


def init_schema(engine: Engine) -> None:
    """Create missing tables. Existing tables are left untouched."""
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database schema ensured")


def seed_defaults(session: Session, seed: SeedConfig, bcrypt_rounds: int = 12) -> None:
    if not session.query(SystemWallet).filter(SystemWallet.wallet_type == "main").first():
        session.add(SystemWallet(wallet_type="main", currency="INR", balance_paise=seed.system_wallet_paise))
        logger.info(f"Seeded main system wallet with {seed.system_wallet_paise} paise")

    if not session.query(PricePlan).filter(PricePlan.is_default.is_(True)).first():
        plan = session.query(PricePlan).filter(PricePlan.name == seed.default_plan_name).first()
        if plan:
            plan.is_default = True
        else:
            session.add(PricePlan(
                name=seed.default_plan_name,
                currency="INR",
                utility_paise=seed.default_utility_paise,
                marketing_paise=seed.default_marketing_paise,
                authentication_paise=seed.default_authentication_paise,
                service_paise=seed.default_service_paise,
                is_default=True
            ))
        logger.info(f"Seeded default price plan '{seed.default_plan_name}'")

    if seed.admin_email and seed.admin_password:
        email = seed.admin_email.lower().strip()
        if not session.query(User).filter(User.email == email).first():
            session.add(User(
                name=seed.admin_name,
                email=email,
                password_hash=password_context(bcrypt_rounds).hash(seed.admin_password),
                role="super_admin",
                is_approved=True,
                is_active=True,
                approved_at=utcnow()
            ))
            logger.info(f"Seeded super admin {email}")

    session.commit()
