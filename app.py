import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import AppConfig, configure_logging, load_config
from db.config import build_engine, build_session_factory, get_mongo_db
from db.seed import init_schema, seed_defaults
from routes.auth_routes import router as auth_router
from routes.billing_routes import router as billing_router
from routes.contact_routes import router as contact_router
from routes.price_routes import router as price_router
from routes.wallet_routes import router as wallet_router
from routes.webhook_routes import router as webhook_router
from services.errors import BillingError

logger = logging.getLogger(__name__)


def _field_errors(exc: RequestValidationError) -> list:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return errors


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Validation failed", "errors": _field_errors(exc)}
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"}
        )


def create_app(config: AppConfig = None, engine=None, mongo_db=None) -> FastAPI:
    config = config or load_config()
    configure_logging(config.log_level)

    app = FastAPI(
        title="WhatsApp Billing API",
        description="Multi-tenant WhatsApp messaging backend - price plans, wallets, billing logs and contacts",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.state.config = config
    app.state.engine = engine if engine is not None else build_engine(config.database)
    app.state.session_factory = build_session_factory(app.state.engine)
    app.state.mongo_db = mongo_db if mongo_db is not None else get_mongo_db(config.mongo)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.on_event("startup")
    def startup():
        if not config.run_startup_tasks:
            return
        try:
            init_schema(app.state.engine)
            session = app.state.session_factory()
            try:
                seed_defaults(session, config.seed, config.auth.bcrypt_rounds)
            finally:
                session.close()
        except Exception as e:
            logger.warning(f"Failed to prepare database: {e}")

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(price_router, prefix="/api/v1")
    app.include_router(billing_router, prefix="/api/v1")
    app.include_router(wallet_router, prefix="/api/v1")
    app.include_router(contact_router, prefix="/api/v1")
    app.include_router(webhook_router, prefix="/api/v1")

    @app.get("/", tags=["Health"])
    def health_check():
        return {"status": "healthy", "service": "whatsapp-billing"}

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
