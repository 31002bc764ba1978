"""Flask application factory."""

import logging
import os
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from dotenv import load_dotenv
from flask import Flask
from flask_session import Session
from google import genai
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from .assistant import AssistantOrchestrator, AssistantToolbox, ConversationStore
from .config import Settings
from .errors import GymDeskError
from .extensions import db
from .services.ai_service import AIService
from .services.auth_service import AuthService
from .services.class_service import ClassService
from .services.knowledge_base import KnowledgeBaseService
from .services.notification_service import NotificationService
from .services.realtime import ChangeFeed
from .services.supabase_client import anon_client_factory, create_supabase_client
from .services.ticket_service import TicketService
from .services.user_service import UserService
from .services.workout_service import WorkoutService

logger = logging.getLogger(__name__)


def _resolve_secret_key() -> str:
    """Return a secret key for Flask sessions.

    In production we expect ``FLASK_SECRET_KEY`` (or the legacy ``SECRET_KEY``)
    to be configured. Without it a temporary key is generated, so sessions do
    not survive a restart.
    """

    for name in ("FLASK_SECRET_KEY", "SECRET_KEY"):
        value = os.environ.get(name)
        if value:
            return value

    return secrets.token_hex(32)


def _bool_from_env(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _configure_session(app: Flask) -> bool:
    """Apply session cookie and database settings; return whether in production."""

    flask_env = os.environ.get("FLASK_ENV", "").lower()
    is_vercel = _bool_from_env("VERCEL", False) or bool(os.environ.get("VERCEL_ENV"))
    is_production = flask_env in {"production", "prod"} or is_vercel

    same_site_default = "Lax"
    same_site_env = os.environ.get("SESSION_COOKIE_SAMESITE")
    if same_site_env and same_site_env.lower() == "none":
        same_site_default = "None"

    app.config.update(
        SESSION_TYPE="sqlalchemy",
        SESSION_SQLALCHEMY=db,
        SESSION_SQLALCHEMY_TABLE=os.environ.get("SESSION_TABLE", "sessions"),
        SESSION_PERMANENT=True,
        PERMANENT_SESSION_LIFETIME=timedelta(
            days=int(os.environ.get("SESSION_LIFETIME_DAYS", "14"))
        ),
        SESSION_COOKIE_SECURE=_bool_from_env("SESSION_COOKIE_SECURE", is_production),
        SESSION_COOKIE_SAMESITE=os.environ.get("SESSION_COOKIE_SAMESITE", same_site_default),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_NAME=os.environ.get("SESSION_COOKIE_NAME", "gymdesk_session"),
        SESSION_COOKIE_DOMAIN=os.environ.get("SESSION_COOKIE_DOMAIN"),
        SESSION_USE_SIGNER=False,
    )

    database_uri = os.environ.get("SUPABASE_DB_POOL_URL")
    if not database_uri:
        if is_production:
            raise RuntimeError(
                "SUPABASE_DB_POOL_URL is required in production to persist sessions."
            )
        default_sqlite_path = Path(app.instance_path) / "dev.db"
        default_sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        database_uri = os.environ.get("LOCAL_DATABASE_URI", f"sqlite:///{default_sqlite_path}")

    if database_uri.startswith("sqlite:///"):
        sqlite_path = database_uri.replace("sqlite:///", "", 1)
        Path(sqlite_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    sslmode = os.environ.get("DATABASE_SSLMODE")
    if sslmode and "sslmode=" not in database_uri:
        separator = "&" if "?" in database_uri else "?"
        database_uri = f"{database_uri}{separator}sslmode={sslmode}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    engine_options = {"pool_pre_ping": True}
    if is_vercel:
        engine_options["poolclass"] = NullPool
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    return is_production


def create_app(
    settings: Optional[Settings] = None,
    *,
    supabase: Any = None,
    auth_client_factory: Optional[Callable[[], Any]] = None,
    ai_client: Optional[genai.Client] = None,
    email_transport: Optional[httpx.BaseTransport] = None,
) -> Flask:
    """Configure and return the Flask application.

    Every collaborator can be injected; anything omitted is built from the
    environment, and hosted integrations that are not configured stay
    disabled instead of failing at import time.
    """

    load_dotenv()
    settings = settings or Settings()
    _configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = _resolve_secret_key()
    app.settings = settings

    is_production = _configure_session(app)

    # Ensure models are registered with SQLAlchemy before any table creation.
    from . import models  # noqa: F401

    db.init_app(app)

    if is_production:
        try:
            with app.app_context():
                connection = db.engine.connect()
                connection.close()
        except SQLAlchemyError as exc:  # pragma: no cover - network dependent
            raise RuntimeError("Database connectivity failed for session storage") from exc

    if "sessions" in db.metadata.tables:
        db.metadata.remove(db.metadata.tables["sessions"])

    Session(app)

    if not is_production:
        with app.app_context():
            db.create_all()

    # --- Services ----------------------------------------------------------
    if supabase is None:
        supabase = create_supabase_client(settings, service_role=True)

    feed = ChangeFeed()
    app.change_feed = feed
    app.ai_service = AIService(settings, client=ai_client)
    app.user_service = UserService(supabase, feed)
    app.auth_service = AuthService(auth_client_factory or anon_client_factory(settings), app.user_service)
    app.notification_service = NotificationService(settings, transport=email_transport)
    app.knowledge_base = KnowledgeBaseService(
        supabase,
        app.ai_service,
        feed,
        match_count=settings.kb_match_count,
        similarity_threshold=settings.kb_similarity_threshold,
    )
    app.ticket_service = TicketService(
        supabase,
        app.user_service,
        app.notification_service,
        app.ai_service,
        app.knowledge_base,
        feed,
    )
    app.workout_service = WorkoutService(supabase, app.ai_service, app.user_service, feed)
    app.class_service = ClassService(supabase, feed)
    app.assistant = AssistantOrchestrator(
        settings,
        AssistantToolbox(
            knowledge_base=app.knowledge_base,
            workouts=app.workout_service,
            classes=app.class_service,
        ),
        ConversationStore(),
        client=app.ai_service.client,
        knowledge_base=app.knowledge_base,
    )

    @app.errorhandler(GymDeskError)
    def handle_gymdesk_error(exc: GymDeskError):
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.message)
        return {"error": exc.message}, exc.status_code

    from .functions import functions_bp
    from .routes import main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(functions_bp)

    logger.info(
        "GymDesk started (supabase=%s, gemini=%s, email=%s)",
        supabase is not None,
        app.ai_service.enabled,
        bool(settings.resend_api_key),
    )
    return app
