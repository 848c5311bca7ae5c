import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from iskahomes.extensions import cors, db, migrate
from iskahomes.models import User
from iskahomes.realtime.broker import init_broker
from iskahomes.segments.segment_admin_subscriptions import admin_subscriptions_bp
from iskahomes.segments.segment_auth import auth_bp
from iskahomes.segments.segment_billing import billing_bp
from iskahomes.segments.segment_commission_rates import commission_rates_bp
from iskahomes.segments.segment_conversations import conversations_bp
from iskahomes.segments.segment_leads import leads_bp
from iskahomes.segments.segment_listings import listings_bp
from iskahomes.segments.segment_messages import messages_bp
from iskahomes.segments.segment_realtime import realtime_bp
from iskahomes.segments.segment_subscriptions import subscriptions_bp
from iskahomes.segments.segment_taxonomy import taxonomy_bp
from iskahomes.segments.segment_uploads import uploads_bp
from iskahomes.utils.clock import utcnow
from iskahomes.utils.http import error_response
from iskahomes.utils.jwt_utils import decode_token, get_bearer_token
from iskahomes.utils.observability import init_sentry, install_request_observers
from iskahomes.utils.rate_limit import build_rate_limit_subject, check_limit, limiter_stats, rate_limit_enabled


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(["git", "rev-parse", "HEAD"], cwd=str(repo_root), stderr=subprocess.DEVNULL)
        return out.decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(maximum, value))


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else float(default)
    except ValueError:
        return float(default)


def create_app(config: dict | None = None):
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("ISKA_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'iskahomes.db').replace(os.sep, '/')}"
    # Heroku-style URLs still use the legacy scheme.
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update({
            "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
            "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
            "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
        })
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    app.config["UPLOAD_DIR"] = os.getenv("UPLOAD_DIR") or os.path.join(instance_dir, "uploads")
    app.config["UPLOAD_MAX_BYTES"] = _env_int("UPLOAD_MAX_BYTES", 50 * 1024 * 1024, minimum=1024, maximum=200 * 1024 * 1024)
    # Multipart wizard steps carry several files plus the data field.
    app.config["MAX_CONTENT_LENGTH"] = app.config["UPLOAD_MAX_BYTES"] * 12
    app.config["REALTIME_BACKEND"] = (os.getenv("REALTIME_BACKEND") or "").strip().lower()
    app.config["REDIS_URL"] = (os.getenv("REDIS_URL") or "").strip()
    app.config["REALTIME_HEARTBEAT_SECONDS"] = _env_float("REALTIME_HEARTBEAT_SECONDS", 15.0)
    if config:
        app.config.update(config)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db, directory=str(Path(__file__).resolve().parents[1] / "migrations"))
    install_request_observers(app)
    init_broker(app)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        return error_response(error.name, error.description or error.name, int(error.code or 500))

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        if request.path.startswith("/api/"):
            return error_response("InternalServerError", "Internal server error", 500)
        return jsonify({"ok": False, "error": "InternalServerError", "message": "Internal server error"}), 500

    app.register_blueprint(auth_bp)
    app.register_blueprint(taxonomy_bp)
    app.register_blueprint(uploads_bp)
    app.register_blueprint(listings_bp)
    app.register_blueprint(commission_rates_bp)
    app.register_blueprint(conversations_bp)
    app.register_blueprint(messages_bp)
    app.register_blueprint(realtime_bp)
    app.register_blueprint(leads_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_subscriptions_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "iskahomes-backend",
            "env": env,
            "db": db_state,
            "realtime": app.extensions["iskahomes_broker"].backend,
            "rate_limiter": limiter_stats(),
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "iskahomes-backend", "env": env})

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.before_request
    def _capture_auth_context():
        header = request.headers.get("Authorization", "")
        token = get_bearer_token(header)
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        g.auth_user_id = uid
        g.auth_role = (payload.get("user_type") or "").strip().lower() or None

    def _rate_limited_response(retry_after_seconds: int):
        retry_after = int(max(1, retry_after_seconds or 1))
        resp, _ = error_response("RATE_LIMITED", "Too many requests", 429, retry_after_seconds=retry_after)
        resp.status_code = 429
        resp.headers["Retry-After"] = str(retry_after)
        return resp

    @app.before_request
    def _global_rate_limit_guard():
        if bool(app.config.get("TESTING")):
            allow_in_tests = (os.getenv("RATE_LIMIT_IN_TESTS") or "").strip().lower() in ("1", "true", "yes", "on")
            if not allow_in_tests:
                return None
        if not rate_limit_enabled(True):
            return None
        method = (request.method or "GET").strip().upper()
        path = (request.path or "").strip()
        if method == "OPTIONS" or not path.startswith("/api/"):
            return None
        # Streams are long-lived; their reconnects are paced by the client.
        if path.startswith("/api/realtime/") or path.startswith("/api/uploads/"):
            return None

        user_id = getattr(g, "auth_user_id", None)
        subject = build_rate_limit_subject(
            scope="user" if user_id is not None else "ip",
            user_id=int(user_id) if user_id is not None else None,
            request_obj=request,
        )
        if method == "GET":
            limit, tier = 120, "browse"
        else:
            limit, tier = 60, "write"
        ok, retry_after = check_limit(f"tier:{tier}:{method}:{path}:{subject}", limit=limit, window_seconds=60)
        if not ok:
            return _rate_limited_response(retry_after)
        return None

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("cleanup-drafts")
    @click.option("--max-age-hours", "max_age_hours", default=48, show_default=True, type=int)
    def cleanup_drafts(max_age_hours: int):
        from iskahomes.jobs.cleanup_runner import cleanup_incomplete_listings

        result = cleanup_incomplete_listings(max_age_hours)
        click.echo(f"cleanup_drafts_ok deleted={result['deletedCount']} files={result['deletedFiles']}")

    @app.cli.command("sweep-subscriptions")
    def sweep_subscriptions_command():
        from iskahomes.jobs.subscription_runner import sweep_subscriptions

        result = sweep_subscriptions(utcnow())
        click.echo(f"sweep_subscriptions_ok grace_period={result['gracePeriod']} expired={result['expired']}")

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or ISKA_ENV=dev.")
        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")
        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.user_type = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, user_type="admin")
                db.session.add(u)
            u.set_password(password)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")
        click.echo(f"admin_bootstrap_ok {u.email}")

    return app
