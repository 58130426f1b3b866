import json
import os
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from bata.errors import MarketplaceError
from bata.extensions import cors, db, migrate
from bata.models import User
from bata.segments.segment_admin import admin_bp
from bata.segments.segment_disputes import admin_disputes_bp, disputes_bp
from bata.segments.segment_orders import orders_bp
from bata.segments.segment_wallet import wallet_bp
from bata.utils.auth import current_user, role_of
from bata.utils.observability import init_sentry, install_request_observers, set_sentry_user


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        heads = ScriptDirectory.from_config(cfg).get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except Exception:
        value = int(default)
    return max(minimum, min(value, maximum))


def _trace(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("BATA_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'bata.db').replace(os.sep, '/')}"
    # Heroku-style URLs
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
            engine_options["pool_recycle"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.before_request
    def _capture_auth_context():
        u = current_user()
        if u is None:
            return
        g.auth_user_id = int(u.id)
        g.auth_role = role_of(u)
        set_sentry_user(int(u.id), g.auth_role)

    @app.errorhandler(MarketplaceError)
    def _marketplace_error(error: MarketplaceError):
        db.session.rollback()
        status = error.http_status
        log = app.logger.warning if status >= 409 else app.logger.info
        log("marketplace_error path=%s code=%s reason=%s status=%s", request.path, error.code, error.reason, status)
        return jsonify(_trace(error.to_payload())), status

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "reason": None,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_trace(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "reason": None,
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_trace(payload)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_disputes_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "bata-backend",
            "env": env,
            "db": db_state,
            "git_sha": (os.getenv("GIT_SHA") or "unknown").strip(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "bata-backend", "env": env})

    @app.cli.command("bootstrap-platform-account")
    def bootstrap_platform_account():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or BATA_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        if not email:
            raise click.ClickException("ADMIN_EMAIL must be set.")
        name = (os.getenv("ADMIN_NAME") or "BATA Platform").strip()

        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(name=name, email=email, role="admin")
            db.session.add(user)
        else:
            user.role = "admin"
        db.session.commit()
        click.echo(f"Platform account ready: id={int(user.id)} email={email}")

    @app.cli.command("run-escrow-auto-confirm")
    @click.option("--limit", "limit", type=int, default=500, show_default=True, help="Max orders to settle")
    def run_escrow_auto_confirm(limit: int):
        from bata.jobs.escrow_runner import run_escrow_automation

        result = run_escrow_automation(limit=limit)
        click.echo(json.dumps(result))
        if not result.get("ok"):
            raise click.ClickException(f"auto-confirm finished with errors={result.get('errors')}")

    @app.cli.command("reconcile-ledger")
    @click.option("--persist", is_flag=True, help="Store the report in reconciliation_reports")
    def reconcile_ledger(persist: bool):
        from bata.services.reconciliation_service import persist_report, recompute_wallet_balances

        summary = recompute_wallet_balances()
        if persist:
            summary["report_id"] = int(persist_report(summary).id)
        click.echo(json.dumps(summary, indent=2))
        if int(summary.get("drift_count") or 0):
            raise click.ClickException(f"ledger drift detected for {summary['drift_count']} user(s)")

    return app
