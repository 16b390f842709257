import os
import logging
import click
from flask import Flask, jsonify
from sqlalchemy import text
from config import Config
from extensions import db, login_manager, init_extensions
from earnings.exceptions import LedgerError
from logger import app_logger
from models import User, AvailableTask
from utils import utcnow


# Catalog seeded by `flask seed-tasks`: (type, description, duration, reward)
DEFAULT_TASKS = [
    ("ad", "Watch a sponsored advert", "30 seconds", 10),
    ("tiktok", "Watch and like a TikTok video", "1 minute", 15),
    ("youtube", "Watch a YouTube video to the end", "3 minutes", 15),
    ("instagram", "Follow and like an Instagram post", "1 minute", 7),
]


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    setup_logging(app)

    # ------------------------------------------------------------------------------------------
    # SQLite fallback needs its instance directory
    # ------------------------------------------------------------------------------------------
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(os.path.join(app.root_path, "instance"), exist_ok=True)

    init_extensions(app)
    register_blueprints(app)
    register_error_handlers(app)
    register_commands(app)

    # ------------------------------------------------------------------------------------------
    # Flask-Login
    # ------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required", "code": "unauthorized"}), 401

    @app.route("/healthz")
    def healthz():
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            app.logger.error(f"Health check failed: {e}")
            return {"status": "error", "timestamp": utcnow().isoformat()}, 503
        return {"status": "ok", "timestamp": utcnow().isoformat()}, 200

    return app


def setup_logging(app):
    """File handler for the app logger, console as well while debugging."""
    os.makedirs("logs", exist_ok=True)

    file_handler = logging.FileHandler("logs/app.log", mode="a", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
    ))
    file_handler.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)


def register_blueprints(app):
    from blueprints.auth import bp as auth_bp
    from blueprints.payments import bp as payments_bp
    from blueprints.profile import bp as profile_bp
    from blueprints.tasks import bp as tasks_bp
    from blueprints.withdrawals import bp as withdrawals_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(profile_bp)
    app.register_blueprint(tasks_bp)
    app.register_blueprint(withdrawals_bp)


def register_error_handlers(app):

    @app.errorhandler(LedgerError)
    def handle_ledger_error(e):
        if e.http_status >= 500:
            app_logger.error(f"{e.code}: {e.user_message} {e.details}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        app_logger.error(f"Unhandled error: {e}", exc_info=True)
        return jsonify({"error": "Something went wrong. Please try again", "code": "internal_error"}), 500


#=======================================================================================================
#------------------------CLI COMMANDS------------------------------------------------------------------
#==========================================================================================================
def register_commands(app):

    @app.cli.command("seed-tasks")
    def seed_tasks():
        """Insert the default task catalog if it is empty."""
        if AvailableTask.query.first():
            click.echo("Task catalog already seeded")
            return
        for task_type, description, duration, reward in DEFAULT_TASKS:
            db.session.add(AvailableTask(
                type=task_type, description=description, duration=duration, reward=reward
            ))
        db.session.commit()
        click.echo(f"Seeded {len(DEFAULT_TASKS)} tasks")

    @app.cli.command("expire-payments")
    @click.option("--minutes", type=int, default=None, help="Override the pending payment TTL")
    def expire_payments(minutes):
        """Cancel pending activation payments that never got a callback."""
        from earnings.reconciliation import PaymentReconciler
        expired = PaymentReconciler.expire_stale(minutes)
        click.echo(f"Expired {expired} pending payments")

    @app.cli.command("replay-callbacks")
    def replay_callbacks():
        """Re-run stored STK callbacks that failed to process."""
        from earnings.reconciliation import PaymentReconciler
        replayed = PaymentReconciler.replay_failed_events()
        click.echo(f"Replayed {replayed} callbacks")
