# ==========================================================================================================
# -------------- Configuration file for the Tuzo earnings backend -----------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'tuzo.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    } if _database_url.startswith("postgresql") else {"pool_pre_ping": True}

    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5173")

    # ------------------------------------------------------------------------------------------
    # M-Pesa Daraja
    # ------------------------------------------------------------------------------------------
    MPESA_ENVIRONMENT = os.getenv("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY")
    MPESA_CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET")
    MPESA_SHORTCODE = os.getenv("MPESA_SHORTCODE", "174379")
    MPESA_PASSKEY = os.getenv("MPESA_PASSKEY")
    MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL", f"{APP_BASE_URL}/api/mpesa/callback")
    MPESA_B2C_SHORTCODE = os.getenv("MPESA_B2C_SHORTCODE", "600000")
    MPESA_B2C_INITIATOR = os.getenv("MPESA_B2C_INITIATOR")
    MPESA_B2C_SECURITY_CREDENTIAL = os.getenv("MPESA_B2C_SECURITY_CREDENTIAL")
    MPESA_B2C_RESULT_URL = os.getenv("MPESA_B2C_RESULT_URL", f"{APP_BASE_URL}/api/mpesa/b2c/callback")
    MPESA_B2C_TIMEOUT_URL = os.getenv("MPESA_B2C_TIMEOUT_URL", f"{APP_BASE_URL}/api/mpesa/b2c/timeout")
    MPESA_REQUEST_TIMEOUT_SECONDS = int(os.getenv("MPESA_REQUEST_TIMEOUT_SECONDS", "30"))

    # "async" hands provider callbacks to a greenlet, "sync" runs them inline
    CALLBACK_DISPATCH_MODE = os.getenv("CALLBACK_DISPATCH_MODE", "async")

    # ------------------------------------------------------------------------------------------
    # Business rules (whole shillings)
    # ------------------------------------------------------------------------------------------
    ACTIVATION_FEE = 500
    WITHDRAWAL_MIN_AMOUNT = 600
    WITHDRAWAL_FEE = 50
    WITHDRAWAL_METHODS = ("M-Pesa", "Airtel Money")

    FIRST_REFERRAL_COMMISSION = 300
    REPEAT_REFERRAL_COMMISSION = 150
    SECOND_LEVEL_COMMISSION = 150

    TASK_COOLDOWN_DAYS = 14
    TASK_WEEKLY_CAP = 2
    TASK_WEEKLY_WINDOW_DAYS = 7

    PENDING_PAYMENT_TTL_MINUTES = int(os.getenv("PENDING_PAYMENT_TTL_MINUTES", "30"))
