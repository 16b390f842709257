# models.py - Flask-SQLAlchemy models for the earnings ledger
import enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, Index, CheckConstraint
from werkzeug.security import check_password_hash, generate_password_hash
from extensions import db
from utils import utcnow

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class EarningSource(enum.Enum):
    REFERRAL = "referral"
    AD = "ad"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class TaskType(enum.Enum):
    AD = "ad"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class WithdrawalStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Withdrawals in these states hold their amount against the balance
RESERVED_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.PROCESSING.value,
    WithdrawalStatus.COMPLETED.value,
)


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides a created_at timestamp (naive UTC) to inheriting models."""
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


# ===========================================================
# USER
# ===========================================================

class User(db.Model, UserMixin, BaseMixin):
    """Account holder. Balances are never stored here; they are derived from the ledger."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    withdrawal_phone = db.Column(db.String(20), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referrer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    is_activated = db.Column(db.Boolean, default=False, nullable=False)
    activated_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        Index("idx_user_referral_code", "referral_code"),
        Index("idx_user_referrer", "referrer_id"),
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self, base_url=None):
        result = {
            "id": self.id,
            "username": self.username,
            "fullName": self.full_name,
            "phone": self.phone,
            "withdrawalPhone": self.withdrawal_phone,
            "isActivated": self.is_activated,
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "referralCode": self.referral_code,
            "referrerId": self.referrer_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if base_url:
            result["referralLink"] = f"{base_url.rstrip('/')}/auth?ref={self.referral_code}"
        return result


# ===========================================================
# LEDGER
# ===========================================================

class Earning(db.Model, BaseMixin):
    """Append-only credit record. Never updated or deleted."""
    __tablename__ = "earnings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255))

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_earning_amount_positive"),
        Index("idx_earning_user_source", "user_id", "source"),
        Index("idx_earning_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "source": self.source,
            "amount": self.amount,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Withdrawal(db.Model, BaseMixin):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    fee = db.Column(db.Integer, nullable=False)
    net_amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), default=WithdrawalStatus.PENDING.value, nullable=False)
    payment_method = db.Column(db.String(50), nullable=False)
    phone_number = db.Column(db.String(20), nullable=True)
    conversation_id = db.Column(db.String(100), unique=True, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_withdrawal_amount_positive"),
        Index("idx_withdrawal_user_source_status", "user_id", "source", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "source": self.source,
            "amount": self.amount,
            "fee": self.fee,
            "netAmount": self.net_amount,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "phoneNumber": self.phone_number,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }


# ===========================================================
# REFERRALS
# ===========================================================

class ReferralEdge(db.Model, BaseMixin):
    """Commission link between an upline user and an activated referred user."""
    __tablename__ = "referral_edges"

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    referred_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    level = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=False, nullable=False)
    activated_at = db.Column(db.DateTime, nullable=True)

    referred = db.relationship("User", foreign_keys=[referred_id], lazy="joined")

    __table_args__ = (
        UniqueConstraint("referrer_id", "referred_id", "level", name="uq_referral_edge"),
        CheckConstraint("level IN (1, 2)", name="chk_referral_level"),
        Index("idx_referral_referrer_level", "referrer_id", "level", "is_active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "referrerId": self.referrer_id,
            "referredId": self.referred_id,
            "referredUsername": self.referred.username if self.referred else None,
            "referredFullName": self.referred.full_name if self.referred else None,
            "level": self.level,
            "amount": self.amount,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# TASKS
# ===========================================================

class AvailableTask(db.Model, BaseMixin):
    """Task catalog entry. Static content, never mutated by the ledger."""
    __tablename__ = "available_tasks"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    duration = db.Column(db.String(50), nullable=False)
    reward = db.Column(db.Integer, nullable=False)
    video_url = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "duration": self.duration,
            "reward": self.reward,
            "videoUrl": self.video_url,
        }


class Task(db.Model):
    """Per-user completion record."""
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    available_task_id = db.Column(db.Integer, db.ForeignKey("available_tasks.id"), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    reward = db.Column(db.Integer, nullable=False)
    completed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_task_user_type_completed", "user_id", "type", "completed_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "availableTaskId": self.available_task_id,
            "type": self.type,
            "reward": self.reward,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


# ===========================================================
# PAYMENTS & WEBHOOKS
# ===========================================================

class PaymentTransaction(db.Model, BaseMixin):
    """Activation payment driven by M-Pesa STK push."""
    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    checkout_request_id = db.Column(db.String(100), unique=True, nullable=False)
    merchant_request_id = db.Column(db.String(100), unique=True, nullable=False)
    status = db.Column(db.String(20), default=PaymentStatus.PENDING.value, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    phone_number = db.Column(db.String(20), nullable=True)
    mpesa_receipt_number = db.Column(db.String(50), nullable=True)
    result_code = db.Column(db.Integer, nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_payment_status_created", "status", "created_at"),
    )

    def to_dict(self):
        return {
            "checkoutRequestId": self.checkout_request_id,
            "merchantRequestId": self.merchant_request_id,
            "status": self.status,
            "amount": self.amount,
            "receiptNumber": self.mpesa_receipt_number,
            "resultCode": self.result_code,
            "resultDesc": self.result_desc,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class WebhookEvent(db.Model, BaseMixin):
    """Raw inbound provider payload, kept for audit and replay."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False)
    event_type = db.Column(db.String(100))
    payload = db.Column(db.JSON, nullable=False)
    reference = db.Column(db.String(120), index=True)
    processed = db.Column(db.Boolean, default=False)
    processed_at = db.Column(db.DateTime)
    status = db.Column(db.String(50), default="pending")
    remarks = db.Column(db.String(255))

    def mark_processed(self, success=True, remarks=None):
        self.processed = True
        self.status = "success" if success else "failed"
        self.remarks = remarks[:255] if remarks else None
        self.processed_at = utcnow()
