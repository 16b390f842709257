from typing import Dict, List, Optional, Tuple
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from extensions import db
from logger import ledger_logger as logger
from models import User, ReferralEdge
from earnings.exceptions import ValidationError
from utils import generate_referral_code, normalize_phone

# Commissions pay two levels, so the walk never goes deeper
MAX_REFERRAL_DEPTH = 2
REFERRAL_CODE_ATTEMPTS = 10


class ReferralGraph:
    """
    Two-level referral helper over the users.referrer_id back-reference.
    """

    # -------------------------
    # Registration
    # -------------------------
    @staticmethod
    def _unused_code() -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            if not User.query.filter_by(referral_code=code).first():
                return code
        # Extremely unlikely; let the unique constraint decide
        return generate_referral_code(length=10)

    @staticmethod
    def register_user(username: str, full_name: str, phone: str, password: str,
                      referral_code: Optional[str] = None) -> User:
        """
        Create a user with a fresh referral code. A code collision (including one
        that only surfaces as an IntegrityError on commit) regenerates the code.
        """
        username = (username or "").strip()
        full_name = (full_name or "").strip()
        if not username or not full_name or not password:
            raise ValidationError("Username, full name and password are required")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")

        normalized_phone = None
        if phone:
            normalized_phone = normalize_phone(phone)
            if not normalized_phone:
                raise ValidationError("Phone number must be in the format 254XXXXXXXXX")

        if User.query.filter_by(username=username).first():
            raise ValidationError("Username already registered")

        referrer = None
        if referral_code:
            referrer = User.query.filter_by(referral_code=referral_code.strip().upper()).first()
            if not referrer:
                raise ValidationError("Invalid referral code")

        for attempt in range(1, REFERRAL_CODE_ATTEMPTS + 1):
            user = User(
                username=username,
                full_name=full_name,
                phone=normalized_phone,
                withdrawal_phone=normalized_phone,
                referral_code=ReferralGraph._unused_code(),
                referrer_id=referrer.id if referrer else None,
            )
            user.set_password(password)
            db.session.add(user)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                if User.query.filter_by(username=username).first():
                    raise ValidationError("Username already registered")
                logger.warning(f"Referral code collision on attempt {attempt}, regenerating")
                continue

            logger.info(f"User {user.id} registered (referrer={user.referrer_id})")
            return user

        raise ValidationError("Could not allocate a referral code. Please try again")

    # -------------------------
    # Upline / downline
    # -------------------------
    @staticmethod
    def get_upline(user_id: int) -> Tuple[Optional[User], Optional[User]]:
        """Return (level1_referrer, level2_referrer); either may be None."""
        upline = []
        current = db.session.get(User, user_id)
        for _ in range(MAX_REFERRAL_DEPTH):
            if current is None or current.referrer_id is None:
                break
            current = db.session.get(User, current.referrer_id)
            upline.append(current)
        while len(upline) < MAX_REFERRAL_DEPTH:
            upline.append(None)
        return upline[0], upline[1]

    @staticmethod
    def get_downline(user_id: int) -> Dict[str, List[User]]:
        direct = User.query.filter(User.referrer_id == user_id).order_by(User.created_at.desc()).all()
        direct_ids = [u.id for u in direct]
        secondary = []
        if direct_ids:
            secondary = User.query.filter(
                User.referrer_id.in_(direct_ids)
            ).order_by(User.created_at.desc()).all()
        return {"direct": direct, "secondary": secondary}

    # -------------------------
    # Client query surface
    # -------------------------
    @staticmethod
    def list_referrals(user_id: int) -> List[ReferralEdge]:
        return ReferralEdge.query.filter_by(referrer_id=user_id).order_by(
            ReferralEdge.created_at.desc(), ReferralEdge.id.desc()
        ).all()

    @staticmethod
    def referral_stats(user_id: int) -> Dict:
        downline = ReferralGraph.get_downline(user_id)

        rows = db.session.query(
            ReferralEdge.level,
            func.count(ReferralEdge.id),
            func.coalesce(func.sum(ReferralEdge.amount), 0),
        ).filter(
            ReferralEdge.referrer_id == user_id,
            ReferralEdge.is_active.is_(True)
        ).group_by(ReferralEdge.level).all()
        by_level = {level: (int(count), int(total)) for level, count, total in rows}

        user = db.session.get(User, user_id)
        base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")

        return {
            "directReferrals": len(downline["direct"]),
            "secondaryReferrals": len(downline["secondary"]),
            "activeDirectReferrals": by_level.get(1, (0, 0))[0],
            "activeSecondaryReferrals": by_level.get(2, (0, 0))[0],
            "levelOneEarnings": by_level.get(1, (0, 0))[1],
            "levelTwoEarnings": by_level.get(2, (0, 0))[1],
            "referralLink": f"{base_url}/auth?ref={user.referral_code}" if user else None,
        }
