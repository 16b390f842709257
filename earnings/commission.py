from dataclasses import dataclass, field
from typing import List, Optional
from extensions import db
from logger import ledger_logger as logger
from models import User, ReferralEdge, EarningSource
from earnings.config import LedgerConfig
from earnings.exceptions import ValidationError
from earnings.ledger import LedgerStore
from utils import utcnow


@dataclass
class Commission:
    referrer_id: int
    level: int
    amount: int
    earning_id: int


@dataclass
class ActivationResult:
    user_id: int
    activated: bool
    commissions: List[Commission] = field(default_factory=list)


class CommissionCascade:
    """
    Runs once per user on the is_activated false -> true transition and pays
    the two-level referral commissions. The activation flag is the guard:
    a compare-and-set UPDATE decides which caller performs the cascade.
    """

    @staticmethod
    def _claim_activation(user_id: int, now) -> bool:
        claimed = User.query.filter(
            User.id == user_id,
            User.is_activated.is_(False)
        ).update({"is_activated": True, "activated_at": now}, synchronize_session=False)
        return claimed == 1

    @staticmethod
    def _pay_edge(referrer: User, referred: User, level: int, amount: int, now) -> Optional[Commission]:
        edge = ReferralEdge.query.filter_by(
            referrer_id=referrer.id, referred_id=referred.id, level=level
        ).first()
        if edge is not None and edge.is_active:
            logger.warning(f"Level {level} edge {referrer.id}->{referred.id} already active, skipping")
            return None

        if edge is None:
            edge = ReferralEdge(referrer_id=referrer.id, referred_id=referred.id, level=level)
            db.session.add(edge)
        edge.amount = amount
        edge.is_active = True
        edge.activated_at = now

        earning_id = LedgerStore.post_earning(
            referrer.id,
            EarningSource.REFERRAL.value,
            amount,
            f"Level {level} referral commission for {referred.username}",
        )
        return Commission(referrer_id=referrer.id, level=level, amount=amount, earning_id=earning_id)

    @staticmethod
    def activate(user_id: int) -> ActivationResult:
        """
        Activate `user_id` and post its commissions inside the caller's transaction.
        Re-invoking for an activated user is a no-op.
        """
        now = utcnow()
        if not CommissionCascade._claim_activation(user_id, now):
            if db.session.get(User, user_id) is None:
                raise ValidationError("User not found")
            logger.info(f"User {user_id} already activated, cascade skipped")
            return ActivationResult(user_id=user_id, activated=False)

        user = db.session.get(User, user_id)
        db.session.refresh(user)
        result = ActivationResult(user_id=user_id, activated=True)

        if user.referrer_id is None:
            logger.info(f"User {user_id} activated with no referrer")
            return result

        # Locked so concurrent activations under the same referrer get distinct ordinals
        level_one = LedgerStore.lock_user(user.referrer_id)

        prior = ReferralEdge.query.filter_by(
            referrer_id=level_one.id, level=1, is_active=True
        ).count()
        commission = CommissionCascade._pay_edge(
            level_one, user, 1, LedgerConfig.level_one_commission(prior + 1), now
        )
        if commission:
            result.commissions.append(commission)

        if level_one.referrer_id is not None:
            level_two = db.session.get(User, level_one.referrer_id)
            if level_two is not None and level_two.id != user.id:
                commission = CommissionCascade._pay_edge(
                    level_two, user, 2, LedgerConfig.level_two_commission(), now
                )
                if commission:
                    result.commissions.append(commission)

        logger.info(
            f"User {user_id} activated; commissions: "
            + ", ".join(f"L{c.level}->{c.referrer_id}:{c.amount}" for c in result.commissions)
        )
        return result

    @staticmethod
    def activate_and_commit(user_id: int) -> ActivationResult:
        try:
            result = CommissionCascade.activate(user_id)
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise
