from typing import Dict, List, Optional
from sqlalchemy import func
from extensions import db
from logger import ledger_logger as logger
from models import (
    User, Earning, Withdrawal, EarningSource, WithdrawalStatus,
    RESERVED_WITHDRAWAL_STATUSES,
)
from earnings.config import LedgerConfig
from earnings.exceptions import (
    ValidationError, InsufficientBalance, BelowMinimum, InvalidTransition,
)
from utils import normalize_phone, utcnow


# ==========================================================
#                  LEDGER STORE
# ==========================================================
class LedgerStore:
    """
    Append-only earnings log plus withdrawal reservations.
    Balances are always aggregated from the log, never read from a stored column.
    """

    # ------------------------------------------------------
    # Postings
    # ------------------------------------------------------
    @staticmethod
    def post_earning(user_id: int, source: str, amount: int, description: str = None) -> int:
        """
        Append an Earning. Must be called inside an existing transaction
        (flush only, the caller commits or rolls back).
        """
        if source not in EarningSource.values():
            raise ValidationError(f"Unknown earning source '{source}'")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Earning amount must be a positive whole number")

        earning = Earning(
            user_id=user_id,
            source=source,
            amount=amount,
            description=description,
        )
        db.session.add(earning)
        db.session.flush()

        logger.info(f"Earning {earning.id} posted: user={user_id} source={source} amount={amount}")
        return earning.id

    # ------------------------------------------------------
    # Queries
    # ------------------------------------------------------
    @staticmethod
    def list_earnings(user_id: int, source: Optional[str] = None) -> List[Earning]:
        query = Earning.query.filter(Earning.user_id == user_id)
        if source:
            if source not in EarningSource.values():
                raise ValidationError(f"Unknown earning source '{source}'")
            query = query.filter(Earning.source == source)
        return query.order_by(Earning.created_at.desc(), Earning.id.desc()).all()

    @staticmethod
    def _earned_by_source(user_id: int) -> Dict[str, int]:
        rows = db.session.query(
            Earning.source, func.coalesce(func.sum(Earning.amount), 0)
        ).filter(
            Earning.user_id == user_id
        ).group_by(Earning.source).all()
        return {source: int(total) for source, total in rows}

    @staticmethod
    def _reserved_by_source(user_id: int) -> Dict[str, int]:
        rows = db.session.query(
            Withdrawal.source, func.coalesce(func.sum(Withdrawal.amount), 0)
        ).filter(
            Withdrawal.user_id == user_id,
            Withdrawal.status.in_(RESERVED_WITHDRAWAL_STATUSES)
        ).group_by(Withdrawal.source).all()
        return {source: int(total) for source, total in rows}

    @staticmethod
    def get_balances(user_id: int) -> Dict[str, Dict[str, int]]:
        """Return {source: {"earned": n, "withdrawable": n}} for every source."""
        earned = LedgerStore._earned_by_source(user_id)
        reserved = LedgerStore._reserved_by_source(user_id)

        balances = {}
        for source in EarningSource.values():
            total = earned.get(source, 0)
            balances[source] = {
                "earned": total,
                "withdrawable": total - reserved.get(source, 0),
            }
        return balances

    @staticmethod
    def withdrawable(user_id: int, source: str) -> int:
        return LedgerStore.get_balances(user_id)[source]["withdrawable"]

    @staticmethod
    def earnings_by_source(user_id: int) -> Dict:
        """Earnings history grouped by source, with totals."""
        earnings = LedgerStore.list_earnings(user_id)
        grouped = {source: [] for source in EarningSource.values()}
        totals = {source: 0 for source in EarningSource.values()}
        for earning in earnings:
            grouped.setdefault(earning.source, []).append(earning)
            totals[earning.source] = totals.get(earning.source, 0) + earning.amount
        grouped["all"] = earnings
        return {"earnings": grouped, "totals": totals}

    @staticmethod
    def list_withdrawals(user_id: int) -> List[Withdrawal]:
        return Withdrawal.query.filter_by(user_id=user_id).order_by(
            Withdrawal.created_at.desc(), Withdrawal.id.desc()
        ).all()

    # ------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------
    @staticmethod
    def _validate_withdrawal_input(source, amount, method, phone):
        if source not in EarningSource.values():
            raise ValidationError(f"Unknown balance source '{source}'")
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("Amount must be a whole number of shillings")
        if method not in LedgerConfig.withdrawal_methods():
            raise ValidationError(f"Unsupported payment method '{method}'")
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValidationError("Phone number must be in the format 254XXXXXXXXX")

        minimum = LedgerConfig.withdrawal_minimum()
        fee = LedgerConfig.withdrawal_fee(amount)
        if amount < minimum:
            raise BelowMinimum(f"Minimum withdrawal is KSh {minimum}", minimum=minimum)
        if fee >= amount:
            raise BelowMinimum(f"Amount must exceed the KSh {fee} withdrawal fee", minimum=minimum)
        return normalized, fee

    @staticmethod
    def lock_user(user_id: int) -> User:
        """
        Take a write lock on the user row for the rest of the transaction.
        SQLite ignores FOR UPDATE, so the lock is a no-op UPDATE: row lock on
        PostgreSQL, database write lock on SQLite.
        """
        claimed = User.query.filter(User.id == user_id).update(
            {"id": User.id}, synchronize_session=False
        )
        if claimed != 1:
            raise ValidationError("User not found")
        return db.session.get(User, user_id)

    @staticmethod
    def request_withdrawal(user_id: int, source: str, amount: int, method: str, phone: str) -> Withdrawal:
        """
        Reserve `amount` from the source balance and create a pending Withdrawal.
        The user row is locked for the balance check and insert, so two concurrent
        requests against the same balance serialize.
        """
        phone_number, fee = LedgerStore._validate_withdrawal_input(source, amount, method, phone)

        try:
            LedgerStore.lock_user(user_id)

            available = LedgerStore.withdrawable(user_id, source)
            if amount > available:
                raise InsufficientBalance(
                    f"Insufficient {source} balance. Available: KSh {available}",
                    available=available,
                )

            withdrawal = Withdrawal(
                user_id=user_id,
                source=source,
                amount=amount,
                fee=fee,
                net_amount=amount - fee,
                status=WithdrawalStatus.PENDING.value,
                payment_method=method,
                phone_number=phone_number,
            )
            db.session.add(withdrawal)
            db.session.commit()

        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"Withdrawal {withdrawal.id} reserved: user={user_id} source={source} "
            f"amount={amount} fee={fee}"
        )
        return withdrawal

    @staticmethod
    def _transition(withdrawal_id: int, allowed_from, values: Dict) -> Withdrawal:
        """Compare-and-set status change; never moves a withdrawal backwards."""
        try:
            updated = Withdrawal.query.filter(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status.in_(allowed_from)
            ).update(values, synchronize_session=False)

            if updated != 1:
                current = db.session.get(Withdrawal, withdrawal_id)
                if current is None:
                    raise ValidationError("Withdrawal not found")
                raise InvalidTransition(
                    f"Withdrawal {withdrawal_id} is {current.status}, cannot become {values['status']}"
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        withdrawal = db.session.get(Withdrawal, withdrawal_id)
        db.session.refresh(withdrawal)
        logger.info(f"Withdrawal {withdrawal_id} -> {withdrawal.status}")
        return withdrawal

    @staticmethod
    def mark_processing(withdrawal_id: int, conversation_id: str = None) -> Withdrawal:
        return LedgerStore._transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING.value,),
            {"status": WithdrawalStatus.PROCESSING.value, "conversation_id": conversation_id},
        )

    @staticmethod
    def complete_withdrawal(withdrawal_id: int) -> Withdrawal:
        return LedgerStore._transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value),
            {"status": WithdrawalStatus.COMPLETED.value, "processed_at": utcnow()},
        )

    @staticmethod
    def fail_withdrawal(withdrawal_id: int, reason: str = None) -> Withdrawal:
        """Failed withdrawals stop counting against the balance."""
        return LedgerStore._transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value),
            {
                "status": WithdrawalStatus.FAILED.value,
                "processed_at": utcnow(),
                "failure_reason": (reason or "")[:255] or None,
            },
        )
