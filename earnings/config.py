# earnings/config.py
from datetime import timedelta
from flask import current_app


class LedgerConfig:
    """
    Business-rule accessor over the Flask config.
    Level 1: 300 for the first commission, 150 for every later one.
    Level 2: 150 flat.
    """

    @staticmethod
    def _get(key):
        return current_app.config[key]

    # ---------------- withdrawals ----------------
    @staticmethod
    def withdrawal_minimum() -> int:
        return int(LedgerConfig._get("WITHDRAWAL_MIN_AMOUNT"))

    @staticmethod
    def withdrawal_fee(amount: int = None) -> int:
        """Fixed fee, independent of the amount."""
        return int(LedgerConfig._get("WITHDRAWAL_FEE"))

    @staticmethod
    def withdrawal_methods():
        return tuple(LedgerConfig._get("WITHDRAWAL_METHODS"))

    # ---------------- commissions ----------------
    @staticmethod
    def level_one_commission(ordinal: int) -> int:
        """Amount for the referrer's `ordinal`-th level-1 commission (1-based)."""
        if ordinal < 1:
            raise ValueError(f"Invalid commission ordinal {ordinal}")
        if ordinal == 1:
            return int(LedgerConfig._get("FIRST_REFERRAL_COMMISSION"))
        return int(LedgerConfig._get("REPEAT_REFERRAL_COMMISSION"))

    @staticmethod
    def level_two_commission() -> int:
        return int(LedgerConfig._get("SECOND_LEVEL_COMMISSION"))

    # ---------------- tasks ----------------
    @staticmethod
    def task_cooldown() -> timedelta:
        return timedelta(days=LedgerConfig._get("TASK_COOLDOWN_DAYS"))

    @staticmethod
    def task_weekly_cap() -> int:
        return int(LedgerConfig._get("TASK_WEEKLY_CAP"))

    @staticmethod
    def task_window() -> timedelta:
        return timedelta(days=LedgerConfig._get("TASK_WEEKLY_WINDOW_DAYS"))

    # ---------------- payments ----------------
    @staticmethod
    def activation_fee() -> int:
        return int(LedgerConfig._get("ACTIVATION_FEE"))

    @staticmethod
    def pending_payment_ttl() -> timedelta:
        return timedelta(minutes=LedgerConfig._get("PENDING_PAYMENT_TTL_MINUTES"))
