from earnings.exceptions import LedgerError
from earnings.ledger import LedgerStore
from earnings.referral_graph import ReferralGraph
from earnings.tasks import TaskEligibilityEngine
from earnings.commission import CommissionCascade
from earnings.reconciliation import PaymentReconciler
from earnings.payouts import WithdrawalPayoutService

__all__ = [
    "LedgerError",
    "LedgerStore",
    "ReferralGraph",
    "TaskEligibilityEngine",
    "CommissionCascade",
    "PaymentReconciler",
    "WithdrawalPayoutService",
]
