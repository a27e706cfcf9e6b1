"""Balance reconciliation services."""

from .balance import BALANCE_CHECK_ERROR_SENTINEL, BalanceReconciler

__all__ = ["BALANCE_CHECK_ERROR_SENTINEL", "BalanceReconciler"]
