"""Background workers."""

from .claim_recovery import ClaimRecoveryWorker, recover_stale_pending_claims

__all__ = ["ClaimRecoveryWorker", "recover_stale_pending_claims"]
