"""Claim coordination services."""

from .coordinator import ClaimCoordinator, ClaimRequest, ClaimResult, DeliveryRequest, DeliveryScheduler

__all__ = ["ClaimCoordinator", "ClaimRequest", "ClaimResult", "DeliveryRequest", "DeliveryScheduler"]
