"""Runtime observability helpers."""

from .rewards import RewardObservabilityStore, get_reward_store
from .tracing import configure_tracing, get_tracer

__all__ = ["RewardObservabilityStore", "configure_tracing", "get_reward_store", "get_tracer"]
