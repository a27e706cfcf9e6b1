"""In-memory reward fulfillment counters for runtime dashboards and alerts."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RewardEventLog:
    """Most recent noteworthy failures, kept for operators."""

    last_provisioning_failure_at: datetime | None = None
    last_provisioning_failure: str | None = None
    last_delivery_exhausted_at: datetime | None = None
    last_delivery_exhausted_claim: str | None = None
    last_invalid_transition_at: datetime | None = None
    last_invalid_transition: str | None = None


@dataclass
class RewardMetricsSnapshot:
    """Serializable snapshot returned to API consumers."""

    counters: Dict[str, Dict[str, int]]
    events: RewardEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "counters": self.counters,
            "events": {
                "last_provisioning_failure_at": _iso(self.events.last_provisioning_failure_at),
                "last_provisioning_failure": self.events.last_provisioning_failure,
                "last_delivery_exhausted_at": _iso(self.events.last_delivery_exhausted_at),
                "last_delivery_exhausted_claim": self.events.last_delivery_exhausted_claim,
                "last_invalid_transition_at": _iso(self.events.last_invalid_transition_at),
                "last_invalid_transition": self.events.last_invalid_transition,
            },
        }


@dataclass
class RewardObservabilityStore:
    """Tracks claim, supplier, delivery and balance-check counters."""

    _lock: Lock = field(default_factory=Lock)
    _counters: Dict[str, Counter] = field(
        default_factory=lambda: {
            "claims": Counter(),
            "supplier_purchases": Counter(),
            "deliveries": Counter(),
            "balance_checks": Counter(),
        }
    )
    _events: RewardEventLog = field(default_factory=RewardEventLog)

    def record_claim(self, outcome: str, *, replayed: bool = False) -> None:
        with self._lock:
            self._counters["claims"][outcome] += 1
            if replayed:
                self._counters["claims"]["replayed"] += 1

    def record_provisioning_failure(self, reason: str) -> None:
        with self._lock:
            self._events.last_provisioning_failure_at = _utcnow()
            self._events.last_provisioning_failure = reason

    def record_supplier_purchase(self, outcome: str) -> None:
        with self._lock:
            self._counters["supplier_purchases"][outcome] += 1

    def record_delivery(self, outcome: str, *, claim_id: str | None = None) -> None:
        with self._lock:
            self._counters["deliveries"][outcome] += 1
            if outcome == "exhausted":
                self._events.last_delivery_exhausted_at = _utcnow()
                self._events.last_delivery_exhausted_claim = claim_id

    def record_balance_check(self, status: str) -> None:
        with self._lock:
            self._counters["balance_checks"][status] += 1

    def record_invalid_transition(self, message: str) -> None:
        with self._lock:
            self._events.last_invalid_transition_at = _utcnow()
            self._events.last_invalid_transition = message

    def snapshot(self) -> RewardMetricsSnapshot:
        with self._lock:
            counters = {key: dict(counter) for key, counter in self._counters.items()}
            events_copy = RewardEventLog(**vars(self._events))
        return RewardMetricsSnapshot(counters=counters, events=events_copy)

    def reset(self) -> None:
        with self._lock:
            for counter in self._counters.values():
                counter.clear()
            self._events = RewardEventLog()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


_REWARD_STORE = RewardObservabilityStore()


def get_reward_store() -> RewardObservabilityStore:
    return _REWARD_STORE
