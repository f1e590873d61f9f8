from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RedemptionSnapshot:
    initiations: Dict[str, int]
    finalizations: Dict[str, int]
    claims: Dict[str, int]
    sweeps: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "initiations": dict(self.initiations),
            "finalizations": dict(self.finalizations),
            "claims": dict(self.claims),
            "sweeps": dict(self.sweeps),
        }


class RedemptionObservabilityStore:
    """Count redemption, claim and sweep outcomes for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._initiations: Dict[str, int] = defaultdict(int)
        self._finalizations: Dict[str, int] = defaultdict(int)
        self._claims: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)

    def record_initiation(self, outcome: str) -> None:
        with self._lock:
            self._initiations["total"] += 1
            self._initiations[outcome] += 1

    def record_finalization(self, outcome: str) -> None:
        with self._lock:
            self._finalizations["total"] += 1
            self._finalizations[outcome] += 1

    def record_claim(self, outcome: str) -> None:
        with self._lock:
            self._claims["total"] += 1
            self._claims[outcome] += 1

    def record_sweep(self, *, released: int, refunded_points: int) -> None:
        with self._lock:
            self._sweeps["runs"] += 1
            self._sweeps["released"] += released
            self._sweeps["refunded_points"] += refunded_points

    def snapshot(self) -> RedemptionSnapshot:
        with self._lock:
            return RedemptionSnapshot(
                initiations=dict(self._initiations),
                finalizations=dict(self._finalizations),
                claims=dict(self._claims),
                sweeps=dict(self._sweeps),
            )

    def reset(self) -> None:
        with self._lock:
            self._initiations.clear()
            self._finalizations.clear()
            self._claims.clear()
            self._sweeps.clear()


_STORE = RedemptionObservabilityStore()


def get_redemption_store() -> RedemptionObservabilityStore:
    return _STORE


__all__ = ["get_redemption_store", "RedemptionObservabilityStore", "RedemptionSnapshot"]
