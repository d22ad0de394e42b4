from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerTelemetrySnapshot:
    awards: Dict[str, int]
    redemptions: Dict[str, int]
    adjustments: Dict[str, int]
    points: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": dict(self.awards),
            "redemptions": dict(self.redemptions),
            "adjustments": dict(self.adjustments),
            "points": dict(self.points),
        }


class LoyaltyLedgerTelemetry:
    """Count ledger outcomes for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._adjustments: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)

    def record_award(self, reason: str, points: int, *, changed: bool) -> None:
        with self._lock:
            if not changed:
                self._awards["noop"] += 1
                return
            self._awards["total"] += 1
            self._awards[f"reason:{reason}"] += 1
            self._points["awarded"] += points

    def record_redemption(self, requested: int, redeemed: int) -> None:
        with self._lock:
            if redeemed <= 0:
                self._redemptions["noop"] += 1
                return
            self._redemptions["total"] += 1
            if redeemed < requested:
                self._redemptions["partial"] += 1
            self._points["redeemed"] += redeemed

    def record_redemption_conflict(self) -> None:
        with self._lock:
            self._redemptions["conflicts"] += 1

    def record_adjustment(self, delta: int, *, rejected: bool = False) -> None:
        with self._lock:
            if rejected:
                self._adjustments["rejected"] += 1
                return
            self._adjustments["total"] += 1
            self._adjustments["credit" if delta > 0 else "debit"] += 1

    def snapshot(self) -> LedgerTelemetrySnapshot:
        with self._lock:
            return LedgerTelemetrySnapshot(
                awards=dict(self._awards),
                redemptions=dict(self._redemptions),
                adjustments=dict(self._adjustments),
                points=dict(self._points),
            )

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._redemptions.clear()
            self._adjustments.clear()
            self._points.clear()


_STORE = LoyaltyLedgerTelemetry()


def get_loyalty_telemetry() -> LoyaltyLedgerTelemetry:
    return _STORE


__all__ = ["get_loyalty_telemetry", "LoyaltyLedgerTelemetry", "LedgerTelemetrySnapshot"]
