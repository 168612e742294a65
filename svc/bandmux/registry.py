from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Set
from . import errors
from .compatibility import Conflict, can_enable
from .models import SignalType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureChange:
    """A device feature that must be switched on or off after a registry mutation."""
    signal: SignalType
    enabled: bool


class SubscriptionRegistry:
    """
    Per-connection subscription table plus the device-wide active feature set.

    A feature is active while it has at least one subscriber or at least one
    explicit enable. Every mutation validates and applies under a single lock
    and returns the feature transitions the caller must push to the device;
    callers do that outside the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Set[SignalType]] = {}
        self._subscribers: Dict[SignalType, Set[str]] = {s: set() for s in SignalType}
        self._enablers: Dict[SignalType, Set[str]] = {s: set() for s in SignalType}

    def _active_locked(self) -> Set[SignalType]:
        return {s for s in SignalType if self._subscribers[s] or self._enablers[s]}

    def _check_locked(self, signal: SignalType) -> bool:
        """Raise errors.Conflict if ``signal`` may not be enabled. Returns whether it was already active."""
        active = self._active_locked()
        verdict = can_enable(signal, active)
        if isinstance(verdict, Conflict):
            raise errors.Conflict(verdict.reason, conflict_with=verdict.with_signal.value)
        return signal in active

    # write

    def subscribe(self, connection_id: str, signal: SignalType) -> List[FeatureChange]:
        with self._lock:
            was_active = self._check_locked(signal)
            self._subscriptions.setdefault(connection_id, set()).add(signal)
            self._subscribers[signal].add(connection_id)
        if was_active:
            return []
        logger.info(f"Feature {signal.value} enabled by subscription from {connection_id}")
        return [FeatureChange(signal, True)]

    def unsubscribe(self, connection_id: str, signal: SignalType) -> List[FeatureChange]:
        with self._lock:
            held = self._subscriptions.get(connection_id)
            if not held or signal not in held:
                return []
            held.discard(signal)
            self._subscribers[signal].discard(connection_id)
            if self._subscribers[signal]:
                return []
            # last subscriber gone: the feature goes off regardless of explicit enables
            self._enablers[signal].clear()
        logger.info(f"Feature {signal.value} disabled, last subscriber {connection_id} left")
        return [FeatureChange(signal, False)]

    def enable(self, connection_id: str, signal: SignalType) -> List[FeatureChange]:
        with self._lock:
            was_active = self._check_locked(signal)
            self._enablers[signal].add(connection_id)
        if was_active:
            return []
        logger.info(f"Feature {signal.value} enabled by {connection_id}")
        return [FeatureChange(signal, True)]

    def disable(self, signal: SignalType) -> List[FeatureChange]:
        with self._lock:
            if not (self._subscribers[signal] or self._enablers[signal]):
                return []
            self._enablers[signal].clear()
            if self._subscribers[signal]:
                return []
        logger.info(f"Feature {signal.value} disabled")
        return [FeatureChange(signal, False)]

    def remove_connection(self, connection_id: str) -> List[FeatureChange]:
        """Drop every subscription and explicit enable held by a connection."""
        changes: List[FeatureChange] = []
        with self._lock:
            before = self._active_locked()
            held = self._subscriptions.pop(connection_id, set())
            for signal in held:
                self._subscribers[signal].discard(connection_id)
                if not self._subscribers[signal]:
                    self._enablers[signal].clear()
            for signal in SignalType:
                self._enablers[signal].discard(connection_id)
            after = self._active_locked()
            for signal in SignalType:
                if signal in before and signal not in after:
                    changes.append(FeatureChange(signal, False))
        if changes:
            names = ", ".join(c.signal.value for c in changes)
            logger.info(f"Connection {connection_id} cleanup disabled: {names}")
        return changes

    # read

    def subscriptions_of(self, connection_id: str) -> FrozenSet[SignalType]:
        with self._lock:
            return frozenset(self._subscriptions.get(connection_id, ()))

    def subscribers_of(self, signal: SignalType) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._subscribers[signal])

    def active_features(self) -> List[SignalType]:
        with self._lock:
            active = self._active_locked()
        return [s for s in SignalType if s in active]

    def is_active(self, signal: SignalType) -> bool:
        with self._lock:
            return bool(self._subscribers[signal] or self._enablers[signal])

    def subscriber_counts(self) -> Dict[str, int]:
        with self._lock:
            return {s.value: len(self._subscribers[s]) for s in SignalType}
