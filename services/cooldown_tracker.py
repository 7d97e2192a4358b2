#!/usr/bin/env python3
"""
=====================================================================
Cooldown Tracker
=====================================================================
In-memory, time-windowed record of which fingerprints fired an action
recently.

- may_fire / record_fired answer "may I act now?" and "I just acted"
- try_acquire / release guard the check and the eventual record together:
  the gate pessimistically marks a fingerprint in-flight before the action
  runs, so concurrent alerts sharing a fingerprint cannot both pass
- entries expire lazily on read; sweep() trims the map periodically

State is process-local and is not persisted. A restart forgets every
cooldown.
=====================================================================
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from prometheus_client import Gauge

logger = logging.getLogger(__name__)

METRIC_COOLDOWN_ENTRIES = Gauge(
    'remediator_cooldown_entries',
    'Number of fingerprints currently tracked by the cooldown tracker'
)


@dataclass
class CooldownEntry:
    fingerprint: str
    last_fired_at: Optional[float] = None
    in_flight: bool = False


class CooldownTracker:
    """Thread-safe map of fingerprint -> CooldownEntry."""

    def __init__(self):
        self._entries: Dict[str, CooldownEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, fingerprint: str) -> Optional[CooldownEntry]:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            return CooldownEntry(entry.fingerprint, entry.last_fired_at, entry.in_flight)

    @staticmethod
    def _window_open(entry: Optional[CooldownEntry], cooldown: float, now: float) -> bool:
        if entry is None or entry.last_fired_at is None:
            return True
        return now - entry.last_fired_at >= cooldown

    def may_fire(self, fingerprint: str, cooldown: float, now: float) -> bool:
        """True if no action has succeeded for this fingerprint within ``cooldown``."""
        with self._lock:
            return self._window_open(self._entries.get(fingerprint), cooldown, now)

    def record_fired(self, fingerprint: str, now: float) -> None:
        """Record a successful action at ``now``."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                entry = CooldownEntry(fingerprint)
                self._entries[fingerprint] = entry
            entry.last_fired_at = now
            METRIC_COOLDOWN_ENTRIES.set(len(self._entries))

    def try_acquire(self, fingerprint: str, cooldown: float, now: float) -> bool:
        """
        Atomically pass the gate and mark the fingerprint in-flight.

        Returns False if the cooldown window is still running or another
        action for the same fingerprint has not finished yet. Every True
        return must be paired with exactly one release().
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None and entry.in_flight:
                return False
            if not self._window_open(entry, cooldown, now):
                return False
            if entry is None:
                entry = CooldownEntry(fingerprint)
                self._entries[fingerprint] = entry
            entry.in_flight = True
            METRIC_COOLDOWN_ENTRIES.set(len(self._entries))
            return True

    def release(self, fingerprint: str, fired_at: Optional[float] = None) -> None:
        """
        Clear the in-flight marker set by try_acquire().

        With ``fired_at`` the action succeeded and the cooldown starts then.
        Without it the action failed: the previous last_fired_at is kept, and an
        entry created only for this attempt is removed again.
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return
            entry.in_flight = False
            if fired_at is not None:
                entry.last_fired_at = fired_at
            elif entry.last_fired_at is None:
                del self._entries[fingerprint]
            METRIC_COOLDOWN_ENTRIES.set(len(self._entries))

    def sweep(self, now: float, max_age: float) -> int:
        """
        Drop entries whose last action is at least ``max_age`` old.

        ``max_age`` must be the longest cooldown any policy uses, otherwise an
        entry could be removed while its window is still running. In-flight
        entries are never removed.
        """
        with self._lock:
            expired = [
                fp for fp, entry in self._entries.items()
                if not entry.in_flight
                and entry.last_fired_at is not None
                and now - entry.last_fired_at >= max_age
            ]
            for fp in expired:
                del self._entries[fp]
            METRIC_COOLDOWN_ENTRIES.set(len(self._entries))

        if expired:
            logger.debug(f"Swept {len(expired)} expired cooldown entries")
        return len(expired)


def start_cooldown_sweeper(
    tracker: CooldownTracker,
    max_age_fn: Callable[[], float],
    interval: float,
    stop_event: threading.Event,
    clock: Callable[[], float],
) -> threading.Thread:
    """Starts a daemon thread that sweeps expired cooldown entries."""

    def sweep_loop():
        logger.info(f"Cooldown sweeper started (interval: {interval}s)")
        while not stop_event.wait(interval):
            try:
                tracker.sweep(clock(), max_age_fn())
            except Exception as e:
                logger.error(f"Cooldown sweep failed: {e}", exc_info=True)
        logger.info("Cooldown sweeper stopped")

    thread = threading.Thread(target=sweep_loop, daemon=True, name="CooldownSweeper")
    thread.start()
    return thread
