#!/usr/bin/env python3
"""
=====================================================================
Leader Election
=====================================================================
Single-active-writer guarantee over a time-bound lease in Redis.

The lease is one key holding the holder identity with a millisecond
TTL. Acquire-or-renew and release are Lua scripts, so check-and-set is
atomic on the server:
- a free key is taken by whoever asks first
- the current holder extends its own lease
- nobody takes a lease another holder still owns

States:  candidate --acquired--> leader
         candidate/leader --held elsewhere / renew failed--> follower
         follower --acquired--> leader

Backend errors count as "not leader". The local view of leadership
carries its own deadline (renew start + lease duration, monotonic), so
is_leader() turns False on time even if the renewal thread stalls.
=====================================================================
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis
from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_IS_LEADER = Gauge(
    'remediator_leader',
    'Whether this instance currently holds the lease (1=leader, 0=not leader)'
)

METRIC_LEADER_TRANSITIONS = Counter(
    'remediator_leader_transitions_total',
    'Leadership state transitions',
    ['state']  # leader, follower
)

METRIC_LEASE_ERRORS = Counter(
    'remediator_lease_backend_errors_total',
    'Errors talking to the lease backend'
)

STATE_CANDIDATE = 'candidate'
STATE_LEADER = 'leader'
STATE_FOLLOWER = 'follower'

ACQUIRE_OR_RENEW_LUA_SCRIPT = """
local key = KEYS[1]
local holder = ARGV[1]
local ttl_ms = tonumber(ARGV[2])

local current = redis.call('GET', key)
if current == false then
    redis.call('SET', key, holder, 'PX', ttl_ms)
    return 1
end
if current == holder then
    redis.call('PEXPIRE', key, ttl_ms)
    return 1
end
return 0
"""

RELEASE_LUA_SCRIPT = """
local key = KEYS[1]
local holder = ARGV[1]

if redis.call('GET', key) == holder then
    redis.call('DEL', key)
    return 1
end
return 0
"""


class LeaseBackendError(Exception):
    """Raised when the lease backend cannot be reached or answers garbage."""
    pass


@dataclass
class LeaseState:
    holder_identity: str
    lease_expiry: float  # wall clock, seconds since epoch


class RedisLeaseBackend:
    """Lease record stored in a single Redis key."""

    def __init__(self, redis_client: redis.Redis, key: str):
        self.redis_client = redis_client
        self.key = key
        self._acquire_script = redis_client.register_script(ACQUIRE_OR_RENEW_LUA_SCRIPT)
        self._release_script = redis_client.register_script(RELEASE_LUA_SCRIPT)

    def try_acquire_or_renew(self, holder: str, ttl_seconds: float) -> bool:
        try:
            result = self._acquire_script(keys=[self.key], args=[holder, int(ttl_seconds * 1000)])
        except redis.exceptions.RedisError as e:
            raise LeaseBackendError(f"Lease acquire/renew failed: {e}") from e
        return int(result) == 1

    def release(self, holder: str) -> bool:
        try:
            result = self._release_script(keys=[self.key], args=[holder])
        except redis.exceptions.RedisError as e:
            raise LeaseBackendError(f"Lease release failed: {e}") from e
        return int(result) == 1

    def get_lease(self) -> Optional[LeaseState]:
        """Observe the current lease record, or None if nobody holds it."""
        try:
            pipe = self.redis_client.pipeline()
            pipe.get(self.key)
            pipe.pttl(self.key)
            holder, ttl_ms = pipe.execute()
        except redis.exceptions.RedisError as e:
            raise LeaseBackendError(f"Lease lookup failed: {e}") from e

        if holder is None or ttl_ms is None or ttl_ms < 0:
            return None
        if isinstance(holder, bytes):
            holder = holder.decode('utf-8')
        return LeaseState(holder_identity=holder, lease_expiry=time.time() + ttl_ms / 1000.0)


class LeaderElector:
    """
    Runs the candidate/leader/follower state machine for one identity.

    on_started_leading and on_stopped_leading are called synchronously on
    the thread that observed the transition.
    """

    def __init__(
        self,
        backend,
        identity: str,
        lease_duration: float = 10,
        renew_interval: Optional[float] = None,
        retry_interval: float = 2,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if renew_interval is None:
            renew_interval = lease_duration / 3.0
        if lease_duration <= 0 or renew_interval <= 0 or retry_interval <= 0:
            raise ValueError("Lease duration and intervals must be positive")
        # One missed renewal must not lose the lease.
        if 2 * renew_interval >= lease_duration:
            raise ValueError(
                f"renew_interval ({renew_interval}s) must be less than half "
                f"the lease duration ({lease_duration}s)"
            )

        self.backend = backend
        self.identity = identity
        self.lease_duration = lease_duration
        self.renew_interval = renew_interval
        self.retry_interval = retry_interval
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self._clock = clock

        self._lock = threading.Lock()
        self._state = STATE_CANDIDATE
        self._lease_deadline = 0.0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def is_leader(self) -> bool:
        """True only while this process holds a current, unexpired lease."""
        with self._lock:
            return self._state == STATE_LEADER and self._clock() < self._lease_deadline

    def current_lease(self) -> Optional[LeaseState]:
        try:
            return self.backend.get_lease()
        except LeaseBackendError as e:
            logger.warning(f"Could not observe lease: {e}")
            return None

    def _transition(self, new_state: str, deadline: float = 0.0) -> None:
        with self._lock:
            old_state = self._state
            self._state = new_state
            self._lease_deadline = deadline

        if old_state == new_state:
            return

        METRIC_LEADER_TRANSITIONS.labels(state=new_state).inc()
        METRIC_IS_LEADER.set(1 if new_state == STATE_LEADER else 0)
        logger.info(f"Leadership transition for {self.identity}: {old_state} -> {new_state}")

        callback = None
        if new_state == STATE_LEADER:
            callback = self.on_started_leading
        elif old_state == STATE_LEADER:
            callback = self.on_stopped_leading
        if callback is not None:
            try:
                callback()
            except Exception as e:
                logger.error(f"Leadership callback failed: {e}", exc_info=True)

    def try_acquire_or_renew(self) -> bool:
        """One acquisition/renewal round. Returns True if this process now leads."""
        started = self._clock()
        try:
            acquired = self.backend.try_acquire_or_renew(self.identity, self.lease_duration)
        except LeaseBackendError as e:
            METRIC_LEASE_ERRORS.inc()
            logger.warning(f"Lease backend error, assuming not leader: {e}")
            self._transition(STATE_FOLLOWER)
            return False

        if acquired:
            if started + self.lease_duration <= self._clock():
                # Renewal answer arrived after the lease it extended would have
                # run out locally; treat it as not acquired.
                logger.warning("Lease renewal took longer than the lease duration")
                self._transition(STATE_FOLLOWER)
                return False
            self._transition(STATE_LEADER, deadline=started + self.lease_duration)
            return True

        if self.state != STATE_FOLLOWER:
            lease = self.current_lease()
            holder = lease.holder_identity if lease else 'unknown'
            logger.info(f"Lease is held by {holder}; {self.identity} is following")
        self._transition(STATE_FOLLOWER)
        return False

    def release(self) -> None:
        """Give up leadership, deleting the lease if this process holds it."""
        was_leader = self.state == STATE_LEADER
        self._transition(STATE_FOLLOWER)
        if not was_leader:
            return
        try:
            if self.backend.release(self.identity):
                logger.info(f"Lease released by {self.identity}")
        except LeaseBackendError as e:
            logger.warning(f"Failed to release lease (it will expire on its own): {e}")

    def run(self) -> None:
        """Election loop; returns after stop() and releases the lease."""
        logger.info(
            f"Leader election started for {self.identity} "
            f"(lease: {self.lease_duration}s, renew: {self.renew_interval:.2f}s, "
            f"retry: {self.retry_interval}s)"
        )
        while not self._stop_event.is_set():
            leading = self.try_acquire_or_renew()
            interval = self.renew_interval if leading else self.retry_interval
            self._stop_event.wait(interval)

        self.release()
        logger.info("Leader election stopped")

    def start(self) -> threading.Thread:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="LeaderElection")
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
