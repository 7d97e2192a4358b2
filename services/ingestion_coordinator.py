#!/usr/bin/env python3
"""
=====================================================================
Ingestion Coordinator
=====================================================================
Takes decoded alert batches and, for each alert independently:

    fingerprint -> status filter -> policy resolve -> cooldown gate
        -> leadership re-check -> execute -> record cooldown on success

Only runs while started (by the leader elector) and while the elector
reports current leadership. Alerts in a batch run concurrently on a
bounded worker pool; the cooldown gate keeps alerts that share a
fingerprint from acting twice. One alert's failure never affects its
siblings.
=====================================================================
"""

import logging
import threading
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from prometheus_client import Counter

from action_executor import ActionExecutor
from alert_fingerprint import resolve_fingerprint
from alert_model import Alert
from cooldown_tracker import CooldownTracker
from logging_utils import LogContext
from policy_resolver import ActionKind, PolicyResolver

logger = logging.getLogger(__name__)

METRIC_ALERTS_PROCESSED = Counter(
    'remediator_alerts_processed_total',
    'Alerts processed by the coordinator, by outcome',
    ['outcome']
)

OUTCOME_NOT_LEADER = 'not_leader'
OUTCOME_NOT_FIRING = 'not_firing'
OUTCOME_NO_MATCH = 'no_match'
OUTCOME_SUPPRESSED = 'suppressed'
OUTCOME_SUCCEEDED = 'succeeded'
OUTCOME_FAILED = 'failed'
OUTCOME_ERROR = 'error'

ACTION_LABEL_VALUES = frozenset(k.value for k in ActionKind)


class IngestionCoordinator:
    """Per-alert decision pipeline, gated on leadership."""

    def __init__(
        self,
        resolver: PolicyResolver,
        cooldowns: CooldownTracker,
        executor: ActionExecutor,
        is_leader: Callable[[], bool],
        max_workers: int = 8,
        clock: Callable[[], float] = time.monotonic
    ):
        self.resolver = resolver
        self.cooldowns = cooldowns
        self.executor = executor
        self._is_leader = is_leader
        self.max_workers = max_workers
        self._clock = clock

        self._lock = threading.Lock()
        self._running = False
        self._pool: Optional[ThreadPoolExecutor] = None
        self._cancel_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._running

    def may_process(self) -> bool:
        """Started by the elector and still holding an unexpired lease."""
        return self._running and self._is_leader()

    def start(self) -> None:
        """Begin accepting work. Called when leadership is acquired."""
        with self._lock:
            if self._running:
                return
            self._cancel_event = threading.Event()
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="AlertWorker")
            self._running = True
        logger.info(f"Ingestion coordinator started ({self.max_workers} workers)")

    def stop(self) -> None:
        """
        Stop scheduling immediately. Called when leadership is lost.

        Queued alerts are dropped; in-flight actions are told to give up at
        their next retry point but may still complete.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._cancel_event.set()
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Ingestion coordinator stopped")

    def submit_batch(self, alerts: Sequence[Alert], correlation_id: Optional[str] = None) -> int:
        """
        Schedule a batch for background processing.

        Returns:
            Number of alerts scheduled (0 when not allowed to process)
        """
        with self._lock:
            pool = self._pool
            if pool is None or not self.may_process():
                return 0
            for alert in alerts:
                pool.submit(self._process_in_context, alert, correlation_id)
        return len(alerts)

    def process_batch(self, alerts: Sequence[Alert], correlation_id: Optional[str] = None) -> List[str]:
        """Process a batch and wait for every alert. Returns outcomes in input order."""
        with self._lock:
            pool = self._pool
        if pool is None or not self.may_process():
            return [self._count(OUTCOME_NOT_LEADER) for _ in alerts]

        futures = []
        for alert in alerts:
            try:
                futures.append(pool.submit(self._process_in_context, alert, correlation_id))
            except RuntimeError:
                # Pool shut down under us: leadership was lost mid-batch.
                futures.append(None)

        outcomes = []
        for future in futures:
            if future is None:
                outcomes.append(self._count(OUTCOME_NOT_LEADER))
                continue
            try:
                outcomes.append(future.result())
            except CancelledError:
                outcomes.append(self._count(OUTCOME_NOT_LEADER))
        return outcomes

    def _process_in_context(self, alert: Alert, correlation_id: Optional[str]) -> str:
        with LogContext.bind(correlation_id=correlation_id):
            return self.process_alert(alert)

    def _count(self, outcome: str) -> str:
        METRIC_ALERTS_PROCESSED.labels(outcome=outcome).inc()
        return outcome

    def process_alert(self, alert: Alert) -> str:
        """Run the decision pipeline for one alert. Never raises."""
        try:
            fp = resolve_fingerprint(alert)
            with LogContext.bind(fingerprint=fp):
                return self._count(self._decide_and_act(alert, fp))
        except Exception as e:
            logger.error(f"Unhandled error processing alert {alert.alertname}: {e}", exc_info=True)
            return self._count(OUTCOME_ERROR)

    def _decide_and_act(self, alert: Alert, fp: str) -> str:
        if not self.may_process():
            return OUTCOME_NOT_LEADER

        if not alert.is_firing:
            logger.debug(f"Skipping {alert.status} alert {alert.alertname}")
            return OUTCOME_NOT_FIRING

        policy = self.resolver.resolve(alert.labels)
        if policy is None:
            action = alert.labels.get('action')
            if action is not None and action not in ACTION_LABEL_VALUES:
                logger.warning(f"Unknown action '{action}' on alert {alert.alertname}, no policy applied")
            else:
                logger.debug(f"No policy matches alert {alert.alertname}")
            return OUTCOME_NO_MATCH

        if not self.cooldowns.try_acquire(fp, policy.cooldown, self._clock()):
            logger.info(
                f"Alert {alert.alertname} suppressed by cooldown "
                f"(policy '{policy.name}', {policy.cooldown:.0f}s)"
            )
            return OUTCOME_SUPPRESSED

        fired_at = None
        try:
            if not self.may_process():
                return OUTCOME_NOT_LEADER

            logger.info(f"Alert {alert.alertname} matched policy '{policy.name}' -> {policy.action_kind.value}")
            result = self.executor.execute(policy, alert, self._cancel_event)
            if result.success:
                fired_at = self._clock()
                logger.info(
                    f"Action {policy.action_kind.value} succeeded for {alert.alertname} "
                    f"after {result.attempts} attempt(s): {result.detail}"
                )
                return OUTCOME_SUCCEEDED

            logger.warning(
                f"Action {policy.action_kind.value} failed for {alert.alertname} "
                f"({result.detail}); cooldown not recorded: {result.error}"
            )
            return OUTCOME_FAILED
        finally:
            self.cooldowns.release(fp, fired_at=fired_at)
