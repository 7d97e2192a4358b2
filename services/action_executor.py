#!/usr/bin/env python3
"""
=====================================================================
Action Executor
=====================================================================
Performs exactly one action per invocation. The action kinds form a
closed set; each kind has one handler:

- delete_pod: render namespace/pod templates from the alert labels and
  delete the pod. A pod that is already gone counts as success.
- webhook: POST the alert as JSON to the configured URL.

Each handler raises ActionTransientFailure (retry) or
ActionTerminalFailure (give up). execute() retries transient failures
with exponential backoff and jitter, up to a bounded number of attempts.
Backoff waits end early when the cancel event is set (leadership lost).
=====================================================================
"""

import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

import requests
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Histogram
from urllib3.exceptions import HTTPError as TransportError

from alert_model import Alert
from cluster_client import PodDeleter
from policy_resolver import ActionKind, ActionPolicy

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_ACTIONS_TOTAL = Counter(
    'remediator_actions_total',
    'Actions executed, by final result',
    ['action', 'result']  # result: success, terminal, exhausted, cancelled
)

METRIC_ACTION_RETRIES = Counter(
    'remediator_action_retries_total',
    'Retries scheduled after a transient action failure',
    ['action']
)

METRIC_ACTION_LATENCY = Histogram(
    'remediator_action_attempt_latency_seconds',
    'Latency of a single action attempt',
    ['action'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

RESPONSE_PREVIEW_LENGTH = 200

# Kubernetes API statuses worth retrying. Authorization failures are
# included: RBAC bindings and token rotation are often eventually consistent.
RETRYABLE_API_STATUSES = frozenset({401, 403, 408, 429})


class ActionTransientFailure(Exception):
    """A failure that may succeed on retry."""
    pass


class ActionTerminalFailure(Exception):
    """A failure that will not succeed on retry."""
    pass


@dataclass
class ActionResult:
    success: bool
    attempts: int
    detail: str
    error: Optional[str] = None


_TEMPLATE_RE = re.compile(r'\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}')


def render_template(template: str, labels: Mapping[str, str]) -> str:
    """
    Substitute ``{{label}}`` references with alert label values.

    Raises:
        ActionTerminalFailure: If a referenced label is missing
    """
    def substitute(match):
        name = match.group(1)
        if name not in labels:
            raise ActionTerminalFailure(f"Template {template!r} references missing label '{name}'")
        return labels[name]

    return _TEMPLATE_RE.sub(substitute, template)


class ActionExecutor:
    """Dispatches a resolved policy to its handler and applies the retry policy."""

    def __init__(
        self,
        pod_deleter: Optional[PodDeleter] = None,
        http_session: Optional[requests.Session] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        webhook_timeout: float = 10
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.pod_deleter = pod_deleter
        self.http = http_session or requests.Session()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.webhook_timeout = webhook_timeout

        self._handlers: Dict[ActionKind, Callable[[ActionPolicy, Alert], str]] = {
            ActionKind.DELETE_POD: self._delete_pod,
            ActionKind.WEBHOOK: self._send_webhook,
        }

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based): half fixed, half jitter."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay / 2 + random.uniform(0, delay / 2)

    def execute(
        self,
        policy: ActionPolicy,
        alert: Alert,
        cancel_event: Optional[threading.Event] = None
    ) -> ActionResult:
        """
        Run the policy's action for ``alert`` with bounded retries.

        Never raises for action failures; the outcome is in the result.
        """
        action = policy.action_kind.value
        handler = self._handlers[policy.action_kind]
        waiter = cancel_event or threading.Event()
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            if waiter.is_set():
                METRIC_ACTIONS_TOTAL.labels(action=action, result='cancelled').inc()
                return ActionResult(False, attempt - 1, 'cancelled', last_error)

            start_time = time.time()
            try:
                detail = handler(policy, alert)
            except ActionTerminalFailure as e:
                METRIC_ACTION_LATENCY.labels(action=action).observe(time.time() - start_time)
                METRIC_ACTIONS_TOTAL.labels(action=action, result='terminal').inc()
                logger.error(f"{action} for policy '{policy.name}' failed permanently: {e}")
                return ActionResult(False, attempt, 'terminal', str(e))
            except ActionTransientFailure as e:
                METRIC_ACTION_LATENCY.labels(action=action).observe(time.time() - start_time)
                last_error = str(e)
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                METRIC_ACTION_RETRIES.labels(action=action).inc()
                logger.warning(
                    f"{action} attempt {attempt}/{self.max_attempts} failed. "
                    f"Retrying in {delay:.1f}s. Error: {e}"
                )
                if waiter.wait(delay):
                    METRIC_ACTIONS_TOTAL.labels(action=action, result='cancelled').inc()
                    logger.info(f"{action} for policy '{policy.name}' cancelled during backoff")
                    return ActionResult(False, attempt, 'cancelled', last_error)
                continue

            METRIC_ACTION_LATENCY.labels(action=action).observe(time.time() - start_time)
            METRIC_ACTIONS_TOTAL.labels(action=action, result='success').inc()
            return ActionResult(True, attempt, detail)

        METRIC_ACTIONS_TOTAL.labels(action=action, result='exhausted').inc()
        logger.error(
            f"{action} for policy '{policy.name}' failed after {self.max_attempts} attempts: {last_error}"
        )
        return ActionResult(False, self.max_attempts, 'exhausted', last_error)

    # =================================================================
    # HANDLERS
    # =================================================================

    def _delete_pod(self, policy: ActionPolicy, alert: Alert) -> str:
        params = policy.params
        namespace = render_template(params.namespace, alert.labels)
        name = render_template(params.pod, alert.labels)
        if not namespace or not name:
            raise ActionTerminalFailure(
                f"Rendered pod reference is incomplete (namespace={namespace!r}, pod={name!r})"
            )
        if self.pod_deleter is None:
            raise ActionTerminalFailure("No Kubernetes client configured for delete_pod")

        try:
            return self.pod_deleter.delete_pod(namespace, name, params.grace_period_seconds)
        except ApiException as e:
            message = f"Kubernetes API returned {e.status} deleting {namespace}/{name}: {e.reason}"
            if e.status is None or e.status in RETRYABLE_API_STATUSES or e.status >= 500:
                raise ActionTransientFailure(message) from e
            raise ActionTerminalFailure(message) from e
        except TransportError as e:
            raise ActionTransientFailure(f"Kubernetes API unreachable: {e}") from e

    def _send_webhook(self, policy: ActionPolicy, alert: Alert) -> str:
        params = policy.params
        url = render_template(params.url, alert.labels)
        headers = {'Content-Type': 'application/json'}
        for key, value in params.headers:
            headers[key] = render_template(value, alert.labels)

        try:
            response = self.http.post(
                url,
                json=alert.to_payload(),
                headers=headers,
                timeout=self.webhook_timeout
            )
        except requests.exceptions.Timeout as e:
            raise ActionTransientFailure(f"Webhook timeout after {self.webhook_timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ActionTransientFailure(f"Webhook connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            # Malformed URL, bad scheme and the like
            raise ActionTerminalFailure(f"Webhook request could not be sent: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            logger.info(f"Webhook delivered to {url} (status {status})")
            return f"http_{status}"

        body = response.text[:RESPONSE_PREVIEW_LENGTH]
        if status == 429 or status >= 500:
            raise ActionTransientFailure(f"Webhook server error: {status} - {body}")
        raise ActionTerminalFailure(f"Webhook rejected: {status} - {body}")
