#!/usr/bin/env python3
"""
=====================================================================
Policy Resolver
=====================================================================
Maps an alert's labels to the single action policy that applies.

- Policies are evaluated in declaration order; the first match wins
- A policy matches iff every key in match_labels is present in the
  alert labels with an equal value. A null expected value means
  "label must be absent" (the only special value)
- An empty match_labels matches every alert and belongs last; the
  resolver never reorders policies
- The table is an immutable tuple, swapped wholesale on reload

Policy file format (JSON):

    {
      "policies": [
        {
          "name": "restart-crashlooping",
          "match_labels": {"alertname": "PodCrashLooping"},
          "action": "delete_pod",
          "params": {"namespace": "{{namespace}}", "pod": "{{pod}}"},
          "cooldown": "10m"
        },
        {
          "name": "forward-everything-else",
          "match_labels": {},
          "action": "webhook",
          "params": {"url": "https://hooks.example.com/alerts",
                     "headers": {"X-Team": "{{team}}"}},
          "cooldown": 300
        }
      ]
    }
=====================================================================
"""

import json
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

METRIC_POLICIES_LOADED = Gauge(
    'remediator_policies_loaded',
    'Number of action policies in the active table'
)

METRIC_POLICY_RELOADS = Counter(
    'remediator_policy_reloads_total',
    'Policy table reload attempts',
    ['status']  # success, fail
)

DEFAULT_COOLDOWN_SECONDS = 300.0


class ConfigurationError(Exception):
    """Raised for malformed configuration; fatal at startup."""
    pass


class ActionKind(str, Enum):
    DELETE_POD = 'delete_pod'
    WEBHOOK = 'webhook'


@dataclass(frozen=True)
class DeletePodParams:
    namespace: str
    pod: str
    grace_period_seconds: Optional[int] = None


@dataclass(frozen=True)
class WebhookParams:
    url: str
    headers: Tuple[Tuple[str, str], ...] = ()


ActionParams = Union[DeletePodParams, WebhookParams]


@dataclass(frozen=True)
class ActionPolicy:
    name: str
    match_labels: Mapping[str, Optional[str]]
    action_kind: ActionKind
    params: ActionParams
    cooldown: float = DEFAULT_COOLDOWN_SECONDS

    def matches(self, labels: Mapping[str, str]) -> bool:
        for key, expected in self.match_labels.items():
            if expected is None:
                if key in labels:
                    return False
            elif labels.get(key) != expected:
                return False
        return True


# =====================================================================
# PARSING
# =====================================================================

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and Go-style strings such as "90s", "5m",
    "1h30m".

    Raises:
        ConfigurationError: On unparseable, non-finite or negative values
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigurationError("Duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ConfigurationError(f"Invalid duration: {value!r}")
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if not math.isfinite(seconds):
        raise ConfigurationError(f"Duration must be finite: {value!r}")
    if seconds < 0:
        raise ConfigurationError(f"Duration cannot be negative: {value!r}")
    return seconds


def _require_str(params: Dict[str, Any], key: str, where: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{where}: params.{key} is required and must be a string")
    return value


def _parse_params(kind: ActionKind, params: Any, where: str) -> ActionParams:
    if not isinstance(params, dict):
        raise ConfigurationError(f"{where}: params must be an object")

    if kind is ActionKind.DELETE_POD:
        grace = params.get('grace_period_seconds')
        if grace is not None and (isinstance(grace, bool) or not isinstance(grace, int) or grace < 0):
            raise ConfigurationError(f"{where}: params.grace_period_seconds must be a non-negative integer")
        return DeletePodParams(
            namespace=_require_str(params, 'namespace', where),
            pod=_require_str(params, 'pod', where),
            grace_period_seconds=grace,
        )

    headers = params.get('headers') or {}
    if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
        raise ConfigurationError(f"{where}: params.headers must map strings to strings")
    return WebhookParams(
        url=_require_str(params, 'url', where),
        headers=tuple(headers.items()),
    )


def parse_policy(raw: Any, index: int) -> ActionPolicy:
    where = f"policies[{index}]"
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: must be an object")

    name = raw.get('name') or f"policy-{index}"
    if not isinstance(name, str):
        raise ConfigurationError(f"{where}: name must be a string")
    where = f"{where} ({name})"

    match_labels = raw.get('match_labels', {})
    if not isinstance(match_labels, dict):
        raise ConfigurationError(f"{where}: match_labels must be an object")
    for key, value in match_labels.items():
        if not isinstance(key, str) or not (value is None or isinstance(value, str)):
            raise ConfigurationError(f"{where}: match_labels must map strings to strings or null")

    try:
        kind = ActionKind(raw.get('action'))
    except (ValueError, TypeError):
        valid = ', '.join(k.value for k in ActionKind)
        raise ConfigurationError(f"{where}: unknown action {raw.get('action')!r} (expected one of: {valid})")

    return ActionPolicy(
        name=name,
        match_labels=dict(match_labels),
        action_kind=kind,
        params=_parse_params(kind, raw.get('params'), where),
        cooldown=parse_duration(raw.get('cooldown', DEFAULT_COOLDOWN_SECONDS)),
    )


def parse_policies(document: Any) -> Tuple[ActionPolicy, ...]:
    """
    Parse a policy document into an ordered, immutable table.

    Raises:
        ConfigurationError: If the document or any policy is malformed
    """
    if isinstance(document, dict):
        raw_policies = document.get('policies')
    else:
        raw_policies = document
    if not isinstance(raw_policies, list):
        raise ConfigurationError("Policy document must contain a 'policies' array")

    policies = tuple(parse_policy(raw, i) for i, raw in enumerate(raw_policies))

    names = [p.name for p in policies]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate policy names: {duplicates}")
    return policies


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


def load_policy_file(path: str) -> Tuple[ActionPolicy, ...]:
    """Read and parse a JSON policy file."""
    try:
        with open(path, 'r') as f:
            document = json.load(f, parse_constant=_reject_constant)
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file {path}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"Policy file {path} is not valid JSON: {e}") from e
    return parse_policies(document)


def policies_from_alert_names(
    alert_names: Iterable[str],
    cooldown: float = DEFAULT_COOLDOWN_SECONDS
) -> Tuple[ActionPolicy, ...]:
    """
    Build label-driven policies for a list of alert names.

    For each name: an alert labelled ``action=webhook`` is forwarded to the
    URL in its ``webhook_url`` label; an alert labelled ``action=delete_pod``
    or without an ``action`` label has the pod in its ``pod``/``namespace``
    labels deleted. Any other ``action`` value matches nothing and is
    reported as an unknown action when the alert is processed.
    """
    policies: List[ActionPolicy] = []
    for name in alert_names:
        name = name.strip()
        if not name:
            continue
        policies.append(ActionPolicy(
            name=f"{name}:webhook",
            match_labels={'alertname': name, 'action': ActionKind.WEBHOOK.value},
            action_kind=ActionKind.WEBHOOK,
            params=WebhookParams(url='{{webhook_url}}'),
            cooldown=cooldown,
        ))
        for action_label in (ActionKind.DELETE_POD.value, None):
            policies.append(ActionPolicy(
                name=f"{name}:delete_pod" if action_label else f"{name}:default",
                match_labels={'alertname': name, 'action': action_label},
                action_kind=ActionKind.DELETE_POD,
                params=DeletePodParams(namespace='{{namespace}}', pod='{{pod}}'),
                cooldown=cooldown,
            ))
    return tuple(policies)


# =====================================================================
# RESOLVER
# =====================================================================

class PolicyResolver:
    """
    Holds the current policy table and resolves alerts against it.

    Lookups read a single reference to an immutable tuple, so a concurrent
    reload can never produce a torn read.
    """

    def __init__(
        self,
        policies: Sequence[ActionPolicy] = (),
        loader: Optional[Callable[[], Sequence[ActionPolicy]]] = None
    ):
        self._table: Tuple[ActionPolicy, ...] = tuple(policies)
        self._loader = loader
        self._reload_lock = threading.Lock()
        METRIC_POLICIES_LOADED.set(len(self._table))

    @property
    def policies(self) -> Tuple[ActionPolicy, ...]:
        return self._table

    def resolve(self, labels: Mapping[str, str]) -> Optional[ActionPolicy]:
        """Return the first policy matching ``labels``, or None."""
        for policy in self._table:
            if policy.matches(labels):
                return policy
        return None

    def max_cooldown(self) -> float:
        return max((p.cooldown for p in self._table), default=0.0)

    def replace(self, policies: Sequence[ActionPolicy]) -> None:
        """Swap in a new table."""
        self._table = tuple(policies)
        METRIC_POLICIES_LOADED.set(len(self._table))

    def reload(self) -> int:
        """
        Rebuild the table from the configured loader.

        On failure the current table stays active and the error is re-raised.

        Returns:
            Number of policies now active

        Raises:
            ConfigurationError: If the loader fails or is not configured
        """
        if self._loader is None:
            raise ConfigurationError("No policy source configured for reload")

        with self._reload_lock:
            start_time = time.time()
            try:
                policies = self._loader()
            except ConfigurationError as e:
                METRIC_POLICY_RELOADS.labels(status='fail').inc()
                logger.error(f"Policy reload failed, keeping {len(self._table)} active policies: {e}")
                raise

            self.replace(policies)
            METRIC_POLICY_RELOADS.labels(status='success').inc()
            logger.info(
                f"Policy reload complete in {time.time() - start_time:.3f}s. "
                f"Policies: {len(self._table)}"
            )
            return len(self._table)


def start_policy_reloader(
    resolver: PolicyResolver,
    interval: float,
    stop_event: threading.Event
) -> threading.Thread:
    """Starts a background thread that reloads policies periodically."""

    def reload_loop():
        logger.info(f"Policy reloader thread started. Reloading every {interval}s.")
        while not stop_event.wait(interval):
            try:
                resolver.reload()
            except ConfigurationError:
                pass  # logged by reload()
        logger.info("Policy reloader thread stopped.")

    thread = threading.Thread(target=reload_loop, daemon=True, name="PolicyReloader")
    thread.start()
    return thread
