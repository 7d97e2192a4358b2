# =====================================================================
# Alert Remediator Pytest Configuration and Fixtures
# =====================================================================
# Shared fixtures and configuration for all tests
# =====================================================================

import os
import sys
import threading
import time
from unittest.mock import MagicMock, Mock

import pytest
import redis
from prometheus_client import REGISTRY

# Service modules import each other by bare name
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))

from alert_model import Alert  # noqa: E402
from leader_election import LeaseBackendError, LeaseState  # noqa: E402
from policy_resolver import (  # noqa: E402
    ActionKind,
    ActionPolicy,
    DeletePodParams,
    WebhookParams,
)


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Remove Flask exporter collectors from the default registry after each test.

    Apps built without an explicit registry register flask_* metrics
    globally; a second app would then fail with 'Duplicated timeseries'.
    Module-level remediator_* metrics are left alone.
    """
    yield

    collectors_to_remove = []
    for collector, names in list(REGISTRY._collector_to_names.items()):
        if any(name.startswith('flask_') for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass


# --- Time & Lease Fakes ---

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryLeaseBackend:
    """Lease backend with the same semantics as the Redis Lua scripts."""

    def __init__(self, clock):
        self.clock = clock
        self.holder = None
        self.expiry = 0.0
        self.fail = False
        self.calls = 0
        self._lock = threading.Lock()

    def _expired(self) -> bool:
        return self.holder is None or self.clock() >= self.expiry

    def try_acquire_or_renew(self, holder, ttl_seconds):
        self.calls += 1
        if self.fail:
            raise LeaseBackendError("backend unavailable")
        with self._lock:
            if self._expired() or self.holder == holder:
                self.holder = holder
                self.expiry = self.clock() + ttl_seconds
                return True
            return False

    def release(self, holder):
        if self.fail:
            raise LeaseBackendError("backend unavailable")
        with self._lock:
            if self.holder == holder:
                self.holder = None
                return True
            return False

    def get_lease(self):
        if self.fail:
            raise LeaseBackendError("backend unavailable")
        with self._lock:
            if self._expired():
                return None
            return LeaseState(holder_identity=self.holder, lease_expiry=time.time() + self.expiry - self.clock())


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def lease_backend(fake_clock):
    return InMemoryLeaseBackend(fake_clock)


# --- Mock Configuration ---

@pytest.fixture
def mock_config():
    """Mock configuration object for the remediator"""
    config = Mock()

    config.POD_NAME = "remediator-test-01"
    config.SERVER_HOST = "127.0.0.1"
    config.SERVER_PORT = 9095

    config.REDIS_HOST = "localhost"
    config.REDIS_PORT = 6379

    config.LEASE_NAME = "alert-deleter"
    config.LEASE_KEY = "remediator:lease:alert-deleter"
    config.LEASE_DURATION = 10
    config.LEASE_RENEW_INTERVAL = 3
    config.LEASE_RETRY_INTERVAL = 2

    config.POLICY_FILE = ""
    config.POLICY_RELOAD_INTERVAL = 0
    config.ALERT_NAMES = ["PodCrashLooping"]
    config.DEFAULT_COOLDOWN = 300.0

    config.ACTION_MAX_ATTEMPTS = 3
    config.WORKER_THREADS = 4
    config.COOLDOWN_SWEEP_INTERVAL = 60
    config.ALERTMANAGER_URL = ""

    config.VAULT_ADDR = "http://localhost:8200"
    config.VAULT_ROLE_ID = "test-role"
    config.VAULT_SECRET_ID_FILE = "/tmp/vault_secret_id"
    config.VAULT_SECRETS_PATH = "secret/remediator"
    config.VAULT_TOKEN_RENEW_THRESHOLD = 3600
    config.VAULT_RENEW_CHECK_INTERVAL = 300

    return config


@pytest.fixture
def mock_redis_client():
    """Mock Redis client"""
    client = MagicMock(spec=redis.Redis)
    client.ping.return_value = True
    client.get.return_value = None
    client.pipeline.return_value = MagicMock()
    return client


@pytest.fixture
def mock_vault_client():
    """Mock Vault client"""
    vault = MagicMock()

    vault.is_authenticated.return_value = True
    vault.auth.approle.login.return_value = {
        "auth": {"client_token": "test-token", "lease_duration": 3600}
    }
    vault.secrets.kv.v2.read_secret_version.return_value = {
        "data": {
            "data": {
                "REDIS_PASS_CURRENT": "redis_password",
                "REDIS_PASS_NEXT": "redis_password_next",
                "INGEST_API_KEY": "test-api-key-123",
            }
        }
    }
    vault.auth.token.lookup_self.return_value = {"data": {"ttl": 7200, "renewable": True}}
    vault.auth.token.renew_self.return_value = {"auth": {"lease_duration": 7200}}

    return vault


# --- Sample Data Fixtures ---

@pytest.fixture
def sample_alert_dict():
    """One alert as sent in an Alertmanager webhook notification"""
    return {
        "status": "firing",
        "labels": {
            "alertname": "PodCrashLooping",
            "pod": "worker-7",
            "namespace": "prod",
            "severity": "critical",
        },
        "annotations": {"summary": "worker-7 is crash looping"},
        "startsAt": "2025-11-08T12:00:00.123456789Z",
        "endsAt": "0001-01-01T00:00:00Z",
        "generatorURL": "http://prometheus.example.com/graph?g0.expr=up",
        "fingerprint": "",
    }


@pytest.fixture
def sample_notification(sample_alert_dict):
    """Full Alertmanager webhook notification"""
    return {
        "version": "4",
        "groupKey": "{}:{alertname=\"PodCrashLooping\"}",
        "status": "firing",
        "receiver": "remediator",
        "groupLabels": {"alertname": "PodCrashLooping"},
        "commonLabels": {"alertname": "PodCrashLooping"},
        "commonAnnotations": {},
        "externalURL": "http://alertmanager.example.com",
        "alerts": [sample_alert_dict],
    }


@pytest.fixture
def sample_alert(sample_alert_dict):
    return Alert.from_dict(sample_alert_dict)


@pytest.fixture
def delete_pod_policy():
    return ActionPolicy(
        name="restart-crashlooping",
        match_labels={"alertname": "PodCrashLooping"},
        action_kind=ActionKind.DELETE_POD,
        params=DeletePodParams(namespace="{{namespace}}", pod="{{pod}}"),
        cooldown=600.0,
    )


@pytest.fixture
def webhook_policy():
    return ActionPolicy(
        name="forward-everything-else",
        match_labels={},
        action_kind=ActionKind.WEBHOOK,
        params=WebhookParams(url="https://hooks.example.com/alerts", headers=(("X-Team", "{{severity}}"),)),
        cooldown=300.0,
    )


@pytest.fixture
def sample_policy_document():
    """Policy file contents as JSON-compatible data"""
    return {
        "policies": [
            {
                "name": "restart-crashlooping",
                "match_labels": {"alertname": "PodCrashLooping"},
                "action": "delete_pod",
                "params": {"namespace": "{{namespace}}", "pod": "{{pod}}"},
                "cooldown": "10m",
            },
            {
                "name": "forward-everything-else",
                "match_labels": {},
                "action": "webhook",
                "params": {"url": "https://hooks.example.com/alerts"},
                "cooldown": 300,
            },
        ]
    }


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (requires real services)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (>1 second)"
    )


# --- Helper Functions ---

def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll ``predicate`` until it returns truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.message:
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
