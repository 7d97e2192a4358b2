# =====================================================================
# Alert Remediator - Service Unit Tests
# =====================================================================
# Tests for remediator_service.py: configuration, wiring, the Flask
# endpoints and signal handling.
# Run with: pytest tests/test_remediator_service.py -v
# =====================================================================

import json
import signal
from unittest.mock import MagicMock, Mock, patch

import pytest
import redis
from prometheus_client import CollectorRegistry

from action_executor import ActionExecutor
from alert_fingerprint import fingerprint
from cluster_client import POD_DELETED
from conftest import InMemoryLeaseBackend, wait_for
from policy_resolver import ConfigurationError, PolicyResolver
from remediator_service import (
    Config,
    Remediator,
    build_remediator,
    create_app,
    make_policy_loader,
    setup_signal_handlers,
)

pytestmark = pytest.mark.unit

API_KEY = "test-api-key-123"
AUTH = {"X-API-KEY": API_KEY}

CONFIG_ENV_VARS = [
    "POD_NAME", "SERVER_PORT", "POLICY_FILE", "ALERT_NAMES", "DEFAULT_COOLDOWN",
    "LEASE_NAME", "LEASE_KEY_PREFIX", "LEASE_DURATION", "LEASE_RENEW_INTERVAL", "LEASE_RETRY_INTERVAL",
    "ACTION_MAX_ATTEMPTS", "WORKER_THREADS", "POLICY_RELOAD_INTERVAL", "ALERTMANAGER_URL",
    "POLL_INTERVAL", "VAULT_ADDR", "VAULT_ROLE_ID", "REDIS_PASSWORD", "REDIS_PASSWORD_NEXT",
    "INGEST_API_KEY", "KUBERNETES_ENABLED",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# --- Configuration ---

class TestConfig:

    def test_defaults(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "PodCrashLooping, DiskFull")

        config = Config()

        assert config.ALERT_NAMES == ["PodCrashLooping", "DiskFull"]
        assert config.SERVER_PORT == 9095
        assert config.LEASE_KEY == "remediator:lease:alert-deleter"
        assert config.LEASE_DURATION == 10
        assert config.LEASE_RENEW_INTERVAL == pytest.approx(10 / 3)
        assert config.DEFAULT_COOLDOWN == 300
        assert config.ACTION_MAX_ATTEMPTS == 3
        assert config.POD_NAME.startswith("remediator-")

    def test_duration_strings(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv("DEFAULT_COOLDOWN", "15m")
        assert Config().DEFAULT_COOLDOWN == 900

    @pytest.mark.parametrize("value", ["nan", "inf"])
    def test_non_finite_default_cooldown(self, clean_env, value):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv("DEFAULT_COOLDOWN", value)
        with pytest.raises(ConfigurationError, match="finite"):
            Config()

    def test_policy_source_required(self, clean_env):
        with pytest.raises(ConfigurationError, match="POLICY_FILE or ALERT_NAMES"):
            Config()

    def test_renew_interval_must_be_under_half_the_lease(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv("LEASE_DURATION", "10")
        clean_env.setenv("LEASE_RENEW_INTERVAL", "5")
        with pytest.raises(ConfigurationError, match="less than half"):
            Config()

    def test_non_numeric_value(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv("SERVER_PORT", "http")
        with pytest.raises(ConfigurationError, match="Invalid configuration value"):
            Config()

    @pytest.mark.parametrize("name,value", [
        ("SERVER_PORT", "70000"),
        ("ACTION_MAX_ATTEMPTS", "0"),
        ("WORKER_THREADS", "0"),
        ("POLICY_RELOAD_INTERVAL", "-1"),
    ])
    def test_out_of_range(self, clean_env, name, value):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv(name, value)
        with pytest.raises(ConfigurationError):
            Config()

    def test_vault_requires_role(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "X")
        clean_env.setenv("VAULT_ADDR", "http://vault:8200")
        with pytest.raises(ConfigurationError, match="VAULT_ROLE_ID"):
            Config()

    def test_policy_loader_prefers_file(self, clean_env, tmp_path, sample_policy_document):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps(sample_policy_document))
        clean_env.setenv("POLICY_FILE", str(path))
        clean_env.setenv("ALERT_NAMES", "Ignored")

        policies = make_policy_loader(Config())()

        assert [p.name for p in policies] == ["restart-crashlooping", "forward-everything-else"]

    def test_policy_loader_from_alert_names(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "PodCrashLooping")
        clean_env.setenv("DEFAULT_COOLDOWN", "60")

        policies = make_policy_loader(Config())()

        assert len(policies) == 3
        assert all(p.cooldown == 60 for p in policies)


# --- Wiring ---

class TestBuildRemediator:

    @pytest.fixture
    def config(self, clean_env):
        clean_env.setenv("ALERT_NAMES", "PodCrashLooping")
        clean_env.setenv("INGEST_API_KEY", API_KEY)
        clean_env.setenv("REDIS_PASSWORD", "current")
        return Config()

    def test_builds_components(self, config, mock_redis_client):
        with patch("remediator_service.get_redis_client", return_value=mock_redis_client) as get_client, \
                patch("remediator_service.load_kubernetes_config"), \
                patch("remediator_service.PodDeleter") as deleter_cls:
            remediator = build_remediator(config)

        assert get_client.call_args.kwargs["password_current"] == "current"
        assert remediator.secrets["INGEST_API_KEY"] == API_KEY
        assert len(remediator.resolver.policies) == 3
        deleter_cls.assert_called_once_with(request_timeout=config.KUBE_REQUEST_TIMEOUT)
        assert remediator.elector.identity == config.POD_NAME
        assert not remediator.elector.is_leader()

    def test_missing_cluster_access_is_fatal_for_delete_policies(self, config, mock_redis_client):
        with patch("remediator_service.get_redis_client", return_value=mock_redis_client), \
                patch("remediator_service.load_kubernetes_config", side_effect=Exception("no kubeconfig")):
            with pytest.raises(ConfigurationError, match="Kubernetes is unavailable"):
                build_remediator(config)

    def test_missing_cluster_access_tolerated_for_webhook_only(self, clean_env, tmp_path, mock_redis_client):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps({"policies": [
            {"name": "fwd", "action": "webhook", "params": {"url": "http://hooks"}}
        ]}))
        clean_env.setenv("POLICY_FILE", str(path))

        with patch("remediator_service.get_redis_client", return_value=mock_redis_client), \
                patch("remediator_service.load_kubernetes_config", side_effect=Exception("no kubeconfig")):
            remediator = build_remediator(Config())

        assert remediator.coordinator.executor.pod_deleter is None

    def test_vault_secrets_used_when_configured(self, config, mock_redis_client, mock_vault_client):
        config.VAULT_ADDR = "http://vault:8200"
        vault_secrets = {"REDIS_PASS_CURRENT": "from-vault", "REDIS_PASS_NEXT": None, "INGEST_API_KEY": "vk"}

        with patch("remediator_service.fetch_secrets", return_value=(mock_vault_client, vault_secrets)), \
                patch("remediator_service.get_redis_client", return_value=mock_redis_client) as get_client, \
                patch("remediator_service.load_kubernetes_config"), \
                patch("remediator_service.PodDeleter"):
            remediator = build_remediator(config)

        assert get_client.call_args.kwargs["password_current"] == "from-vault"
        assert remediator.vault_client is mock_vault_client
        assert remediator.secrets["INGEST_API_KEY"] == "vk"


# --- Flask Application ---

@pytest.fixture
def pod_deleter():
    deleter = Mock()
    deleter.delete_pod.return_value = POD_DELETED
    return deleter


@pytest.fixture
def remediator(mock_config, mock_redis_client, delete_pod_policy, pod_deleter, fake_clock):
    resolver = PolicyResolver([delete_pod_policy], loader=Mock(return_value=(delete_pod_policy,)))
    executor = ActionExecutor(pod_deleter=pod_deleter, http_session=Mock(), max_attempts=1)
    remediator = Remediator(
        mock_config,
        resolver,
        executor,
        InMemoryLeaseBackend(fake_clock),
        redis_client=mock_redis_client,
        secrets={"INGEST_API_KEY": API_KEY},
        clock=fake_clock,
    )
    yield remediator
    remediator.shutdown()


@pytest.fixture
def client(remediator):
    app = create_app(remediator, metrics_registry=CollectorRegistry())
    app.config["TESTING"] = True
    return app.test_client()


def _become_leader(remediator):
    assert remediator.elector.try_acquire_or_renew()
    assert remediator.coordinator.running


class TestWebhookEndpoint:

    def test_requires_api_key(self, client, sample_notification):
        response = client.post("/webhook", json=sample_notification)
        assert response.status_code == 401

    def test_rejects_wrong_api_key(self, client, sample_notification):
        response = client.post("/webhook", json=sample_notification, headers={"X-API-KEY": "wrong"})
        assert response.status_code == 401

    def test_follower_acknowledges_without_acting(self, client, sample_notification, pod_deleter):
        response = client.post("/webhook", json=sample_notification, headers=AUTH)

        assert response.status_code == 200
        assert response.get_json()["status"] == "ignored"
        assert response.get_json()["reason"] == "not_leader"
        pod_deleter.delete_pod.assert_not_called()

    def test_leader_deletes_pod(self, client, remediator, sample_notification, pod_deleter, fake_clock):
        _become_leader(remediator)

        response = client.post("/webhook", json=sample_notification, headers=AUTH)

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "accepted"
        assert body["alerts"] == 1
        assert body["scheduled"] == 1
        assert wait_for(lambda: pod_deleter.delete_pod.called)
        pod_deleter.delete_pod.assert_called_once_with("prod", "worker-7", None)

        fp = fingerprint(sample_notification["alerts"][0]["labels"])
        assert wait_for(lambda: getattr(remediator.cooldowns.get(fp), "last_fired_at", None) is not None)

    def test_duplicate_notification_deletes_once(self, client, remediator, sample_notification, pod_deleter):
        _become_leader(remediator)

        client.post("/webhook", json=sample_notification, headers=AUTH)
        fp = fingerprint(sample_notification["alerts"][0]["labels"])
        assert wait_for(lambda: getattr(remediator.cooldowns.get(fp), "last_fired_at", None) is not None)

        response = client.post("/webhook", json=sample_notification, headers=AUTH)

        assert response.status_code == 200
        assert not wait_for(lambda: pod_deleter.delete_pod.call_count > 1, timeout=0.2)
        assert pod_deleter.delete_pod.call_count == 1

    def test_invalid_json(self, client):
        response = client.post("/webhook", data="not json", headers=dict(AUTH, **{"Content-Type": "application/json"}))

        assert response.status_code == 400
        assert response.get_json()["status"] == "error"

    def test_malformed_notification(self, client):
        response = client.post("/webhook", json={"alerts": [{"status": "firing"}]}, headers=AUTH)

        assert response.status_code == 400
        assert "alerts[0]" in response.get_json()["message"]

    def test_correlation_id_echoed(self, client):
        response = client.post(
            "/webhook", json={"nope": 1}, headers=dict(AUTH, **{"X-Correlation-ID": "corr-42"})
        )
        assert response.get_json()["correlation_id"] == "corr-42"

    def test_shutting_down_rejects(self, client, remediator, sample_notification):
        remediator.shutting_down = True

        response = client.post("/webhook", json=sample_notification, headers=AUTH)

        assert response.status_code == 503

    def test_open_when_no_key_configured(self, client, remediator, sample_notification):
        remediator.secrets = {}
        response = client.post("/webhook", json=sample_notification)
        assert response.status_code == 200


class TestOperationalEndpoints:

    def test_index_is_public(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.get_json()["service"] == "Alert Remediator"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["leader_state"] == "candidate"

    def test_health_redis_down(self, client, mock_redis_client):
        mock_redis_client.ping.side_effect = redis.exceptions.ConnectionError("down")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.get_json()["redis"] == "disconnected"

    def test_metrics_is_public(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200

    def test_status_requires_auth(self, client):
        assert client.get("/admin/status").status_code == 401

    def test_status(self, client, remediator):
        _become_leader(remediator)

        body = client.get("/admin/status", headers=AUTH).get_json()

        assert body["is_leader"] is True
        assert body["leader_state"] == "leader"
        assert body["lease"]["holder"] == remediator.config.POD_NAME
        assert body["policies"][0]["name"] == "restart-crashlooping"
        assert body["policies"][0]["action"] == "delete_pod"
        assert body["cooldown_entries"] == 0

    def test_reload(self, client, remediator):
        response = client.post("/-/reload", headers=AUTH)

        assert response.status_code == 200
        assert response.get_json() == {"status": "reloaded", "policies": 1}

    def test_reload_failure_keeps_policies(self, client, remediator):
        remediator.resolver._loader.side_effect = ConfigurationError("bad file")

        response = client.post("/-/reload", headers=AUTH)

        assert response.status_code == 400
        assert len(remediator.resolver.policies) == 1


# --- Lifecycle ---

class TestLifecycle:

    def test_start_launches_background_work(self, remediator):
        remediator.config.ALERTMANAGER_URL = "http://alertmanager:9093"
        remediator.config.POLICY_RELOAD_INTERVAL = 30

        with patch("remediator_service.start_cooldown_sweeper") as sweeper, \
                patch("remediator_service.start_policy_reloader") as reloader, \
                patch("remediator_service.start_alertmanager_poller") as poller, \
                patch("remediator_service.start_vault_token_renewal") as renewal, \
                patch.object(remediator.elector, "start") as elector_start:
            remediator.start()

        sweeper.assert_called_once()
        reloader.assert_called_once()
        poller.assert_called_once()
        renewal.assert_not_called()
        elector_start.assert_called_once()

    def test_optional_threads_stay_off(self, remediator):
        remediator.config.ALERTMANAGER_URL = ""
        remediator.config.POLICY_RELOAD_INTERVAL = 0

        with patch("remediator_service.start_cooldown_sweeper"), \
                patch("remediator_service.start_policy_reloader") as reloader, \
                patch("remediator_service.start_alertmanager_poller") as poller, \
                patch.object(remediator.elector, "start"):
            remediator.start()

        reloader.assert_not_called()
        poller.assert_not_called()

    def test_shutdown_stops_acting(self, remediator):
        _become_leader(remediator)

        remediator.shutdown()

        assert remediator.shutting_down
        assert remediator.stop_event.is_set()
        assert not remediator.coordinator.running

    def test_shutdown_twice_is_harmless(self, remediator):
        _become_leader(remediator)
        remediator.shutdown()

        with patch.object(remediator.elector, "stop") as elector_stop:
            remediator.shutdown()

        elector_stop.assert_not_called()

    def test_app_without_remediator_registers_exit_hook(self, remediator):
        with patch("remediator_service.Config"), \
                patch("remediator_service.setup_json_logging"), \
                patch("remediator_service.build_remediator", return_value=remediator), \
                patch.object(remediator, "start"), \
                patch("remediator_service.atexit.register") as register:
            app = create_app(metrics_registry=CollectorRegistry())

        assert app.config["REMEDIATOR"] is remediator
        register.assert_called_once_with(remediator.shutdown)


class TestSignalHandlers:

    def _handlers(self, remediator):
        with patch("remediator_service.signal.signal") as register:
            setup_signal_handlers(remediator)
        return {c.args[0]: c.args[1] for c in register.call_args_list}

    def test_registers_signals(self):
        handlers = self._handlers(MagicMock())
        assert set(handlers) == {signal.SIGTERM, signal.SIGINT, signal.SIGHUP}

    def test_sighup_reloads_policies(self):
        remediator = MagicMock()
        handlers = self._handlers(remediator)

        handlers[signal.SIGHUP](signal.SIGHUP, None)

        assert wait_for(lambda: remediator.reload_policies.called)

    def test_sighup_reload_failure_is_contained(self):
        remediator = MagicMock()
        remediator.reload_policies.side_effect = ConfigurationError("bad file")
        handlers = self._handlers(remediator)

        handlers[signal.SIGHUP](signal.SIGHUP, None)

        assert wait_for(lambda: remediator.reload_policies.called)

    def test_sigterm_shuts_down(self):
        remediator = MagicMock()
        handlers = self._handlers(remediator)

        with pytest.raises(SystemExit) as exc_info:
            handlers[signal.SIGTERM](signal.SIGTERM, None)

        assert exc_info.value.code == 0
        remediator.shutdown.assert_called_once()
