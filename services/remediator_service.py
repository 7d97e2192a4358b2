#!/usr/bin/env python3
"""
=====================================================================
Alert Remediator Service
=====================================================================
Receives Alertmanager notifications and runs the configured remediation
for each alert: delete the offending pod, or forward the alert to a
webhook. Redundant replicas elect a single leader through a Redis lease;
only the leader acts. Repeated notifications for the same alert are
held back by a per-fingerprint cooldown.

Key Features:
- Alertmanager webhook receiver (POST /webhook) and optional pull mode
  against the Alertmanager v2 API
- Ordered, label-matched action policies, reloadable at runtime
  (SIGHUP, POST /-/reload, or a reload interval)
- Leader election with fail-safe semantics on lease backend errors
- Bounded retries with exponential backoff and jitter
- Vault integration with background token renewal (optional)
- Prometheus metrics, NDJSON logging, correlation ids
- Graceful shutdown that releases the lease

Run with Gunicorn in production:
    gunicorn --bind 0.0.0.0:9095 --workers 1 --threads 8 \\
             'remediator_service:create_app()'

A single worker process is required: leadership and cooldown state live
in process memory.
=====================================================================
"""

import atexit
import os
import sys
import uuid
import signal
import logging
import secrets as secrets_module
import threading
import time
from typing import Any, Dict, Optional

import redis
from flask import Flask, request, jsonify
from prometheus_client import Counter, Histogram
from prometheus_flask_exporter import PrometheusMetrics

from action_executor import ActionExecutor
from alert_model import IngestionDecodeError, decode_notification
from alertmanager_poller import start_alertmanager_poller
from cluster_client import PodDeleter, load_kubernetes_config
from cooldown_tracker import CooldownTracker, start_cooldown_sweeper
from ingestion_coordinator import IngestionCoordinator
from leader_election import LeaderElector, RedisLeaseBackend
from logging_utils import LogContext, setup_json_logging
from policy_resolver import (
    ActionKind,
    ConfigurationError,
    PolicyResolver,
    load_policy_file,
    parse_duration,
    policies_from_alert_names,
    start_policy_reloader,
)
from redis_connector import get_redis_client
from vault_secrets import SecretsError, fetch_secrets, secrets_from_environment, start_vault_token_renewal

SERVICE_NAME = "remediator"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_WEBHOOK_REQUESTS = Counter(
    'remediator_webhook_requests_total',
    'Notifications received on the webhook endpoint',
    ['status', 'reason']  # status: accepted|ignored|fail, reason: auth|json|decode|shutdown|not_leader|''
)

METRIC_WEBHOOK_LATENCY = Histogram(
    'remediator_webhook_latency_seconds',
    'Webhook request handling latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# =====================================================================
# CONFIGURATION
# =====================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Remediator configuration loaded from environment variables."""

    def __init__(self):
        try:
            # Service identity
            self.POD_NAME = os.environ.get('POD_NAME') or f"remediator-{uuid.uuid4().hex[:6]}"
            self.SERVER_HOST = os.environ.get('SERVER_HOST', '0.0.0.0')
            self.SERVER_PORT = int(os.environ.get('SERVER_PORT', 9095))
            self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

            # Redis (lease backend)
            self.REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
            self.REDIS_PORT = int(os.environ.get('REDIS_PORT', 6379))
            self.REDIS_DB = int(os.environ.get('REDIS_DB', 0))
            self.REDIS_TLS_ENABLED = _env_bool('REDIS_TLS_ENABLED', 'false')
            self.REDIS_CA_CERT_PATH = os.environ.get('REDIS_CA_CERT_PATH')
            self.REDIS_MAX_CONNECTIONS = int(os.environ.get('REDIS_MAX_CONNECTIONS', 10))
            self.REDIS_SOCKET_TIMEOUT = float(os.environ.get('REDIS_SOCKET_TIMEOUT', 2.0))

            # Leader election
            self.LEASE_NAME = os.environ.get('LEASE_NAME', 'alert-deleter')
            self.LEASE_KEY_PREFIX = os.environ.get('LEASE_KEY_PREFIX', 'remediator:lease')
            self.LEASE_DURATION = float(os.environ.get('LEASE_DURATION', 10))
            self.LEASE_RENEW_INTERVAL = float(
                os.environ.get('LEASE_RENEW_INTERVAL', self.LEASE_DURATION / 3.0)
            )
            self.LEASE_RETRY_INTERVAL = float(os.environ.get('LEASE_RETRY_INTERVAL', 2))

            # Policies
            self.POLICY_FILE = os.environ.get('POLICY_FILE', '')
            self.POLICY_RELOAD_INTERVAL = float(os.environ.get('POLICY_RELOAD_INTERVAL', 0))
            self.ALERT_NAMES = [
                n.strip() for n in os.environ.get('ALERT_NAMES', '').split(',') if n.strip()
            ]
            self.DEFAULT_COOLDOWN = parse_duration(os.environ.get('DEFAULT_COOLDOWN', '300'))

            # Action execution
            self.ACTION_MAX_ATTEMPTS = int(os.environ.get('ACTION_MAX_ATTEMPTS', 3))
            self.ACTION_RETRY_BASE_DELAY = float(os.environ.get('ACTION_RETRY_BASE_DELAY', 1.0))
            self.ACTION_RETRY_MAX_DELAY = float(os.environ.get('ACTION_RETRY_MAX_DELAY', 30.0))
            self.WEBHOOK_TIMEOUT = float(os.environ.get('WEBHOOK_TIMEOUT', 10))
            self.KUBE_REQUEST_TIMEOUT = float(os.environ.get('KUBE_REQUEST_TIMEOUT', 10))
            self.KUBERNETES_ENABLED = _env_bool('KUBERNETES_ENABLED', 'true')
            self.WORKER_THREADS = int(os.environ.get('WORKER_THREADS', 8))
            self.COOLDOWN_SWEEP_INTERVAL = float(os.environ.get('COOLDOWN_SWEEP_INTERVAL', 60))

            # Alertmanager pull mode (disabled unless a URL is set)
            self.ALERTMANAGER_URL = os.environ.get('ALERTMANAGER_URL', '')
            self.POLL_INTERVAL = float(os.environ.get('POLL_INTERVAL', 60))
            self.ALERTMANAGER_TIMEOUT = float(os.environ.get('ALERTMANAGER_TIMEOUT', 10))

            # Vault (optional)
            self.VAULT_ADDR = os.environ.get('VAULT_ADDR', '')
            self.VAULT_ROLE_ID = os.environ.get('VAULT_ROLE_ID', '')
            self.VAULT_SECRET_ID_FILE = os.environ.get(
                'VAULT_SECRET_ID_FILE', '/etc/remediator/secrets/vault_secret_id'
            )
            self.VAULT_SECRETS_PATH = os.environ.get('VAULT_SECRETS_PATH', 'secret/remediator')
            self.VAULT_TOKEN_RENEW_THRESHOLD = int(os.environ.get('VAULT_TOKEN_RENEW_THRESHOLD', 3600))
            self.VAULT_RENEW_CHECK_INTERVAL = int(os.environ.get('VAULT_RENEW_CHECK_INTERVAL', 300))
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        self._validate()

    @property
    def LEASE_KEY(self) -> str:
        return f"{self.LEASE_KEY_PREFIX}:{self.LEASE_NAME}"

    def _validate(self):
        """Validate critical configuration values."""
        if self.SERVER_PORT < 1 or self.SERVER_PORT > 65535:
            raise ConfigurationError(f"SERVER_PORT invalid: {self.SERVER_PORT}")

        if not self.POLICY_FILE and not self.ALERT_NAMES:
            raise ConfigurationError("Either POLICY_FILE or ALERT_NAMES must be set")

        if self.LEASE_DURATION <= 0 or self.LEASE_RENEW_INTERVAL <= 0 or self.LEASE_RETRY_INTERVAL <= 0:
            raise ConfigurationError("LEASE_DURATION and lease intervals must be positive")

        if 2 * self.LEASE_RENEW_INTERVAL >= self.LEASE_DURATION:
            raise ConfigurationError(
                f"LEASE_RENEW_INTERVAL ({self.LEASE_RENEW_INTERVAL}s) must be less than half "
                f"of LEASE_DURATION ({self.LEASE_DURATION}s)"
            )

        if self.ACTION_MAX_ATTEMPTS < 1:
            raise ConfigurationError(f"ACTION_MAX_ATTEMPTS must be at least 1: {self.ACTION_MAX_ATTEMPTS}")

        if self.WORKER_THREADS < 1:
            raise ConfigurationError(f"WORKER_THREADS must be at least 1: {self.WORKER_THREADS}")

        if self.POLICY_RELOAD_INTERVAL < 0:
            raise ConfigurationError("POLICY_RELOAD_INTERVAL cannot be negative")

        if self.ALERTMANAGER_URL and self.POLL_INTERVAL <= 0:
            raise ConfigurationError("POLL_INTERVAL must be positive when ALERTMANAGER_URL is set")

        if self.VAULT_ADDR and not self.VAULT_ROLE_ID:
            raise ConfigurationError("VAULT_ROLE_ID is required when VAULT_ADDR is set")


def make_policy_loader(config: Config):
    """Return a callable producing the policy table described by the config."""
    if config.POLICY_FILE:
        return lambda: load_policy_file(config.POLICY_FILE)
    return lambda: policies_from_alert_names(config.ALERT_NAMES, config.DEFAULT_COOLDOWN)

# =====================================================================
# RUNTIME WIRING
# =====================================================================

class Remediator:
    """Owns the long-lived components and their background threads."""

    def __init__(
        self,
        config: Config,
        resolver: PolicyResolver,
        executor: ActionExecutor,
        lease_backend,
        redis_client: Optional[redis.Redis] = None,
        secrets: Optional[Dict[str, Optional[str]]] = None,
        vault_client: Any = None,
        clock=time.monotonic
    ):
        self.config = config
        self.resolver = resolver
        self.cooldowns = CooldownTracker()
        self.redis_client = redis_client
        self.secrets = secrets or {}
        self.vault_client = vault_client
        self._clock = clock
        self.stop_event = threading.Event()
        self.shutting_down = False

        self.coordinator = IngestionCoordinator(
            resolver,
            self.cooldowns,
            executor,
            is_leader=lambda: self.elector.is_leader(),
            max_workers=config.WORKER_THREADS,
            clock=clock
        )
        self.elector = LeaderElector(
            lease_backend,
            identity=config.POD_NAME,
            lease_duration=config.LEASE_DURATION,
            renew_interval=config.LEASE_RENEW_INTERVAL,
            retry_interval=config.LEASE_RETRY_INTERVAL,
            on_started_leading=self.coordinator.start,
            on_stopped_leading=self.coordinator.stop,
            clock=clock
        )

    def reload_policies(self) -> int:
        return self.resolver.reload()

    def start(self) -> None:
        """Start background threads, leader election last."""
        config = self.config
        if self.vault_client is not None:
            start_vault_token_renewal(config, self.vault_client, self.stop_event)

        start_cooldown_sweeper(
            self.cooldowns,
            self.resolver.max_cooldown,
            config.COOLDOWN_SWEEP_INTERVAL,
            self.stop_event,
            self._clock
        )

        if config.POLICY_RELOAD_INTERVAL > 0:
            start_policy_reloader(self.resolver, config.POLICY_RELOAD_INTERVAL, self.stop_event)

        if config.ALERTMANAGER_URL:
            start_alertmanager_poller(
                self.coordinator,
                config.ALERTMANAGER_URL,
                config.POLL_INTERVAL,
                config.ALERTMANAGER_TIMEOUT,
                self.stop_event
            )

        self.elector.start()

    def shutdown(self) -> None:
        """Refuse new work, stop acting, release the lease. Safe to call twice."""
        if self.shutting_down:
            return
        self.shutting_down = True
        logger.info("Shutting down: stopping ingestion and releasing the lease")
        self.stop_event.set()
        self.coordinator.stop()
        self.elector.stop()


def build_remediator(config: Config) -> Remediator:
    """
    Load secrets, connect to Redis, load policies and build the components.

    Raises:
        ConfigurationError: On bad policies or missing cluster access
        SecretsError: If Vault is configured but unusable
        redis.exceptions.RedisError: If Redis is unreachable
    """
    vault_client = None
    if config.VAULT_ADDR:
        vault_client, secrets = fetch_secrets(config)
    else:
        secrets = secrets_from_environment()

    redis_client = get_redis_client(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        db=config.REDIS_DB,
        tls_enabled=config.REDIS_TLS_ENABLED,
        ca_cert_path=config.REDIS_CA_CERT_PATH,
        password_current=secrets.get('REDIS_PASS_CURRENT'),
        password_next=secrets.get('REDIS_PASS_NEXT'),
        max_connections=config.REDIS_MAX_CONNECTIONS,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        logger=logger,
    )
    logger.info(f"Connected to Redis at {config.REDIS_HOST}:{config.REDIS_PORT}")

    loader = make_policy_loader(config)
    policies = loader()
    resolver = PolicyResolver(policies, loader=loader)
    logger.info(f"Loaded {len(policies)} action policies")

    pod_deleter = None
    if config.KUBERNETES_ENABLED:
        try:
            load_kubernetes_config()
            pod_deleter = PodDeleter(request_timeout=config.KUBE_REQUEST_TIMEOUT)
        except Exception as e:
            if any(p.action_kind is ActionKind.DELETE_POD for p in policies):
                raise ConfigurationError(f"delete_pod policies configured but Kubernetes is unavailable: {e}") from e
            logger.warning(f"Kubernetes client unavailable, delete_pod actions will fail: {e}")

    executor = ActionExecutor(
        pod_deleter=pod_deleter,
        max_attempts=config.ACTION_MAX_ATTEMPTS,
        base_delay=config.ACTION_RETRY_BASE_DELAY,
        max_delay=config.ACTION_RETRY_MAX_DELAY,
        webhook_timeout=config.WEBHOOK_TIMEOUT
    )

    return Remediator(
        config,
        resolver,
        executor,
        RedisLeaseBackend(redis_client, config.LEASE_KEY),
        redis_client=redis_client,
        secrets=secrets,
        vault_client=vault_client
    )

# =====================================================================
# FLASK APPLICATION FACTORY
# =====================================================================

PUBLIC_PATHS = ('/health', '/metrics', '/')


def create_app(remediator: Optional[Remediator] = None, metrics_registry=None) -> Flask:
    """
    Creates and configures the Flask application.

    Without an explicit Remediator the full service is built from the
    environment and its background threads are started (Gunicorn entry
    point).
    """
    if remediator is None:
        remediator = _bootstrap()

    app = Flask(__name__)
    app.config["REMEDIATOR"] = remediator

    PrometheusMetrics(app, registry=metrics_registry, excluded_paths=['/health'])

    def _error(message: str, status: int, reason: str):
        METRIC_WEBHOOK_REQUESTS.labels(status='fail', reason=reason).inc()
        return jsonify({
            "status": "error",
            "message": message,
            "correlation_id": request.correlation_id
        }), status

    @app.before_request
    def pre_request_handling():
        """Correlation id and optional API key authentication."""
        correlation_id = request.headers.get('X-Correlation-ID', str(uuid.uuid4()))
        request.correlation_id = correlation_id
        LogContext.set_correlation_id(correlation_id)

        if request.path in PUBLIC_PATHS:
            return None

        expected_key = remediator.secrets.get('INGEST_API_KEY')
        if not expected_key:
            return None

        api_key = request.headers.get('X-API-KEY', '')
        if not api_key or not secrets_module.compare_digest(api_key, expected_key):
            logger.warning(f"Authentication failed from {request.remote_addr}")
            return _error("Unauthorized", 401, 'auth')
        return None

    @app.teardown_request
    def clear_log_context(exc):
        LogContext.set_correlation_id(None)

    @app.route('/webhook', methods=['POST'])
    @METRIC_WEBHOOK_LATENCY.time()
    def handle_webhook():
        """
        Alertmanager webhook receiver.

        Always acknowledges a well-formed notification; individual alerts
        may still be ignored by policy or cooldown, or not acted on at all
        when this replica is not the leader.
        """
        if remediator.shutting_down:
            return _error("Service Unavailable - shutting down", 503, 'shutdown')

        payload = request.get_json(silent=True)
        if payload is None:
            logger.warning("Invalid JSON received")
            return _error("Invalid JSON payload", 400, 'json')

        try:
            alerts = decode_notification(payload)
        except IngestionDecodeError as e:
            logger.warning(f"Rejected malformed notification: {e}")
            return _error(f"Malformed notification: {e}", 400, 'decode')

        coordinator = remediator.coordinator
        if not coordinator.may_process():
            METRIC_WEBHOOK_REQUESTS.labels(status='ignored', reason='not_leader').inc()
            logger.debug(f"Not leader; acknowledged {len(alerts)} alerts without acting")
            return jsonify({
                "status": "ignored",
                "reason": "not_leader",
                "alerts": len(alerts),
                "correlation_id": request.correlation_id
            }), 200

        scheduled = coordinator.submit_batch(alerts, correlation_id=request.correlation_id)
        METRIC_WEBHOOK_REQUESTS.labels(status='accepted', reason='').inc()
        logger.info(f"Accepted notification with {len(alerts)} alerts ({scheduled} scheduled)")
        return jsonify({
            "status": "accepted",
            "alerts": len(alerts),
            "scheduled": scheduled,
            "correlation_id": request.correlation_id
        }), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Liveness: Redis reachable. Reports leadership for visibility."""
        body = {
            "service": "alert-remediator",
            "version": SERVICE_VERSION,
            "pod": remediator.config.POD_NAME,
            "leader_state": remediator.elector.state,
        }
        try:
            if remediator.redis_client is not None:
                remediator.redis_client.ping()
            body.update({"status": "healthy", "redis": "connected"})
            return jsonify(body), 200
        except redis.exceptions.RedisError as e:
            logger.error(f"Health check failed: {e}")
            body.update({"status": "unhealthy", "redis": "disconnected", "error": str(e)})
            return jsonify(body), 503

    @app.route('/admin/status', methods=['GET'])
    def admin_status():
        """Leadership, lease holder, policy table and cooldown map size."""
        lease = remediator.elector.current_lease()
        return jsonify({
            "pod": remediator.config.POD_NAME,
            "leader_state": remediator.elector.state,
            "is_leader": remediator.elector.is_leader(),
            "lease": {
                "holder": lease.holder_identity,
                "expires_at": lease.lease_expiry
            } if lease else None,
            "policies": [
                {
                    "name": p.name,
                    "match_labels": dict(p.match_labels),
                    "action": p.action_kind.value,
                    "cooldown_seconds": p.cooldown
                }
                for p in remediator.resolver.policies
            ],
            "cooldown_entries": len(remediator.cooldowns),
            "shutting_down": remediator.shutting_down
        }), 200

    @app.route('/-/reload', methods=['POST'])
    def reload_policies():
        """Reload the policy table; the old table stays active on failure."""
        try:
            count = remediator.reload_policies()
        except ConfigurationError as e:
            return jsonify({
                "status": "error",
                "message": str(e),
                "correlation_id": request.correlation_id
            }), 400
        return jsonify({"status": "reloaded", "policies": count}), 200

    @app.route('/', methods=['GET'])
    def index():
        """Service information endpoint."""
        return jsonify({
            "service": "Alert Remediator",
            "version": SERVICE_VERSION,
            "description": "Leader-elected remediation controller for Alertmanager notifications",
            "endpoints": {
                "webhook": "POST /webhook (X-API-KEY header if configured)",
                "reload": "POST /-/reload",
                "status": "GET /admin/status",
                "health": "GET /health",
                "metrics": "GET /metrics",
                "info": "GET /"
            }
        }), 200

    return app

# =====================================================================
# STARTUP & GRACEFUL SHUTDOWN
# =====================================================================

def setup_signal_handlers(remediator: Remediator) -> None:
    """SIGTERM/SIGINT shut down gracefully; SIGHUP reloads policies."""

    def shutdown_handler(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.info(f"Received {sig_name}, initiating graceful shutdown...")
        remediator.shutdown()
        logger.info("Graceful shutdown complete")
        sys.exit(0)

    def sighup_handler(signum, frame):
        logger.warning("SIGHUP received. Reloading action policies.")

        def _reload():
            try:
                remediator.reload_policies()
            except ConfigurationError:
                pass  # logged by the resolver

        threading.Thread(target=_reload, daemon=True, name="PolicyReloadSignal").start()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGHUP, sighup_handler)
    logger.info("Signal handlers registered")


def _bootstrap() -> Remediator:
    """Config, logging, components and background threads; exits on fatal errors."""
    try:
        config = Config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"FATAL: Configuration error: {e}")
        sys.exit(1)

    setup_json_logging(service_name=SERVICE_NAME, version=SERVICE_VERSION, level=config.LOG_LEVEL)

    try:
        remediator = build_remediator(config)
    except (ConfigurationError, SecretsError, redis.exceptions.RedisError) as e:
        logger.error(f"FATAL: {e}")
        sys.exit(1)

    remediator.start()
    # Gunicorn workers never call setup_signal_handlers.
    atexit.register(remediator.shutdown)
    return remediator


def main():
    """Main service entry point."""
    remediator = _bootstrap()
    config = remediator.config
    setup_signal_handlers(remediator)

    app = create_app(remediator)

    logger.info("=" * 70)
    logger.info(f"Alert Remediator v{SERVICE_VERSION} - Pod: {config.POD_NAME}")
    logger.info(f"Lease: {config.LEASE_KEY} ({config.LEASE_DURATION}s)")
    logger.info(f"Policies: {len(remediator.resolver.policies)}")
    logger.info("=" * 70)

    app.run(host=config.SERVER_HOST, port=config.SERVER_PORT, threaded=True)


if __name__ == '__main__':
    main()
