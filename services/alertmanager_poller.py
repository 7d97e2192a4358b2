#!/usr/bin/env python3
"""
Alertmanager poller.

Pull-mode ingestion: periodically fetches active alerts from the
Alertmanager v2 API and feeds them through the ingestion coordinator.
Polling only happens while this instance leads; followers sleep.
"""

import logging
import threading
from typing import List

import requests
from prometheus_client import Counter

from alert_model import Alert, IngestionDecodeError, decode_notification
from ingestion_coordinator import IngestionCoordinator

logger = logging.getLogger(__name__)

METRIC_POLLS_TOTAL = Counter(
    'remediator_alertmanager_polls_total',
    'Alertmanager poll attempts',
    ['status']  # success, fail
)

ALERTS_API_PATH = '/api/v2/alerts'


def fetch_alerts(session: requests.Session, base_url: str, timeout: float) -> List[Alert]:
    """
    Fetch active, unsilenced, uninhibited alerts.

    Raises:
        requests.exceptions.RequestException: On transport or HTTP errors
        IngestionDecodeError: On an unexpected response body
    """
    response = session.get(
        base_url.rstrip('/') + ALERTS_API_PATH,
        params={'active': 'true', 'silenced': 'false', 'inhibited': 'false'},
        timeout=timeout
    )
    response.raise_for_status()
    try:
        body = response.json()
    except ValueError as e:
        raise IngestionDecodeError(f"Alertmanager returned invalid JSON: {e}") from e
    return decode_notification(body)


def poll_once(
    coordinator: IngestionCoordinator,
    session: requests.Session,
    base_url: str,
    timeout: float
) -> int:
    """Run one poll cycle. Returns the number of alerts handed to the coordinator."""
    if not coordinator.may_process():
        logger.debug("Not leader; skipping Alertmanager poll")
        return 0

    try:
        alerts = fetch_alerts(session, base_url, timeout)
    except (requests.exceptions.RequestException, IngestionDecodeError) as e:
        METRIC_POLLS_TOTAL.labels(status='fail').inc()
        logger.error(f"Failed to get alerts from Alertmanager: {e}")
        return 0

    METRIC_POLLS_TOTAL.labels(status='success').inc()
    logger.info(f"Fetched {len(alerts)} alerts from Alertmanager")
    coordinator.process_batch(alerts, correlation_id='alertmanager-poll')
    return len(alerts)


def start_alertmanager_poller(
    coordinator: IngestionCoordinator,
    base_url: str,
    interval: float,
    timeout: float,
    stop_event: threading.Event
) -> threading.Thread:
    """Starts a daemon thread polling Alertmanager every ``interval`` seconds."""
    session = requests.Session()

    def poll_loop():
        logger.info(f"Alertmanager poller started ({base_url}, every {interval}s)")
        while not stop_event.wait(interval):
            try:
                poll_once(coordinator, session, base_url, timeout)
            except Exception as e:
                logger.error(f"Error in Alertmanager poll loop: {e}", exc_info=True)
        session.close()
        logger.info("Alertmanager poller stopped")

    thread = threading.Thread(target=poll_loop, daemon=True, name="AlertmanagerPoller")
    thread.start()
    return thread
