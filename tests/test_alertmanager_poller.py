# =====================================================================
# Alert Remediator - Alertmanager Poller Unit Tests
# =====================================================================
# Run with: pytest tests/test_alertmanager_poller.py -v
# =====================================================================

import threading
from unittest.mock import Mock

import pytest
import requests

from alert_model import IngestionDecodeError
from alertmanager_poller import fetch_alerts, poll_once, start_alertmanager_poller

pytestmark = pytest.mark.unit


@pytest.fixture
def v2_alert(sample_alert_dict):
    alert = dict(sample_alert_dict)
    alert["status"] = {"state": "active", "silencedBy": [], "inhibitedBy": []}
    alert["fingerprint"] = "1a2b3c4d5e6f7a8b"
    return alert


@pytest.fixture
def session(v2_alert):
    session = Mock()
    response = Mock()
    response.json.return_value = [v2_alert]
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return session


@pytest.fixture
def coordinator():
    coordinator = Mock()
    coordinator.may_process.return_value = True
    return coordinator


class TestFetchAlerts:

    def test_queries_active_unsilenced_alerts(self, session):
        alerts = fetch_alerts(session, "http://alertmanager:9093/", 5)

        session.get.assert_called_once_with(
            "http://alertmanager:9093/api/v2/alerts",
            params={"active": "true", "silenced": "false", "inhibited": "false"},
            timeout=5
        )
        assert len(alerts) == 1
        assert alerts[0].is_firing
        assert alerts[0].fingerprint == "1a2b3c4d5e6f7a8b"

    def test_http_error_propagates(self, session):
        session.get.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("502")
        with pytest.raises(requests.exceptions.HTTPError):
            fetch_alerts(session, "http://alertmanager:9093", 5)

    def test_invalid_json(self, session):
        session.get.return_value.json.side_effect = ValueError("no json")
        with pytest.raises(IngestionDecodeError):
            fetch_alerts(session, "http://alertmanager:9093", 5)


class TestPollOnce:

    def test_feeds_coordinator(self, session, coordinator):
        assert poll_once(coordinator, session, "http://alertmanager:9093", 5) == 1

        alerts = coordinator.process_batch.call_args[0][0]
        assert alerts[0].labels["pod"] == "worker-7"

    def test_follower_does_not_poll(self, session, coordinator):
        coordinator.may_process.return_value = False

        assert poll_once(coordinator, session, "http://alertmanager:9093", 5) == 0
        session.get.assert_not_called()

    def test_connection_error_is_contained(self, session, coordinator):
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        assert poll_once(coordinator, session, "http://alertmanager:9093", 5) == 0
        coordinator.process_batch.assert_not_called()

    def test_malformed_response_is_contained(self, session, coordinator):
        session.get.return_value.json.return_value = {"unexpected": True}

        assert poll_once(coordinator, session, "http://alertmanager:9093", 5) == 0
        coordinator.process_batch.assert_not_called()


class TestPollerThread:

    def test_polls_until_stopped(self, coordinator):
        polled = threading.Event()
        coordinator.may_process.side_effect = lambda: polled.set() or False
        stop_event = threading.Event()

        thread = start_alertmanager_poller(coordinator, "http://alertmanager:9093", 0.01, 1, stop_event)
        try:
            assert polled.wait(2)
        finally:
            stop_event.set()
            thread.join(timeout=2)

        assert not thread.is_alive()
