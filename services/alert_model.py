#!/usr/bin/env python3
"""
Alert records and decoding of inbound notifications.

Accepts both shapes Alertmanager produces:
- webhook notifications, where ``status`` is the string "firing"/"resolved"
- the v2 API (``GET /api/v2/alerts``), where ``status`` is an object with a
  ``state`` of "active", "suppressed" or "unprocessed"
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from alert_fingerprint import fingerprint as compute_fingerprint


class IngestionDecodeError(Exception):
    """Raised when an inbound payload cannot be decoded into alerts."""
    pass


STATUS_FIRING = 'firing'
STATUS_RESOLVED = 'resolved'

# v2 API states that count as firing. Suppressed (silenced/inhibited) and
# unprocessed alerts are never acted on.
_V2_FIRING_STATES = ('active',)

# Alertmanager renders an unset endsAt as the Go zero time.
_ZERO_TIME_PREFIX = '0001-01-01'

_FRACTION_RE = re.compile(r'\.(\d+)')


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as sent by Alertmanager.

    Returns None for empty values and the Go zero time. Fractional seconds
    beyond microsecond precision are truncated.

    Raises:
        IngestionDecodeError: If the value is not a parseable timestamp
    """
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise IngestionDecodeError(f"Timestamp must be a string, got {type(value).__name__}")
    if value.startswith(_ZERO_TIME_PREFIX):
        return None

    normalized = value.strip()
    if normalized.endswith(('Z', 'z')):
        normalized = normalized[:-1] + '+00:00'
    normalized = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), normalized, count=1)

    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as e:
        raise IngestionDecodeError(f"Invalid timestamp {value!r}: {e}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def _string_map(raw: Any, field_name: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise IngestionDecodeError(f"'{field_name}' must be an object")
    result = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise IngestionDecodeError(f"'{field_name}' keys and values must be strings")
        result[key] = value
    return result


@dataclass
class Alert:
    """One notification instance."""

    labels: Dict[str, str]
    status: str = STATUS_FIRING
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    fingerprint: str = ''
    annotations: Dict[str, str] = field(default_factory=dict)
    generator_url: str = ''

    @property
    def is_firing(self) -> bool:
        return self.status == STATUS_FIRING

    @property
    def alertname(self) -> str:
        return self.labels.get('alertname', '')

    @classmethod
    def from_dict(cls, data: Any) -> 'Alert':
        """
        Build an Alert from one element of a notification's ``alerts`` array.

        An upstream ``fingerprint`` is kept as-is; otherwise one is derived
        from the labels.

        Raises:
            IngestionDecodeError: On missing labels, bad status or timestamps
        """
        if not isinstance(data, dict):
            raise IngestionDecodeError("Alert must be a JSON object")

        if 'labels' not in data:
            raise IngestionDecodeError("Alert is missing 'labels'")
        labels = _string_map(data.get('labels'), 'labels')
        annotations = _string_map(data.get('annotations'), 'annotations')

        raw_status = data.get('status', STATUS_FIRING)
        if isinstance(raw_status, dict):
            state = raw_status.get('state')
            status = STATUS_FIRING if state in _V2_FIRING_STATES else str(state or 'unknown')
        elif raw_status in (STATUS_FIRING, STATUS_RESOLVED):
            status = raw_status
        else:
            raise IngestionDecodeError(f"Unknown alert status: {raw_status!r}")

        upstream = data.get('fingerprint') or ''
        if not isinstance(upstream, str):
            raise IngestionDecodeError("'fingerprint' must be a string")

        return cls(
            labels=labels,
            status=status,
            starts_at=parse_timestamp(data.get('startsAt')),
            ends_at=parse_timestamp(data.get('endsAt')),
            fingerprint=upstream or compute_fingerprint(labels),
            annotations=annotations,
            generator_url=data.get('generatorURL') or '',
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for outbound webhooks (Alertmanager field names)."""
        return {
            'fingerprint': self.fingerprint,
            'status': self.status,
            'labels': dict(self.labels),
            'annotations': dict(self.annotations),
            'startsAt': format_timestamp(self.starts_at),
            'endsAt': format_timestamp(self.ends_at),
            'generatorURL': self.generator_url,
        }


def decode_notification(payload: Any) -> List[Alert]:
    """
    Decode a grouped-alert notification ``{"alerts": [...]}``.

    A bare JSON array of alerts (the v2 API response) is accepted as well.

    Raises:
        IngestionDecodeError: If the payload or any alert is malformed
    """
    if isinstance(payload, dict):
        raw_alerts = payload.get('alerts')
        if raw_alerts is None:
            raise IngestionDecodeError("Payload is missing 'alerts'")
    elif isinstance(payload, list):
        raw_alerts = payload
    else:
        raise IngestionDecodeError("Payload must be a JSON object")

    if not isinstance(raw_alerts, list):
        raise IngestionDecodeError("'alerts' must be an array")

    alerts = []
    for index, raw in enumerate(raw_alerts):
        try:
            alerts.append(Alert.from_dict(raw))
        except IngestionDecodeError as e:
            raise IngestionDecodeError(f"alerts[{index}]: {e}") from e
    return alerts
