#!/usr/bin/env python3
"""
Alert fingerprinting.

Derives a stable identity for an alert from its label set. The construction
mirrors Alertmanager's own label-set fingerprint (64-bit FNV-1a over the
sorted ``name 0xff value 0xff`` byte stream, rendered as 16 hex digits), so a
fingerprint supplied by Alertmanager and one computed here agree for the same
labels.

A 64-bit non-cryptographic hash can collide. Two distinct label sets sharing a
fingerprint would share a cooldown window; at the volumes a remediation
controller sees this is accepted rather than engineered away.
"""

from typing import Mapping

FNV64_OFFSET_BASIS = 14695981039346656037
FNV64_PRIME = 1099511628211
_MASK64 = 0xFFFFFFFFFFFFFFFF

# Alertmanager separates label names and values with a byte that cannot
# appear in valid UTF-8.
LABEL_SEPARATOR = b'\xff'


def _fnv1a_update(value: int, data: bytes) -> int:
    for byte in data:
        value ^= byte
        value = (value * FNV64_PRIME) & _MASK64
    return value


def fingerprint(labels: Mapping[str, str]) -> str:
    """
    Compute the fingerprint of a label set.

    Iteration order of ``labels`` does not matter; an empty label set yields
    the FNV offset basis.

    Example:
        >>> fingerprint({'pod': 'worker-7', 'alertname': 'PodCrashLooping'}) == \\
        ...     fingerprint({'alertname': 'PodCrashLooping', 'pod': 'worker-7'})
        True
    """
    value = FNV64_OFFSET_BASIS
    for name in sorted(labels):
        value = _fnv1a_update(value, name.encode('utf-8'))
        value = _fnv1a_update(value, LABEL_SEPARATOR)
        value = _fnv1a_update(value, str(labels[name]).encode('utf-8'))
        value = _fnv1a_update(value, LABEL_SEPARATOR)
    return f"{value:016x}"


def resolve_fingerprint(alert) -> str:
    """Return the upstream fingerprint if the alert carries one, else derive it."""
    if alert.fingerprint:
        return alert.fingerprint
    return fingerprint(alert.labels)
