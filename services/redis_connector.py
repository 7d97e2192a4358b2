#!/usr/bin/env python3
"""
Redis connector for the lease backend, with dual-password fallback for
zero-downtime rotation.

Builds and validates a client, first trying the CURRENT password and then
the NEXT one. Every socket operation is bounded by a timeout so a hung
Redis cannot stall lease renewal indefinitely.
"""

from typing import Optional
import logging
import redis


def get_redis_client(
    *,
    host: str,
    port: int,
    db: int = 0,
    tls_enabled: bool = False,
    ca_cert_path: Optional[str] = None,
    password_current: Optional[str] = None,
    password_next: Optional[str] = None,
    max_connections: int = 10,
    socket_timeout: float = 2.0,
    logger: Optional[logging.Logger] = None,
) -> redis.Redis:
    log = logger or logging.getLogger(__name__)

    def _build_client(password: Optional[str]) -> redis.Redis:
        kwargs = {
            'host': host,
            'port': port,
            'db': db,
            'password': password,
            'decode_responses': True,
            'socket_connect_timeout': socket_timeout,
            'socket_timeout': socket_timeout,
            'socket_keepalive': True,
            'max_connections': max_connections,
        }
        if tls_enabled:
            kwargs['connection_class'] = redis.SSLConnection
            kwargs['ssl_cert_reqs'] = 'required'
            if ca_cert_path:
                kwargs['ssl_ca_certs'] = ca_cert_path
        pool = redis.ConnectionPool(**kwargs)
        client = redis.Redis(connection_pool=pool)
        client.ping()
        return client

    if not password_current and not password_next:
        log.info(f"Connecting to Redis at {host}:{port} without a password...")
        return _build_client(None)

    last_error: Optional[Exception] = None

    if password_current:
        try:
            log.info("Attempting Redis connection with CURRENT password...")
            return _build_client(password_current)
        except redis.exceptions.RedisError as e:
            last_error = e
            log.warning(f"Redis connection with CURRENT password failed: {e}")

    if password_next:
        try:
            log.info("Attempting Redis connection with NEXT password...")
            return _build_client(password_next)
        except redis.exceptions.RedisError as e:
            last_error = e
            log.error(f"Redis connection with NEXT password failed: {e}")

    raise last_error
