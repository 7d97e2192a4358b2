#!/usr/bin/env python3
"""
Secret loading for the remediator.

Secrets come from Vault (KV v2, AppRole login) when VAULT_ADDR is set,
otherwise from environment variables. A background thread keeps the Vault
token renewed.
"""

import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

import hvac

logger = logging.getLogger(__name__)


class SecretsError(Exception):
    """Raised when required secrets cannot be loaded."""
    pass


def secrets_from_environment() -> Dict[str, Optional[str]]:
    return {
        "REDIS_PASS_CURRENT": os.environ.get('REDIS_PASSWORD') or None,
        "REDIS_PASS_NEXT": os.environ.get('REDIS_PASSWORD_NEXT') or None,
        "INGEST_API_KEY": os.environ.get('INGEST_API_KEY') or None,
    }


def fetch_secrets(config) -> Tuple[Any, Dict[str, Optional[str]]]:
    """
    Authenticate to Vault via AppRole and read the remediator secrets.

    Returns:
        (vault_client, secrets)

    Raises:
        SecretsError: If authentication or the read fails
    """
    try:
        logger.info(f"Connecting to Vault at {config.VAULT_ADDR}...")
        vault_client = hvac.Client(url=config.VAULT_ADDR)

        if not os.path.exists(config.VAULT_SECRET_ID_FILE):
            raise SecretsError(f"Vault secret ID file not found: {config.VAULT_SECRET_ID_FILE}")

        with open(config.VAULT_SECRET_ID_FILE, 'r') as f:
            secret_id = f.read().strip()

        if not secret_id:
            raise SecretsError("Vault secret ID file is empty")

        auth_response = vault_client.auth.approle.login(
            role_id=config.VAULT_ROLE_ID,
            secret_id=secret_id
        )

        if not vault_client.is_authenticated():
            raise SecretsError("Vault authentication failed.")

        logger.info("Successfully authenticated to Vault")
        logger.info(f"Token TTL: {auth_response['auth']['lease_duration']}s")

        response = vault_client.secrets.kv.v2.read_secret_version(
            path=config.VAULT_SECRETS_PATH
        )
        data = response['data']['data']

    except SecretsError:
        raise
    except Exception as e:
        raise SecretsError(f"Failed to fetch secrets from Vault: {e}") from e

    secrets = {
        "REDIS_PASS_CURRENT": data.get('REDIS_PASS_CURRENT') or data.get('REDIS_PASS'),
        "REDIS_PASS_NEXT": data.get('REDIS_PASS_NEXT'),
        "INGEST_API_KEY": data.get('INGEST_API_KEY'),
    }
    logger.info("Successfully loaded secrets from Vault")
    return vault_client, secrets


def start_vault_token_renewal(config, vault_client: Any, stop_event: threading.Event) -> threading.Thread:
    """Starts a background daemon thread for Vault token renewal."""

    def renewal_loop():
        logger.info("Vault token renewal thread started")
        while not stop_event.wait(config.VAULT_RENEW_CHECK_INTERVAL):
            try:
                token_info = vault_client.auth.token.lookup_self()['data']
                ttl = token_info['ttl']
                renewable = token_info.get('renewable', False)

                logger.debug(f"Vault token TTL: {ttl}s, Renewable: {renewable}")

                if renewable and ttl < config.VAULT_TOKEN_RENEW_THRESHOLD:
                    logger.info(f"Renewing Vault token (TTL: {ttl}s)...")
                    renew_response = vault_client.auth.token.renew_self()
                    new_ttl = renew_response['auth']['lease_duration']
                    logger.info(f"Vault token renewed. New TTL: {new_ttl}s")
                elif not renewable and ttl < config.VAULT_TOKEN_RENEW_THRESHOLD:
                    logger.warning(
                        f"Vault token is not renewable and has {ttl}s remaining! "
                        "Service restart needed."
                    )

            except Exception as e:
                logger.error(f"Error in Vault token renewal: {e}")

        logger.info("Vault token renewal thread stopped")

    thread = threading.Thread(target=renewal_loop, daemon=True, name="VaultTokenRenewal")
    thread.start()
    return thread
