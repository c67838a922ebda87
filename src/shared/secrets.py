"""
Secrets and keychain integration — retrieves credentials from the
system keychain.

Credentials are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) and are
retrieved at runtime:

- ``source-api-token``: UAZAPI instance token.
- ``database-password``: password of the Chatwoot database user.
- ``destination-api-token``: Chatwoot access token of the user that
  outgoing messages are attributed to.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("shared.secrets")

DEFAULT_SERVICE = "wa-chatwoot-sync"
ENV_PREFIX = "WASYNC_"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def env_var_name(key_name: str) -> str:
    """Environment variable consulted when the keychain has no entry."""
    return f"{ENV_PREFIX}{key_name.upper().replace('-', '_')}"


def get_secret(key_name: str, service: str = DEFAULT_SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service wa-chatwoot-sync key <key_name>

    Falls back to environment variables (``WASYNC_<KEY_NAME>``) if
    ``secret-tool`` is not available (e.g. containers, development).

    Args:
        key_name: The key identifier (e.g. ``"source-api-token"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except OSError:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = env_var_name(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.debug("Using env var for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )
