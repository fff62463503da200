import logging
import os
from typing import Any, Optional

logger = logging.getLogger(__name__)


def env_name_for(secret_name: str) -> str:
    """"stripe-secret-key" -> "STRIPE_SECRET_KEY"."""
    return secret_name.upper().replace("-", "_")


class SecretProvider:
    """
    Resolve named secrets from an external secret store, falling back to
    environment variables when the store is absent or the lookup fails.

    ``client`` is any object exposing ``get_secret(name)`` that returns either
    the value or an object with a ``.value`` attribute (the shape used by the
    common vault SDKs).
    """

    def __init__(self, client: Any = None, environ=None):
        self._client = client
        self._environ = environ if environ is not None else os.environ

    def get_secret(self, name: str) -> Optional[str]:
        if self._client is not None:
            try:
                secret = self._client.get_secret(name)
                value = getattr(secret, "value", secret)
                if value:
                    return value
                logger.warning("Secret store returned an empty value", extra={"secret_name": name})
            except Exception as e:
                logger.error(
                    f"Failed to get secret {name}, falling back to environment",
                    extra={"secret_name": name, "error": str(e)},
                )

        return self._environ.get(env_name_for(name))
