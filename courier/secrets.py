import os
import re
from typing import Mapping, Optional

from courier.errors import ConfigurationError

_NAME_RE = re.compile(r"[^A-Za-z0-9]+")


def secret_env_name(name: str, prefix: str = "COURIER_") -> str:
    """``site/password`` -> ``COURIER_SITE_PASSWORD``."""
    token = _NAME_RE.sub("_", str(name or "").strip()).strip("_").upper()
    if not token:
        raise ConfigurationError("secret name must not be empty")
    return f"{prefix}{token}"


class EnvironmentSecrets:
    def __init__(self, environ: Optional[Mapping[str, str]] = None, prefix: str = "COURIER_"):
        # Snapshot so later environment changes cannot leak into a running workflow.
        self._values = dict(os.environ if environ is None else environ)
        self.prefix = prefix

    def fetch_secret(self, name: str, required: bool = True) -> Optional[str]:
        env_name = secret_env_name(name, self.prefix)
        value = self._values.get(env_name)
        if value is None or str(value) == "":
            if required:
                raise ConfigurationError(f"secret {name!r} is not set (expected {env_name})")
            return None
        return str(value)
