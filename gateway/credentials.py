import os
from typing import Dict, Mapping, Optional

from .errors import MissingCredentialError


class CredentialSource:
    """Lazy, memoized lookup of provider credentials.

    Nothing is read at construction time, so a provider that is never
    dispatched to never needs its key to be present.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env = env
        self._resolved: Dict[str, str] = {}

    def _read(self, key: str) -> Optional[str]:
        source = self._env if self._env is not None else os.environ
        raw = source.get(key)
        if not raw:
            return None
        value = raw.strip()
        return value or None

    def get(self, key: str) -> Optional[str]:
        if key in self._resolved:
            return self._resolved[key]
        value = self._read(key)
        if value is not None:
            self._resolved[key] = value
        return value

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise MissingCredentialError(f"{key} not configured in env")
        return value
