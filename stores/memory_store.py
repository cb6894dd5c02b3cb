from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from stores.interfaces import CredentialStoreError, CredentialValue


class MemoryStore:
    """Simple in-memory backend for local development and tests."""

    def __init__(self, namespace: str = "openproject"):
        self.namespace = namespace
        self._values: dict[tuple[str, str], CredentialValue] = {}
        self._lock = threading.Lock()

    def save(self, key: str, value: CredentialValue) -> None:
        if not isinstance(value, (str, datetime, bytes)):
            raise CredentialStoreError(f"Unsupported credential value type: {type(value).__name__}")
        with self._lock:
            self._values[(self.namespace, key)] = value

    def read(self, key: str) -> Optional[CredentialValue]:
        with self._lock:
            return self._values.get((self.namespace, key))

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop((self.namespace, key), None)
