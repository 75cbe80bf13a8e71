import dataclasses
import threading
from typing import Optional

from .models import Credentials


class CredentialStore:
    """In-memory holder of the current session tokens.

    One store belongs to one client and is handed to the dispatcher and the
    refresher explicitly. Every access goes through a lock, so requests
    running on other threads or tasks never observe a half-written pair.
    """

    def __init__(self, credentials: Optional[Credentials] = None):
        self._lock = threading.Lock()
        self._credentials = credentials

    def get(self) -> Optional[Credentials]:
        with self._lock:
            return self._credentials

    def set(self, credentials: Credentials) -> None:
        with self._lock:
            self._credentials = credentials

    def clear(self) -> None:
        with self._lock:
            self._credentials = None

    def expire(self, access_token: str) -> bool:
        """Force a refresh on next use if ``access_token`` is still current."""
        with self._lock:
            current = self._credentials
            if current is None or current.access_token != access_token:
                return False
            self._credentials = dataclasses.replace(current, expires_at=0.0)
            return True
