"""
Officer Directory Module

Display-name lookup for the officers who reserve, approve or reject loans.
Names are cosmetic: they are copied onto the loan when it is written and
never re-validated afterwards.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import threading


class OfficerDirectory(ABC):
    """Lookup interface backed by the employee directory"""

    @abstractmethod
    def get_display_name(self, officer_id: str) -> Optional[str]:
        """Display name for an officer, or None when unknown"""
        pass


class InMemoryOfficerDirectory(OfficerDirectory):
    """Directory kept in a dict; used by tests and single-process deployments"""

    def __init__(self, officers: Optional[Dict[str, str]] = None):
        self._officers: Dict[str, str] = dict(officers or {})
        self._lock = threading.Lock()

    def register(self, officer_id: str, display_name: str) -> None:
        with self._lock:
            self._officers[officer_id] = display_name

    def get_display_name(self, officer_id: str) -> Optional[str]:
        if not officer_id:
            return None
        with self._lock:
            return self._officers.get(officer_id)
