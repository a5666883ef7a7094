import threading
from typing import Dict, Optional

from status_models import StatusSnapshot


class StatusTracker:
    """Remembers the last snapshot seen per application ID, in process memory only."""

    def __init__(self) -> None:
        self._statuses: Dict[str, StatusSnapshot] = {}
        self._lock = threading.Lock()

    def update_status(self, application_id: str, snapshot: StatusSnapshot) -> bool:
        """Store ``snapshot`` and report whether it differs from the previous one.

        The first snapshot for an application always counts as a change.
        """
        with self._lock:
            current = self._statuses.get(application_id)
            if current is not None and current == snapshot:
                return False
            self._statuses[application_id] = snapshot
            return True

    def get(self, application_id: str) -> Optional[StatusSnapshot]:
        with self._lock:
            return self._statuses.get(application_id)

    def forget(self, application_id: str) -> None:
        with self._lock:
            self._statuses.pop(application_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)
