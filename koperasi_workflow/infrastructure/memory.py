"""In-process application store"""

import copy
import threading
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from koperasi_workflow.domain.exceptions import ConflictError, NotFoundError
from koperasi_workflow.domain.models import Application
from koperasi_workflow.domain.ports import ApplicationFilter, Expectation, Mutation

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def newest_first(app: Application) -> Tuple[datetime, str]:
    return (app.created_at or _EPOCH, app.number)


class InMemoryApplicationStore:
    """
    Thread-safe dict-backed store.

    Records go in and out as deep copies, so callers never hold a reference
    into the store and every write has to go through ``update``.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Application] = {}
        self._lock = threading.Lock()

    def get(self, app_id: str) -> Application:
        with self._lock:
            record = self._records.get(app_id)
            if record is None:
                raise NotFoundError(f"application {app_id} not found")
            return copy.deepcopy(record)

    def create(self, app: Application) -> str:
        with self._lock:
            if app.id in self._records:
                raise ConflictError(f"application {app.id} already exists")
            if any(existing.number == app.number for existing in self._records.values()):
                raise ConflictError(f"application number {app.number} is already taken")
            self._records[app.id] = copy.deepcopy(app)
        return app.id

    def update(self, app_id: str, expected: Expectation, mutate: Mutation) -> Application:
        with self._lock:
            record = self._records.get(app_id)
            if record is None:
                raise NotFoundError(f"application {app_id} not found")
            if not expected.matches(record):
                raise ConflictError(f"{record.number} was modified concurrently; reload and retry")

            # Mutate a copy so a failing mutation leaves the stored record untouched
            working = copy.deepcopy(record)
            mutate(working)
            working.version = record.version + 1
            self._records[app_id] = working
            return copy.deepcopy(working)

    def list(
        self,
        query: ApplicationFilter = ApplicationFilter(),
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Application], int]:
        with self._lock:
            matches = sorted(
                (record for record in self._records.values() if query.matches(record)),
                key=newest_first,
                reverse=True,
            )
            offset = (page - 1) * page_size
            return [copy.deepcopy(record) for record in matches[offset:offset + page_size]], len(matches)
