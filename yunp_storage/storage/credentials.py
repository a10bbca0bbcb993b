# storage/credentials.py
from abc import ABC, abstractmethod
import asyncio
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Dict, Iterable, List, Optional

from .dto import ProviderKind, ProviderRegistration


class CredentialStore(ABC):
    """
    Persistence for ProviderRegistration records. Implementations hand out
    copies, so a caller mutating a returned record changes nothing until it
    is saved back.
    """

    @abstractmethod
    async def get(self, registration_id: str) -> Optional[ProviderRegistration]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str, include_inactive: bool = False) -> List[ProviderRegistration]:
        pass

    @abstractmethod
    async def save_many(self, registrations: Iterable[ProviderRegistration]) -> None:
        """Writes all records as one unit: either every record is stored or none is."""
        pass

    async def save(self, registration: ProviderRegistration) -> None:
        await self.save_many([registration])

    async def find(self, user_id: str, kind: ProviderKind) -> Optional[ProviderRegistration]:
        """Returns the user's active registration for a provider kind, if any."""
        for registration in await self.list_for_user(user_id):
            if registration.provider_kind == kind:
                return registration
        return None


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, registrations: Optional[Iterable[ProviderRegistration]] = None):
        self._records: Dict[str, ProviderRegistration] = {}
        self._lock = asyncio.Lock()
        for registration in registrations or []:
            self._records[registration.id] = registration.model_copy(deep=True)

    async def get(self, registration_id: str) -> Optional[ProviderRegistration]:
        record = self._records.get(registration_id)
        return record.model_copy(deep=True) if record else None

    async def list_for_user(self, user_id: str, include_inactive: bool = False) -> List[ProviderRegistration]:
        records = [
            r for r in self._records.values()
            if r.user_id == user_id and (include_inactive or r.is_active)
        ]
        records.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in records]

    async def save_many(self, registrations: Iterable[ProviderRegistration]) -> None:
        staged = {r.id: r.model_copy(deep=True) for r in registrations}
        async with self._lock:
            updated = dict(self._records)
            updated.update(staged)
            self._persist(updated)
            self._records = updated

    def _persist(self, records: Dict[str, ProviderRegistration]) -> None:
        """Hook for durable subclasses; raising here leaves the store unchanged."""
        pass


class JsonFileCredentialStore(InMemoryCredentialStore):
    """
    Keeps every registration in one JSON file, rewritten on each save through
    a temporary file and an atomic rename.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                for raw in json.load(f):
                    registration = ProviderRegistration.model_validate(raw)
                    self._records[registration.id] = registration
            logging.info(f"Loaded {len(self._records)} registrations from {self.path}")

    def _persist(self, records: Dict[str, ProviderRegistration]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in records.values()]
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
