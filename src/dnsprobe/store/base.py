from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from dnsprobe.domain import Domain


class StoreError(RuntimeError):
    pass


class StoreConnectError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


class PersistenceStore(ABC):
    """
    Durable home of domains and their measurements.

    save_domains() is the only place where pending events leave a Domain:
    it drains every queue it writes. Write failures raise StoreWriteError;
    the drained batch is not put back.
    """

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def load_domains(self) -> list[Domain]: ...

    @abstractmethod
    def add_domains(self, domains: Sequence[Domain]) -> None: ...

    @abstractmethod
    def delete_domains(self, domains: Sequence[Domain]) -> None: ...

    @abstractmethod
    def save_domains(self, domains: Sequence[Domain]) -> int:
        """Upsert aggregates, persist drained events, return the number of events written."""

    def __enter__(self) -> PersistenceStore:
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()
