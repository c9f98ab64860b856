"""Generic repository interface (Dependency Inversion Principle).

Provides ``IRepository[T]``, the base contract every order-side
repository extends.  Writes are staged with ``add``/``update`` and
flushed by ``save``, which reports the number of affected rows; the
unit of work decides when ``save`` runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

T = TypeVar("T")


class IRepository(ABC, Generic[T]):
    """Base generic repository contract.

    Type parameter ``T`` is the entity managed by the repository
    (e.g. ``Order``, ``OrderPayment``).
    """

    @abstractmethod
    def add(self, entity: T) -> None:
        """Stage a new entity for insertion."""

    @abstractmethod
    def save(self) -> int:
        """Flush staged writes and return the affected-row count."""

    @abstractmethod
    def discard(self) -> None:
        """Forget every staged write without touching storage."""
