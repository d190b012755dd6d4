"""
Repository port.

Every write is conditional:
- create fails with ConflictError when the key already exists
- update/delete take an ``expected`` mapping of field -> value (``version`` included)
  and fail with ConflictError when the persisted record no longer matches

Callers own the read-decide-write loop; see core.retry.retry_on_conflict.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar

from core.exceptions import NotFoundError

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Typed access to one entity's records."""

    entity: str = "record"
    key_field: str = "id"

    @abstractmethod
    def get(self, record_id: str) -> Optional[T]:
        """Return the record or None."""

    @abstractmethod
    def query(self, **filters: Any) -> List[T]:
        """Return records whose fields equal every given filter value."""

    @abstractmethod
    def create(self, item: T) -> T:
        """Insert if the key is free; ConflictError otherwise."""

    @abstractmethod
    def create_batch(self, items: Iterable[T]) -> List[T]:
        """Insert all items or none of them."""

    @abstractmethod
    def update(
        self,
        record_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Apply ``changes`` only if the record still matches ``expected``."""

    @abstractmethod
    def delete(self, record_id: str, expected: Optional[Dict[str, Any]] = None) -> T:
        """Remove the record only if it still matches ``expected``."""

    def require(self, record_id: str) -> T:
        item = self.get(record_id)
        if item is None:
            raise NotFoundError(self.entity, record_id)
        return item

    def require_owned(self, record_id: str, user_id: str) -> T:
        """Records owned by another user are reported as missing."""
        item = self.get(record_id)
        if item is None or getattr(item, "user_id", None) != user_id:
            raise NotFoundError(self.entity, record_id)
        return item

    def query_by_owner(self, user_id: str, **filters: Any) -> List[T]:
        return self.query(user_id=user_id, **filters)

    def key_of(self, item: T) -> str:
        return getattr(item, self.key_field)
