"""In-memory order and refund records with an explicit change journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from services.order_schema import ORDER_SCHEMA, REFUND_SCHEMA, TableSchema


class OrderRecord:
    """A shop order identified by its integer ID.

    Field values are always stored in their cleaned domain form.  Every
    mutation made through :meth:`set` is journaled with the value the field held
    before its first change, so persistence layers can write only what moved.
    """

    schema: ClassVar[TableSchema] = ORDER_SCHEMA
    order_type: ClassVar[str] = "shop_order"

    def __init__(
        self,
        record_id: int,
        *,
        parent_id: int = 0,
        status: str = "pending",
        created_at: Optional[str] = None,
    ) -> None:
        self.id = int(record_id)
        self.parent_id = int(parent_id or 0)
        self.status = status
        self.created_at = created_at
        self.migrated = False
        self._data: Dict[str, Any] = {name: None for name in self.schema.columns}
        self._journal: Dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} migrated={self.migrated}>"

    def get(self, name: str) -> Any:
        if name not in self._data:
            raise KeyError(f"Unknown field '{name}' for {self.order_type}")
        return self._data[name]

    def set(self, name: str, value: Any) -> None:
        if name not in self._data:
            raise KeyError(f"Unknown field '{name}' for {self.order_type}")
        cleaned = self.schema.columns[name].clean(value)
        current = self._data[name]
        if cleaned == current:
            return
        if name not in self._journal:
            self._journal[name] = current
        elif self._journal[name] == cleaned:
            # Reverted to the persisted value.
            del self._journal[name]
        self._data[name] = cleaned

    def set_props(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set(name, value)

    def get_data(self) -> Dict[str, Any]:
        return dict(self._data)

    def get_changes(self) -> Dict[str, Any]:
        """Return the fields changed since the last persisted state."""
        return {name: self._data[name] for name in self._journal}

    def journal(self) -> List[Tuple[str, Any]]:
        """Return ``(field, old_value)`` pairs for every pending change."""
        return list(self._journal.items())

    def apply_changes(self) -> None:
        """Mark the current values as persisted."""
        self._journal.clear()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.order_type,
            "parent_id": self.parent_id,
            "status": self.status,
            "created_at": self.created_at,
            "migrated": self.migrated,
        }
        for name, value in self._data.items():
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[name] = value
        return payload


class RefundRecord(OrderRecord):
    """A refund attached to a parent order."""

    schema: ClassVar[TableSchema] = REFUND_SCHEMA
    order_type: ClassVar[str] = "shop_order_refund"


RECORD_TYPES: Dict[str, Type[OrderRecord]] = {
    OrderRecord.order_type: OrderRecord,
    RefundRecord.order_type: RefundRecord,
}


def record_class_for(order_type: str) -> Optional[Type[OrderRecord]]:
    return RECORD_TYPES.get(order_type)


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading a record; carries either the record or a reason."""

    record: Optional[OrderRecord] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.record is not None

    @classmethod
    def success(cls, record: OrderRecord) -> "LoadResult":
        return cls(record=record)

    @classmethod
    def failure(cls, reason: str) -> "LoadResult":
        return cls(reason=reason)
