"""Column definitions and row mapping for the normalized order tables.

Every normalized column has exactly one legacy meta key counterpart.  The
mapping is shared by both migration directions: :meth:`TableSchema.from_legacy`
and :meth:`TableSchema.to_legacy` translate between meta rows and field values,
while :meth:`TableSchema.to_columns` and :meth:`TableSchema.from_columns` do the
same for normalized rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytz
from dateutil.parser import parse as dateutil_parse

TRUE_TOKEN = "yes"
FALSE_TOKEN = "no"
COLUMN_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUTHY_STRINGS = {"yes", "true", "1", "on"}
_SQL_TYPES = {
    "string": "TEXT",
    "text": "TEXT",
    "decimal": "TEXT",
    "boolean": "TEXT",
    "integer": "INTEGER",
    "datetime": "TEXT",
}


class SchemaConfigurationError(Exception):
    """Raised when a table schema has an incomplete or ambiguous legacy mapping."""


def string_to_bool(value: Any) -> bool:
    """Decode a legacy or normalized boolean token."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_STRINGS
    return bool(value)


def bool_to_string(value: Any) -> str:
    return TRUE_TOKEN if string_to_bool(value) else FALSE_TOKEN


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


@dataclass(frozen=True)
class ColumnDefinition:
    """A single normalized column and the legacy meta key it replaces."""

    name: str
    meta_key: str
    field_type: str = "string"

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self.field_type]

    def clean(self, value: Any) -> Any:
        """Normalise an arbitrary input value to the field's domain type."""
        if value is None:
            return None
        if self.field_type in {"string", "text"}:
            return str(value)
        if isinstance(value, str) and not value.strip():
            return None
        if self.field_type == "decimal":
            try:
                parsed = Decimal(str(value).strip())
            except InvalidOperation as exc:
                raise ValueError(f"Invalid decimal value for {self.name}: {value!r}") from exc
            if not parsed.is_finite():
                raise ValueError(f"Non-finite decimal value for {self.name}: {value!r}")
            return parsed
        if self.field_type == "integer":
            return int(value)
        if self.field_type == "boolean":
            return string_to_bool(value)
        if self.field_type == "datetime":
            if isinstance(value, datetime):
                return _to_utc(value)
            try:
                if isinstance(value, (int, float)) or str(value).strip().isdigit():
                    return datetime.fromtimestamp(int(value), pytz.utc)
                return _to_utc(dateutil_parse(str(value)))
            except (OverflowError, OSError) as exc:
                raise ValueError(f"Timestamp out of range for {self.name}: {value!r}") from exc
        return value

    def to_column(self, value: Any) -> Any:
        value = self.clean(value)
        if value is None:
            return None
        if self.field_type == "decimal":
            return str(value)
        if self.field_type == "boolean":
            return bool_to_string(value)
        if self.field_type == "datetime":
            return value.strftime(COLUMN_DATETIME_FORMAT)
        return value

    def from_column(self, value: Any) -> Any:
        return self.clean(value)

    def to_legacy(self, value: Any) -> Optional[str]:
        value = self.clean(value)
        if value is None:
            return None
        if self.field_type == "boolean":
            return bool_to_string(value)
        if self.field_type == "datetime":
            return str(int(value.timestamp()))
        return str(value)

    def from_legacy(self, raw: Optional[str]) -> Any:
        return self.clean(raw)


@dataclass
class TableSchema:
    """Describes one normalized table and its legacy attribute counterpart."""

    entity_type: str
    table_name: str
    columns: Dict[str, ColumnDefinition]
    _columns_by_meta_key: Dict[str, ColumnDefinition] = field(
        init=False, default_factory=dict, repr=False
    )

    def __post_init__(self) -> None:
        errors: List[str] = []
        for name, definition in self.columns.items():
            if name != definition.name:
                errors.append(f"column {name!r} is registered as {definition.name!r}")
            if name == "order_id":
                errors.append("order_id is the key column and cannot be mapped")
            if definition.field_type not in _SQL_TYPES:
                errors.append(f"column {name!r} has unknown type {definition.field_type!r}")
            if not definition.meta_key:
                errors.append(f"column {name!r} has no legacy meta key")
                continue
            if definition.meta_key in self._columns_by_meta_key:
                other = self._columns_by_meta_key[definition.meta_key].name
                errors.append(
                    f"meta key {definition.meta_key!r} is mapped by both {other!r} and {name!r}"
                )
                continue
            self._columns_by_meta_key[definition.meta_key] = definition
        if errors:
            raise SchemaConfigurationError(
                f"Invalid mapping for {self.table_name}: " + "; ".join(errors)
            )

    @property
    def column_names(self) -> List[str]:
        return list(self.columns)

    @property
    def meta_keys(self) -> List[str]:
        return [definition.meta_key for definition in self.columns.values()]

    def legacy_mapping(self) -> Dict[str, str]:
        """Return the column name to meta key mapping."""
        return {name: definition.meta_key for name, definition in self.columns.items()}

    def column_for_meta_key(self, meta_key: str) -> Optional[ColumnDefinition]:
        return self._columns_by_meta_key.get(meta_key)

    def to_columns(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Serialise every tracked field into normalized column values."""
        return {
            name: definition.to_column(values.get(name))
            for name, definition in self.columns.items()
        }

    def from_columns(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Decode a normalized row, ignoring the key column and unknown columns."""
        return {
            name: definition.from_column(row[name])
            for name, definition in self.columns.items()
            if name in row
        }

    def from_legacy(self, attributes: Mapping[str, Optional[str]]) -> Dict[str, Any]:
        """Decode the mapped subset of a legacy attribute set."""
        values: Dict[str, Any] = {}
        for meta_key, raw in attributes.items():
            definition = self._columns_by_meta_key.get(meta_key)
            if definition is None:
                continue
            values[definition.name] = definition.from_legacy(raw)
        return values

    def to_legacy(self, values: Mapping[str, Any]) -> Dict[str, str]:
        """Encode field values as legacy meta values, skipping empty fields."""
        attributes: Dict[str, str] = {}
        for name, definition in self.columns.items():
            encoded = definition.to_legacy(values.get(name))
            if encoded is not None:
                attributes[definition.meta_key] = encoded
        return attributes

    def create_statement(self) -> str:
        column_sql = ",\n".join(
            f"    {definition.name} {definition.sql_type}"
            for definition in self.columns.values()
        )
        return (
            f"CREATE TABLE IF NOT EXISTS {self.table_name} (\n"
            "    order_id INTEGER PRIMARY KEY NOT NULL,\n"
            f"{column_sql},\n"
            "    FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE\n"
            ");"
        )


def _columns(definitions: Iterable[ColumnDefinition]) -> Dict[str, ColumnDefinition]:
    return {definition.name: definition for definition in definitions}


_TOTAL_COLUMNS = [
    ColumnDefinition("discount_total", "_cart_discount", "decimal"),
    ColumnDefinition("discount_tax", "_cart_discount_tax", "decimal"),
    ColumnDefinition("shipping_total", "_order_shipping", "decimal"),
    ColumnDefinition("shipping_tax", "_order_shipping_tax", "decimal"),
    ColumnDefinition("cart_tax", "_order_tax", "decimal"),
    ColumnDefinition("total", "_order_total", "decimal"),
    ColumnDefinition("version", "_order_version", "string"),
    ColumnDefinition("currency", "_order_currency", "string"),
    ColumnDefinition("prices_include_tax", "_prices_include_tax", "boolean"),
]

ORDER_SCHEMA = TableSchema(
    entity_type="shop_order",
    table_name="order_table",
    columns=_columns(
        [
            ColumnDefinition("order_key", "_order_key", "string"),
            ColumnDefinition("customer_id", "_customer_user", "integer"),
            ColumnDefinition("billing_email", "_billing_email", "string"),
            ColumnDefinition("payment_method", "_payment_method", "string"),
            ColumnDefinition("payment_method_title", "_payment_method_title", "string"),
            ColumnDefinition("transaction_id", "_transaction_id", "string"),
            ColumnDefinition("customer_ip_address", "_customer_ip_address", "string"),
            ColumnDefinition("created_via", "_created_via", "string"),
            ColumnDefinition("cart_hash", "_cart_hash", "string"),
            ColumnDefinition("date_paid", "_date_paid", "datetime"),
            ColumnDefinition("date_completed", "_date_completed", "datetime"),
            *_TOTAL_COLUMNS,
        ]
    ),
)

REFUND_SCHEMA = TableSchema(
    entity_type="shop_order_refund",
    table_name="refund_table",
    columns=_columns(
        [
            *_TOTAL_COLUMNS,
            ColumnDefinition("amount", "_refund_amount", "decimal"),
            ColumnDefinition("reason", "_refund_reason", "text"),
            ColumnDefinition("refunded_by", "_refunded_by", "integer"),
        ]
    ),
)

SCHEMAS: Dict[str, TableSchema] = {
    ORDER_SCHEMA.entity_type: ORDER_SCHEMA,
    REFUND_SCHEMA.entity_type: REFUND_SCHEMA,
}
