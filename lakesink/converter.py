from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any
import pyarrow as pa

from lakesink.models import InternalRow, Record
from lakesink.table.file_store import TableSchema

def _coerce(value: Any, typ: pa.DataType) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if pa.types.is_timestamp(typ):
            value = datetime.fromisoformat(value)
        elif pa.types.is_date(typ):
            value = date.fromisoformat(value)
    if pa.types.is_decimal(typ) and not isinstance(value, Decimal):
        value = Decimal(str(value))
    return pa.scalar(value, type=typ).as_py()

def convert_row(record: Record, row_type: pa.Schema, table_schema: TableSchema) -> InternalRow:
    """Map a record laid out by `row_type` onto the table's field order and types."""
    if len(record.fields) != len(row_type):
        raise ValueError(f"record has {len(record.fields)} fields, row type declares {len(row_type)}")
    by_name = dict(zip(row_type.names, record.fields))
    unknown = [n for n in row_type.names if table_schema.index_of(n) < 0]
    if unknown:
        raise ValueError(f"fields {unknown} are not in the table schema")

    values = []
    for f in table_schema.fields:
        v = by_name.get(f.name)
        if v is None and not f.nullable:
            raise ValueError(f"field {f.name!r} is not nullable")
        try:
            values.append(_coerce(v, f.type))
        except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError, ArithmeticError) as exc:
            raise ValueError(f"field {f.name!r}: cannot convert {v!r} to {f.type}") from exc
    return InternalRow(kind=record.kind, values=tuple(values))
