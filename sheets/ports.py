"""Ports (interfaces) the trigger core needs from the table service.

Record, field and table lookups are synchronous request/response calls. The
scheduler and processor only depend on these contracts; ``sheets.catalog``
provides the SQL-backed implementations.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Protocol

from sqlalchemy.orm import Session

from sheets.triggers.models import FieldInfo, TableInfo


class RecordReader(Protocol):
    """Read access to a table's physical record rows."""

    def get_record(self, table_id: str, view_id: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Return the active record snapshot seen through a view, or None."""
        ...

    def get_row(self, db_table_name: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Return the active physical row, or None."""
        ...

    def list_record_ids(self, db_table_name: str, db_field_name: str, limit: int, offset: int) -> List[int]:
        """Page through active record ids whose column is not null, ordered by id."""
        ...

    def count_records(self, db_table_name: str, db_field_name: str) -> int:
        ...


class FieldCatalog(Protocol):
    def get_fields(self, field_ids: Iterable[int]) -> List[FieldInfo]:
        ...


class TableCatalog(Protocol):
    def get_table(self, table_id: str) -> Optional[TableInfo]:
        ...

    def get_first_view_id(self, table_id: str) -> Optional[str]:
        """First non-deleted view by order, or None."""
        ...


class TriggerPorts(NamedTuple):
    records: RecordReader
    fields: FieldCatalog
    tables: TableCatalog


PortsFactory = Callable[[Session], TriggerPorts]
