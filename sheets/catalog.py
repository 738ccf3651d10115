# sheets/catalog.py
"""SQL implementations of the record, field and table ports."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import column, func, literal_column, select, table
from sqlalchemy.orm import Session

from sheets.db.models import Field, TableMeta, View
from sheets.ports import TriggerPorts
from sheets.triggers.models import ACTIVE, FieldInfo, TableInfo

logger = logging.getLogger(__name__)

RECORD_ID_COLUMN = "__id"
RECORD_STATUS_COLUMN = "__status"


def split_table_name(db_table_name: str) -> tuple[str | None, str]:
    """Split "schema.table" into its parts; bare names have no schema."""
    parts = db_table_name.split(".")
    if len(parts) == 2:
        return parts[0], parts[1]
    return None, db_table_name


def _record_table(db_table_name: str, *extra_columns: str):
    schema, name = split_table_name(db_table_name)
    columns = [column(RECORD_ID_COLUMN), column(RECORD_STATUS_COLUMN)]
    columns.extend(column(extra) for extra in extra_columns)
    return table(name, *columns, schema=schema)


class SqlTableCatalog:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_table(self, table_id: str) -> Optional[TableInfo]:
        row = self._session.get(TableMeta, table_id)
        if row is None or row.status != ACTIVE:
            return None
        return TableInfo.model_validate(row)

    def get_first_view_id(self, table_id: str) -> Optional[str]:
        view = (
            self._session.query(View)
            .filter(View.table_id == table_id)
            .filter(View.deleted_time.is_(None))
            .order_by(View.order.asc())
            .first()
        )
        return view.id if view else None


class SqlFieldCatalog:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_fields(self, field_ids: Iterable[int]) -> List[FieldInfo]:
        ids = list(set(field_ids))
        if not ids:
            return []
        rows = self._session.query(Field).filter(Field.id.in_(ids)).all()
        return [FieldInfo.model_validate(row) for row in rows]


class SqlRecordReader:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_record(self, table_id: str, view_id: str, record_id: int) -> Optional[Dict[str, Any]]:
        view = self._session.get(View, view_id)
        if view is None or view.table_id != table_id or view.deleted_time is not None:
            return None
        table_meta = self._session.get(TableMeta, table_id)
        if table_meta is None:
            return None
        return self.get_row(table_meta.db_table_name, record_id)

    def get_row(self, db_table_name: str, record_id: int) -> Optional[Dict[str, Any]]:
        records = _record_table(db_table_name)
        # Physical tables carry one column per field; take the whole row.
        query = (
            select(literal_column("*"))
            .select_from(records)
            .where(records.c[RECORD_ID_COLUMN] == record_id)
            .where(records.c[RECORD_STATUS_COLUMN] == ACTIVE)
        )
        row = self._session.execute(query).mappings().first()
        return dict(row) if row else None

    def list_record_ids(self, db_table_name: str, db_field_name: str, limit: int, offset: int) -> List[int]:
        records = _record_table(db_table_name, db_field_name)
        query = (
            select(records.c[RECORD_ID_COLUMN])
            .where(records.c[RECORD_STATUS_COLUMN] == ACTIVE)
            .where(records.c[db_field_name].is_not(None))
            .order_by(records.c[RECORD_ID_COLUMN])
            .limit(limit)
            .offset(offset)
        )
        return [int(record_id) for record_id in self._session.execute(query).scalars()]

    def count_records(self, db_table_name: str, db_field_name: str) -> int:
        records = _record_table(db_table_name, db_field_name)
        query = (
            select(func.count())
            .select_from(records)
            .where(records.c[RECORD_STATUS_COLUMN] == ACTIVE)
            .where(records.c[db_field_name].is_not(None))
        )
        return int(self._session.execute(query).scalar() or 0)


def sql_ports(session: Session) -> TriggerPorts:
    """Build ports that read through the given session (and its transaction)."""
    return TriggerPorts(
        records=SqlRecordReader(session),
        fields=SqlFieldCatalog(session),
        tables=SqlTableCatalog(session),
    )
