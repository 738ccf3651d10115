# sheets/db/models.py
# Metadata tables owned by the table service. Read-only from the trigger core.

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class TableMeta(Base):
    __tablename__ = "table_meta"

    id = Column(String, primary_key=True)
    base_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    # "schema.table" on Postgres, bare table name otherwise
    db_table_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    created_time = Column(DateTime, server_default=func.now(), nullable=False)


class View(Base):
    __tablename__ = "view"

    id = Column(String, primary_key=True)
    table_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    order = Column(Integer, nullable=False, default=0)
    deleted_time = Column(DateTime(timezone=True), nullable=True)


class Field(Base):
    __tablename__ = "field"

    id = Column(Integer, primary_key=True, autoincrement=True)
    table_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # "DATE", "CREATED_TIME", "SHORT_TEXT", ...
    db_field_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
