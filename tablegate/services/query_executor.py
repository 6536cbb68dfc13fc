# ABOUTME: Query executor for table CRUD operations
# ABOUTME: Builds parameterized SELECT/INSERT/UPDATE/DELETE statements and returns rows with pagination meta

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tablegate.models.errors import ApiError, ErrorKind, not_found, validation_error
from tablegate.models.requests import QueryOptions
from tablegate.services.filters import compile_filters, compile_sort, is_safe_identifier, select_fields
from tablegate.services.schema_inspector import SchemaInspector

logger = structlog.get_logger()

Row = Dict[str, Any]


class QueryExecutor:
    """
    Runs CRUD statements against tables that the caller has already validated.

    Identifiers are still quoted with the engine dialect, and every value is
    sent as a bound parameter.
    """

    def __init__(self, engine: Engine, inspector: SchemaInspector):
        self.engine = engine
        self.inspector = inspector
        self.session_factory = sessionmaker(bind=engine, autoflush=False)
        self.quote = engine.dialect.identifier_preparer.quote_identifier

    def _primary_key(self, table: str) -> str:
        return self.inspector.get_primary_key(table) or "id"

    def _writable(self, table: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Keep only keys that are real, safely named columns of the table."""
        columns = set(self.inspector.column_names(table))
        return {k: v for k, v in data.items() if k in columns and is_safe_identifier(k)}

    def _insert_sql(self, table: str, values: Mapping[str, Any]) -> Tuple[str, Dict[str, Any], bool]:
        """
        INSERT statement for one row.

        When the database generates the primary key and the dialect supports
        it, ``RETURNING`` is appended so the new key is read from the result
        rather than the driver's ``lastrowid``.
        """
        names = list(values)
        columns = ", ".join(self.quote(name) for name in names)
        placeholders = ", ".join(f":v_{i}" for i in range(len(names)))
        params = {f"v_{i}": values[name] for i, name in enumerate(names)}
        sql = f"INSERT INTO {self.quote(table)} ({columns}) VALUES ({placeholders})"

        pk = self.inspector.get_primary_key(table)
        if pk and pk not in values and self.engine.dialect.insert_returning:
            return f"{sql} RETURNING {self.quote(pk)}", params, True
        return sql, params, False

    def list(self, table: str, opts: QueryOptions) -> Dict[str, Any]:
        """
        Return one page of rows plus pagination metadata.

        Args:
            table: Validated table name
            opts: Field selection, filter, sort and pagination options

        Returns:
            {"data": [...], "meta": {"total", "page", "page_size", "pages"}}
        """
        columns = self.inspector.column_names(table)
        select_clause = select_fields(columns, opts.field_list(), self.quote)
        compiled = compile_filters(columns, opts.filter, self.quote)
        order_by = compile_sort(columns, opts.sort, self.quote) or ""
        table_name = self.quote(table)
        where_clause = compiled.sql()

        with self.session_factory() as db:
            # Get total count with filters
            count_query = text(f"SELECT COUNT(*) AS total FROM {table_name} {where_clause}")
            total = db.execute(count_query, compiled.params).scalar() or 0

            # Get paginated data with field selection, filters and sorting
            data_query = text(
                f"SELECT {select_clause} FROM {table_name} {where_clause} {order_by} "
                "LIMIT :_limit OFFSET :_offset"
            )
            params = {**compiled.params, "_limit": opts.page_size, "_offset": opts.offset}
            result = db.execute(data_query, params)

            # Convert rows to dictionaries
            rows = result.fetchall()
            keys = list(result.keys())
            data = [dict(zip(keys, row)) for row in rows]

        return {
            "data": data,
            "meta": {
                "total": total,
                "page": opts.page,
                "page_size": opts.page_size,
                "pages": math.ceil(total / opts.page_size) if total else 0,
            },
        }

    def count(self, table: str, opts: QueryOptions) -> Dict[str, int]:
        """Count rows matching the filter expression."""
        columns = self.inspector.column_names(table)
        compiled = compile_filters(columns, opts.filter, self.quote)
        with self.session_factory() as db:
            query = text(f"SELECT COUNT(*) FROM {self.quote(table)} {compiled.sql()}")
            return {"count": int(db.execute(query, compiled.params).scalar() or 0)}

    def read(self, table: str, record_id: Any) -> Optional[Row]:
        """Fetch a single row by primary key, or None when it does not exist."""
        pk = self._primary_key(table)
        query = text(f"SELECT * FROM {self.quote(table)} WHERE {self.quote(pk)} = :id LIMIT 1")
        with self.session_factory() as db:
            row = db.execute(query, {"id": record_id}).mappings().first()
        return dict(row) if row is not None else None

    def create(self, table: str, data: Mapping[str, Any]) -> Union[Row, ApiError]:
        """
        Insert one row and return it as stored.

        The row is re-read after the insert so database defaults and
        triggers are reflected in the result.
        """
        values = self._writable(table, data)
        if not values:
            return validation_error("No valid columns in request body")

        pk = self._primary_key(table)
        sql, params, returning = self._insert_sql(table, values)
        with self.session_factory() as db:
            result = db.execute(text(sql), params)
            new_id = result.scalar() if returning else values.get(pk, result.lastrowid)
            db.commit()

        logger.debug("query_executor.created", table=table, id=new_id)
        return self.read(table, new_id) or {pk: new_id, **values}

    def update(self, table: str, record_id: Any, data: Mapping[str, Any]) -> Union[Row, ApiError]:
        """
        Update one row by primary key.

        When no row is affected, the id is looked up again: a missing row is
        a not-found error, while an existing row whose values did not change
        is returned as-is.
        """
        values = self._writable(table, data)
        if not values:
            return validation_error("No valid columns to update")

        pk = self._primary_key(table)
        assignments = ", ".join(f"{self.quote(name)} = :v_{i}" for i, name in enumerate(values))
        params = {f"v_{i}": value for i, value in enumerate(values.values())}
        params["_id"] = record_id
        query = text(f"UPDATE {self.quote(table)} SET {assignments} WHERE {self.quote(pk)} = :_id")

        with self.session_factory() as db:
            result = db.execute(query, params)
            db.commit()
            affected = result.rowcount

        current = self.read(table, values.get(pk, record_id) if affected else record_id)
        if current is None:
            return not_found(f"Record {record_id} not found in {table}")
        return current

    def delete(self, table: str, record_id: Any) -> Union[Dict[str, bool], ApiError]:
        pk = self._primary_key(table)
        query = text(f"DELETE FROM {self.quote(table)} WHERE {self.quote(pk)} = :id")
        with self.session_factory() as db:
            result = db.execute(query, {"id": record_id})
            db.commit()
            if result.rowcount == 0:
                return not_found(f"Record {record_id} not found in {table}")
        return {"success": True}

    def bulk_create(self, table: str, records: Sequence[Mapping[str, Any]]) -> Union[Dict[str, Any], ApiError]:
        """
        Insert many rows in one transaction.

        Any failing record rolls back the whole batch; nothing is written
        unless every record is inserted.

        Returns:
            {"success": True, "created": n, "data": [rows]} or an ApiError
        """
        pk = self._primary_key(table)
        created_ids: List[Any] = []
        try:
            with self.session_factory() as db, db.begin():
                for index, record in enumerate(records):
                    if not isinstance(record, Mapping):
                        raise ValueError(f"Record {index} is not an object")
                    values = self._writable(table, record)
                    if not values:
                        raise ValueError(f"Record {index} has no valid columns")
                    sql, params, returning = self._insert_sql(table, values)
                    result = db.execute(text(sql), params)
                    created_ids.append(result.scalar() if returning else values.get(pk, result.lastrowid))
        except Exception as exc:
            reason = str(getattr(exc, "orig", None) or exc)
            logger.warning("query_executor.bulk_create_rolled_back", table=table, error=reason)
            return ApiError(ErrorKind.VALIDATION, f"Bulk insert failed, no records were created: {reason}")

        data = [self.read(table, new_id) for new_id in created_ids]
        return {"success": True, "created": len(created_ids), "data": data}

    def bulk_delete(self, table: str, ids: Sequence[Any]) -> Dict[str, Any]:
        """Delete rows by primary key; ids that do not exist are simply not counted."""
        pk = self._primary_key(table)
        placeholders = ", ".join(f":id_{i}" for i in range(len(ids)))
        params = {f"id_{i}": value for i, value in enumerate(ids)}
        query = text(f"DELETE FROM {self.quote(table)} WHERE {self.quote(pk)} IN ({placeholders})")
        with self.session_factory() as db:
            result = db.execute(query, params)
            db.commit()
            deleted = result.rowcount
        return {"success": True, "deleted": deleted}
