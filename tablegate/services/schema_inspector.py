# ABOUTME: Live schema introspection for the exposed database tables
# ABOUTME: Lists tables, describes columns and finds primary keys via SQLAlchemy's inspector

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine


class SchemaInspector:
    """
    Describes tables of the connected database.

    Column descriptions are cached per table for the lifetime of the
    inspector; call ``refresh()`` after DDL changes.
    """

    def __init__(self, engine: Engine, hidden_tables: Iterable[str] = ()):
        self.engine = engine
        self.hidden_tables = set(hidden_tables)
        self._columns: Dict[str, List[Dict[str, Any]]] = {}

    def get_tables(self) -> List[str]:
        """
        List the tables exposed through the API.

        Returns:
            Sorted table names, excluding hidden tables
        """
        names = inspect(self.engine).get_table_names()
        return sorted(name for name in names if name not in self.hidden_tables)

    def has_table(self, table: str) -> bool:
        """
        Check if a table exists and is exposed.

        Args:
            table: Name of the table to check

        Returns:
            True if table exists and is not hidden, False otherwise
        """
        if table in self.hidden_tables:
            return False
        return inspect(self.engine).has_table(table)

    def get_columns(self, table: str) -> List[Dict[str, Any]]:
        """
        Describe the columns of a table.

        Args:
            table: Name of an existing table

        Returns:
            One dict per column with Field, Type, Null, Key, Default and Extra
        """
        if table not in self._columns:
            inspector = inspect(self.engine)
            pk_columns = set(inspector.get_pk_constraint(table).get("constrained_columns") or [])
            described = []
            for column in inspector.get_columns(table):
                described.append({
                    "Field": column["name"],
                    "Type": str(column["type"]),
                    "Null": "YES" if column.get("nullable", True) else "NO",
                    "Key": "PRI" if column["name"] in pk_columns else "",
                    "Default": column.get("default"),
                    "Extra": "auto_increment" if column.get("autoincrement") is True else "",
                })
            self._columns[table] = described
        return self._columns[table]

    def column_names(self, table: str) -> List[str]:
        return [column["Field"] for column in self.get_columns(table)]

    def get_primary_key(self, table: str) -> Optional[str]:
        """First primary key column of a table, or None."""
        for column in self.get_columns(table):
            if column["Key"] == "PRI":
                return column["Field"]
        return None

    def refresh(self, table: Optional[str] = None) -> None:
        if table is None:
            self._columns.clear()
        else:
            self._columns.pop(table, None)
