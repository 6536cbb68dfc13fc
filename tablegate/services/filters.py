# ABOUTME: Filter and sort grammar compiler for list/count queries
# ABOUTME: Turns "col:op:value" and "col:dir" expressions into quoted SQL fragments with bound parameters

import re
from dataclasses import dataclass, field
from typing import Callable, Collection, Dict, List, Optional, Tuple

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Canonical operator -> SQL comparison. Aliases are normalised first.
COMPARISONS = {
    "eq": "=",
    "neq": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
}
OPERATOR_ALIASES = {"ne": "neq", "ge": "gte", "le": "lte", "nin": "notin"}
LIST_OPERATORS = {"in", "notin"}
NULL_OPERATORS = {"null", "notnull"}
OPERATORS = set(COMPARISONS) | LIST_OPERATORS | NULL_OPERATORS

SORT_DIRECTIONS = {"asc", "desc"}

Quote = Callable[[str], str]


def ansi_quote(identifier: str) -> str:
    """Double-quote an identifier, doubling embedded quotes."""
    return '"' + identifier.replace('"', '""') + '"'


def is_safe_identifier(name: str) -> bool:
    """Table and column names may only contain letters, digits and underscores."""
    return bool(IDENTIFIER_RE.match(name or ""))


@dataclass(frozen=True)
class FilterClause:
    column: str
    operator: str
    value: Optional[str] = None
    values: Tuple[str, ...] = ()


@dataclass
class CompiledFilter:
    where: List[str] = field(default_factory=list)
    params: Dict[str, str] = field(default_factory=dict)

    def sql(self) -> str:
        """WHERE clause including the keyword, or an empty string."""
        return "WHERE " + " AND ".join(self.where) if self.where else ""


def normalize_operator(operator: str) -> Optional[str]:
    op = operator.strip().lower()
    op = OPERATOR_ALIASES.get(op, op)
    return op if op in OPERATORS else None


def _valid_column(column: str, valid_columns: Collection[str]) -> bool:
    return is_safe_identifier(column) and column in valid_columns


def parse_filters(valid_columns: Collection[str], filter_expr: Optional[str]) -> List[FilterClause]:
    """
    Parse a filter expression into clauses, dropping anything malformed.

    Clauses are comma-separated. A two-part clause ``col:value`` means
    equality, or LIKE when the value carries a ``%`` or ``*`` wildcard. A
    three-part clause is ``col:operator:value``; the value may itself contain
    colons. Unknown columns and operators are skipped rather than rejected.

    Args:
        valid_columns: Column names of the target table
        filter_expr: Raw filter expression from the query string

    Returns:
        Clauses in input order
    """
    clauses: List[FilterClause] = []
    if not filter_expr:
        return clauses

    for raw in filter_expr.split(","):
        parts = raw.split(":", 2)
        if len(parts) == 2:
            column, value = parts[0].strip(), parts[1]
            if not _valid_column(column, valid_columns):
                continue
            if "%" in value or "*" in value:
                clauses.append(FilterClause(column, "like", value.replace("*", "%")))
            else:
                clauses.append(FilterClause(column, "eq", value))
        elif len(parts) == 3:
            column, operator, value = parts[0].strip(), normalize_operator(parts[1]), parts[2]
            if operator is None or not _valid_column(column, valid_columns):
                continue
            if operator in LIST_OPERATORS:
                clauses.append(FilterClause(column, operator, values=tuple(value.split("|"))))
            elif operator in NULL_OPERATORS:
                clauses.append(FilterClause(column, operator))
            else:
                clauses.append(FilterClause(column, operator, value))
    return clauses


def compile_filters(
    valid_columns: Collection[str],
    filter_expr: Optional[str],
    quote: Quote = ansi_quote,
) -> CompiledFilter:
    """
    Compile a filter expression into WHERE fragments and bound parameters.

    Every literal ends up in ``params``; the SQL only ever contains quoted,
    whitelisted column names and ``:name`` placeholders.
    """
    compiled = CompiledFilter()
    for counter, clause in enumerate(parse_filters(valid_columns, filter_expr)):
        column = quote(clause.column)
        key = f"{clause.column}_{counter}"

        if clause.operator in LIST_OPERATORS:
            placeholders = []
            for i, item in enumerate(clause.values):
                item_key = f"{key}_{clause.operator}_{i}"
                placeholders.append(f":{item_key}")
                compiled.params[item_key] = item
            keyword = "IN" if clause.operator == "in" else "NOT IN"
            compiled.where.append(f"{column} {keyword} ({', '.join(placeholders)})")
        elif clause.operator == "null":
            compiled.where.append(f"{column} IS NULL")
        elif clause.operator == "notnull":
            compiled.where.append(f"{column} IS NOT NULL")
        else:
            compiled.where.append(f"{column} {COMPARISONS[clause.operator]} :{key}")
            compiled.params[key] = clause.value
    return compiled


def parse_sort(valid_columns: Collection[str], sort_expr: Optional[str]) -> Optional[List[Tuple[str, str]]]:
    """
    Parse a sort expression into (column, direction) pairs.

    Accepts ``col:asc`` / ``col:desc`` and the legacy ``-col`` / ``col``
    forms. Unlike filters, one bad term invalidates the whole expression.

    Returns:
        The pairs in input order, an empty list for no sort, or None if invalid
    """
    if not sort_expr:
        return []

    orders = []
    for raw in sort_expr.split(","):
        term = raw.strip()
        if ":" in term:
            column, direction = term.split(":", 1)
            direction = direction.strip().lower()
        elif term.startswith("-"):
            column, direction = term[1:], "desc"
        else:
            column, direction = term, "asc"

        column = column.strip()
        if direction not in SORT_DIRECTIONS or not _valid_column(column, valid_columns):
            return None
        orders.append((column, direction))
    return orders


def compile_sort(
    valid_columns: Collection[str],
    sort_expr: Optional[str],
    quote: Quote = ansi_quote,
) -> Optional[str]:
    """ORDER BY clause for a sort expression, "" for none, None when invalid."""
    orders = parse_sort(valid_columns, sort_expr)
    if orders is None:
        return None
    if not orders:
        return ""
    return "ORDER BY " + ", ".join(f"{quote(col)} {direction.upper()}" for col, direction in orders)


def select_fields(valid_columns: Collection[str], fields: List[str], quote: Quote = ansi_quote) -> str:
    """Projection list for the requested fields, falling back to * when none are valid."""
    selected = [f for f in fields if _valid_column(f, valid_columns)]
    if not selected:
        return "*"
    return ", ".join(quote(f) for f in selected)
