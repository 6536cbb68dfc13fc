# ABOUTME: OpenAPI 3 document generated from the live database schema
# ABOUTME: One component schema and CRUD paths per exposed table

from typing import Any, Dict, List

from tablegate.services.schema_inspector import SchemaInspector


def column_schema_type(declared: str) -> str:
    """Map a declared SQL column type to an OpenAPI primitive type."""
    declared = declared.lower()
    if "int" in declared:
        return "integer"
    if "bool" in declared:
        return "boolean"
    if any(t in declared for t in ("float", "double", "decimal", "numeric", "real")):
        return "number"
    return "string"


def _schema_name(table: str) -> str:
    return table[:1].upper() + table[1:]


def _json_content(schema: Dict[str, Any]) -> Dict[str, Any]:
    return {"application/json": {"schema": schema}}


def generate_openapi(inspector: SchemaInspector, title: str = "tablegate API", version: str = "1.0.0") -> Dict[str, Any]:
    """
    Build an OpenAPI document for every exposed table.

    Args:
        inspector: Schema inspector for the connected database
        title: API title in the info block
        version: API version in the info block

    Returns:
        OpenAPI 3.0 document as a dict
    """
    tables: List[str] = inspector.get_tables()
    schemas: Dict[str, Any] = {}
    paths: Dict[str, Any] = {}
    id_parameter = [{"name": "id", "in": "path", "required": True, "schema": {"type": "string"}}]

    for table in tables:
        properties = {
            column["Field"]: {"type": column_schema_type(column["Type"])}
            for column in inspector.get_columns(table)
        }
        name = _schema_name(table)
        schemas[name] = {"type": "object", "properties": properties}
        ref = {"$ref": f"#/components/schemas/{name}"}

        paths[f"/{table}"] = {
            "get": {
                "summary": f"List {table}",
                "parameters": [
                    {"name": param, "in": "query", "required": False, "schema": {"type": kind}}
                    for param, kind in (
                        ("filter", "string"), ("sort", "string"), ("fields", "string"),
                        ("page", "integer"), ("page_size", "integer"),
                    )
                ],
                "responses": {
                    "200": {
                        "description": "OK",
                        "content": _json_content({
                            "type": "object",
                            "properties": {
                                "data": {"type": "array", "items": ref},
                                "meta": {"type": "object"},
                            },
                        }),
                    },
                },
            },
            "post": {
                "summary": f"Create {table}",
                "requestBody": {"required": True, "content": _json_content(ref)},
                "responses": {"201": {"description": "Created", "content": _json_content(ref)}},
            },
        }
        paths[f"/{table}/{{id}}"] = {
            "get": {
                "summary": f"Read {table}",
                "parameters": id_parameter,
                "responses": {
                    "200": {"description": "OK", "content": _json_content(ref)},
                    "404": {"description": "Not Found"},
                },
            },
            "put": {
                "summary": f"Update {table}",
                "parameters": id_parameter,
                "requestBody": {"required": True, "content": _json_content(ref)},
                "responses": {
                    "200": {"description": "OK", "content": _json_content(ref)},
                    "404": {"description": "Not Found"},
                },
            },
            "delete": {
                "summary": f"Delete {table}",
                "parameters": id_parameter,
                "responses": {
                    "200": {"description": "Deleted"},
                    "404": {"description": "Not Found"},
                },
            },
        }

    return {
        "openapi": "3.0.0",
        "info": {"title": title, "version": version},
        "paths": paths,
        "components": {"schemas": schemas},
    }
