from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.base import DBSerializableModel, IndexSpec
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.transaction import Transaction
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    Transaction,
    NotificationEvent,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer: tables plus their secondary indexes.

    The partial unique index on transactions is what makes duplicate webhook
    deliveries fail loudly instead of granting twice; dialects without partial
    indexes get a comment instead and must rely on the application check.
    """
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        lines.append(ddl)
        for index in spec.get("indexes", []):
            lines.append(_render_sql_index(table_name, index, dialect))
    return "\n".join(lines)


def _render_sql_index(table_name: str, index: Dict[str, Any], dialect: str) -> str:
    unique = "UNIQUE " if index.get("unique") else ""
    cols = ", ".join(f'"{f}"' for f in index["fields"])
    stmt = f'CREATE {unique}INDEX IF NOT EXISTS "{index["name"]}" ON "{table_name}" ({cols})'
    partial = index.get("partial_filter") or {}
    required = index.get("require_fields") or []
    if partial or required:
        if dialect == "mysql":
            return f"-- {index['name']}: partial indexes are not supported by mysql\n"
        conditions = " AND ".join(
            [
                f'"{field}" IN (' + ", ".join(f"'{v}'" for v in values) + ")"
                for field, values in partial.items()
            ]
            + [f'"{field}" IS NOT NULL' for field in required]
        )
        stmt += f" WHERE {conditions}"
    return stmt + ";\n"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for document databases like MongoDB.
    """
    rendered: Dict[str, Any] = {}
    for name, spec in schema.items():
        doc = dict(spec)
        doc["indexes"] = [_render_mongo_index(index) for index in spec.get("indexes", [])]
        rendered[name] = doc
    return json.dumps(rendered, indent=2, default=str)


def _render_mongo_index(index: Dict[str, Any]) -> Dict[str, Any]:
    spec = IndexSpec.model_validate(index)
    options: Dict[str, Any] = {"name": spec.name, "unique": spec.unique}
    partial = spec.mongo_partial_filter()
    if partial:
        options["partialFilterExpression"] = partial
    return {"keys": {f: 1 for f in spec.fields}, "options": options}


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION" if dialect == "postgres" else "DOUBLE"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the credit payments ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        choices=["postgres", "mysql", "sqlite"],
        help="SQL dialect hint.",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
