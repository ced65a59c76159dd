from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IndexSpec(BaseModel):
    """
    Backend-agnostic index declaration.

    `partial_filter` restricts the index to rows whose fields take one of the
    listed values, e.g. ``{"type": ["purchase", "refund"]}``.
    """

    name: str
    fields: List[str]
    unique: bool = False
    partial_filter: Dict[str, List[str]] = Field(default_factory=dict)
    # Only rows where these fields are present are indexed
    require_fields: List[str] = Field(default_factory=list)

    def mongo_partial_filter(self) -> Dict[str, Any]:
        expr: Dict[str, Any] = {
            field: {"$in": values} for field, values in self.partial_filter.items()
        }
        expr.update({field: {"$exists": True} for field in self.require_fields})
        return expr


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes the store must maintain
    indexes: ClassVar[List[IndexSpec]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value; datetimes stay native so range queries
        keep working in document stores.
        """
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": None
                if field.is_required() or field.default_factory
                else field.default,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [index.model_dump() for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        args = getattr(annotation, "__args__", None)
        if args and type(None) in args:
            # Optional[X] -> X
            non_null = [a for a in args if a is not type(None)]
            if len(non_null) == 1:
                annotation = non_null[0]

        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        # Enums are persisted by their string value
        if isinstance(annotation, type) and issubclass(annotation, str):
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
