from __future__ import annotations

import types
from enum import Enum
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _enum_values(annotation: Any) -> Optional[List[Any]]:
    """Allowed values of an enum-typed (or optional enum) field, else None."""
    if get_origin(annotation) in (Union, types.UnionType):
        args = [a for a in get_args(annotation) if a is not type(None)]
        annotation = args[0] if len(args) == 1 else None
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return [member.value for member in annotation]
    return None


class IndexSpec(BaseModel):
    """Declarative index definition shared by the Mongo store and the schema generator."""

    keys: List[str]
    unique: bool = False

    @property
    def name(self) -> str:
        return "_".join(self.keys) + ("_unique" if self.unique else "")


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The document-store schema and index spec are produced offline by the
    schema generator using this description; this class is not meant to
    hit the database at runtime for schema work.
    """

    # Logical collection name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes the store must maintain
    indexes: ClassVar[List[IndexSpec]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return _plain(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            prop: Dict[str, Any] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "description": field.description,
            }
            choices = _enum_values(field.annotation)
            if choices:
                prop["enum"] = choices
            properties[name] = prop
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
        """
        origin: Any = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return DBSerializableModel._map_type(args[0])
            return "mixed"
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-based enums
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return "object"

        # datetime and friends
        name = getattr(annotation, "__name__", "object")
        return name.lower()
