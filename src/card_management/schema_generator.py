from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Type

from .models.audit import AuditEntry
from .models.base import DBSerializableModel
from .models.card import Card
from .models.limits import PlanLimits
from .models.stats import CardStats
from .models.usage import UserUsage


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserUsage,
    PlanLimits,
    Card,
    CardStats,
    AuditEntry,
]

_BSON_TYPES = {
    "string": "string",
    "integer": "int",
    "number": "double",
    "boolean": "bool",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic description of every stored collection, keyed by
    collection name. The Mongo renderer below is derived from it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    return json.dumps(schema, indent=2, default=str)


def render_mongo_validators(schema: Dict[str, Any]) -> str:
    """
    Render `$jsonSchema` validators plus index specs, one entry per
    collection, ready for `createCollection`/`collMod` and `createIndexes`.
    """
    collections: Dict[str, Any] = {}
    for name, spec in schema.items():
        pk = spec.get("primary_key") or "id"
        properties: Dict[str, Any] = {}
        for field_name, meta in spec["properties"].items():
            bson_name = "_id" if field_name == pk else field_name
            bson_type: Any = _BSON_TYPES.get(meta["type"])
            if bson_type is None:
                continue
            if meta["nullable"]:
                bson_type = [bson_type, "null"]
            properties[bson_name] = {"bsonType": bson_type}
            if "enum" in meta:
                choices = list(meta["enum"])
                properties[bson_name]["enum"] = choices + [None] if meta["nullable"] else choices
        required = ["_id" if f == pk else f for f in spec["required"]]
        collections[name] = {
            "validator": {
                "$jsonSchema": {
                    "bsonType": "object",
                    "required": required,
                    "properties": properties,
                }
            },
            "indexes": [
                {
                    "name": "_".join(index["keys"]) + ("_unique" if index["unique"] else ""),
                    "key": {key: 1 for key in index["keys"]},
                    "unique": index["unique"],
                }
                for index in spec["indexes"]
            ],
        }
    return json.dumps(collections, indent=2)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate document-store schemas for the card management module."
    )
    parser.add_argument(
        "--format",
        choices=["logical", "mongo"],
        default="mongo",
        help="Logical schema or MongoDB validators with index specs.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write to this file instead of stdout.",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.format == "logical":
        rendered = render_nosql_schema(schema)
    else:
        rendered = render_mongo_validators(schema)

    if args.output is None:
        print(rendered)
    else:
        args.output.write_text(rendered + "\n", encoding="utf-8")


if __name__ == "__main__":
    main()
