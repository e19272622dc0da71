from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.transaction import CreditTransaction
from .models.user import UserCreditRecord


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserCreditRecord,
    CreditTransaction,
    LedgerEntry,
    NotificationEvent,
]

_BSON_TYPES: Dict[str, List[str]] = {
    "integer": ["int", "long"],
    "number": ["double", "int", "long"],
    "boolean": ["bool"],
    "string": ["string"],
    "datetime": ["date"],
    "array": ["array"],
    "object": ["object"],
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    MongoDB validators and index definitions are rendered from this.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_mongo_validator(spec: Dict[str, Any]) -> Dict[str, Any]:
    """`$jsonSchema` validator for one collection of the logical schema."""
    properties: Dict[str, Any] = {}
    for name, meta in spec["properties"].items():
        bson_types = list(_BSON_TYPES.get(meta["type"], ["object"]))
        if meta["nullable"]:
            bson_types.append("null")
        prop: Dict[str, Any] = {"bsonType": bson_types}
        if meta.get("description"):
            prop["description"] = meta["description"]
        properties[name] = prop
    return {
        "$jsonSchema": {
            "bsonType": "object",
            "required": list(spec["required"]),
            "properties": properties,
        }
    }


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render validators and indexes per collection as JSON, ready for
    `db.createCollection(name, {validator})` and `createIndex`.
    """
    rendered = {
        name: {
            "validator": render_mongo_validator(spec),
            "indexes": spec["indexes"],
        }
        for name, spec in schema.items()
    }
    return json.dumps(rendered, indent=2, default=str)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate MongoDB collection schemas for the credit ledger."
    )
    parser.add_argument(
        "--format",
        choices=["logical", "mongo"],
        default="mongo",
        help="Logical field description or MongoDB validators with indexes.",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()

    if args.format == "logical":
        print(json.dumps(schema, indent=2, default=str))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
