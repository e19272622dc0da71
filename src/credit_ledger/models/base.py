from __future__ import annotations

from typing import Any, ClassVar, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

# (field, direction) pairs; direction follows MongoDB: 1 ascending, -1 descending
IndexSpec = List[Tuple[str, int]]

TItem = TypeVar("TItem")


class DBSerializableModel(BaseModel):
    """
    Document model stored in one collection. Subclasses name the collection,
    the field mirrored into `_id`, and their secondary indexes.

    The MongoDB validators and index definitions are derived from this
    description by `credit_ledger.schema`; the running service only uses
    `indexes` when `ensure_indexes()` is called on the store.
    """

    # Logical collection name; subclasses should override
    collection_name: ClassVar[str]

    # Field mirrored into MongoDB's `_id`
    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes for the collection
    indexes: ClassVar[List[IndexSpec]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for document persistence.

        Datetimes stay native so the driver stores them as BSON dates.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """Backend-agnostic schema description derived from model fields."""
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required() and field.default is None,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [[list(key) for key in index] for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """Logical type name for a field annotation (`integer`, `string`, `datetime`, ...)."""
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

        # Optional[X] and str-valued enums
        args = getattr(annotation, "__args__", None)
        if args:
            non_null = [a for a in args if a is not type(None)]
            if len(non_null) == 1:
                return DBSerializableModel._map_type(non_null[0])
        if isinstance(annotation, type) and issubclass(annotation, str):
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()


class PaginatedResult(BaseModel, Generic[TItem]):
    items: list[TItem] = Field(default_factory=list)
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total
