"""
Shared types for the vector-store contract and the retrievers.

Record fields and search parameters are held as FieldValue, a small tagged
value over {int, float, string, vector, nested map}. Plain Python values are
accepted at every boundary and classified on the way in, so backends can rely
on the tag instead of isinstance checks against arbitrary objects.

Maps are JSON documents: their contents are copied through a JSON round trip
and may hold anything JSON can (lists, booleans, nulls), unlike top-level
fields.
"""

import copy
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from hybrid_retrieval.exceptions import InvalidArgumentError


class FieldKind(str, Enum):
    """Tag of a FieldValue."""
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    VECTOR = "vector"
    MAP = "map"


@dataclass(frozen=True)
class FieldValue:
    """A tagged record field or search parameter value."""
    kind: FieldKind
    value: Any

    @classmethod
    def of(cls, raw: Any) -> "FieldValue":
        """Classify a plain Python value. Unsupported types raise InvalidArgumentError."""
        if isinstance(raw, FieldValue):
            return raw
        # bool is an int subclass but never a valid field value here
        if isinstance(raw, bool) or raw is None:
            raise InvalidArgumentError(f"unsupported field value: {raw!r}")
        if isinstance(raw, (int, np.integer)):
            return cls(FieldKind.INT, int(raw))
        if isinstance(raw, (float, np.floating)):
            return cls(FieldKind.FLOAT, float(raw))
        if isinstance(raw, str):
            return cls(FieldKind.STRING, raw)
        if isinstance(raw, Mapping):
            return cls(FieldKind.MAP, _json_document(raw))
        if isinstance(raw, (np.ndarray, Sequence)):
            return cls.vector(raw)
        raise InvalidArgumentError(f"unsupported field value type: {type(raw).__name__}")

    @classmethod
    def vector(cls, values: Sequence[float] | np.ndarray) -> "FieldValue":
        """Build a vector value; elements must be real numbers."""
        try:
            arr = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(f"vector must contain only numbers: {e}") from e
        if arr.ndim != 1:
            raise InvalidArgumentError(f"vector must be one-dimensional, got shape {arr.shape}")
        return cls(FieldKind.VECTOR, tuple(arr.tolist()))

    @property
    def is_vector(self) -> bool:
        return self.kind is FieldKind.VECTOR

    @property
    def raw(self) -> Any:
        """Plain Python value: vectors as lists, maps as independent dict copies."""
        if self.kind is FieldKind.VECTOR:
            return list(self.value)
        if self.kind is FieldKind.MAP:
            return copy.deepcopy(self.value)
        return self.value

    def as_array(self) -> np.ndarray:
        """Vector value as a float64 numpy array."""
        if self.kind is not FieldKind.VECTOR:
            raise InvalidArgumentError(f"expected a vector, got {self.kind.value}")
        return np.asarray(self.value, dtype=np.float64)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _json_document(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Copy a mapping through JSON; raises InvalidArgumentError if it cannot be encoded."""
    try:
        return json.loads(json.dumps(raw, default=_json_default, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"map value is not valid JSON: {e}") from e


def to_field_values(values: Mapping[str, Any] | None) -> dict[str, FieldValue]:
    """Classify every value of a mapping."""
    if not values:
        return {}
    return {str(k): FieldValue.of(v) for k, v in values.items()}


@dataclass
class Record:
    """The unit stored in a vector-store collection."""
    fields: dict[str, FieldValue] = field(default_factory=dict)

    def __post_init__(self):
        self.fields = to_field_values(self.fields)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "Record":
        return cls(fields=dict(values))

    def get(self, name: str) -> FieldValue | None:
        return self.fields.get(name)

    def vector(self, name: str) -> np.ndarray | None:
        """The named field as an array, or None when absent or not a vector."""
        value = self.fields.get(name)
        if value is None or not value.is_vector:
            return None
        return value.as_array()

    def to_dict(self) -> dict[str, Any]:
        return {k: v.raw for k, v in self.fields.items()}


class DataType(str, Enum):
    """Schema field data types."""
    INT64 = "Int64"
    FLOAT = "Float"
    VARCHAR = "VarChar"
    FLOAT_VECTOR = "FloatVector"
    JSON = "JSON"


_SCALAR_KINDS: dict[DataType, tuple[FieldKind, ...]] = {
    DataType.INT64: (FieldKind.INT,),
    DataType.FLOAT: (FieldKind.FLOAT, FieldKind.INT),
    DataType.VARCHAR: (FieldKind.STRING,),
    DataType.JSON: (FieldKind.MAP,),
}


@dataclass(frozen=True)
class FieldSchema:
    """Definition of a single collection field."""
    name: str
    data_type: DataType
    primary_key: bool = False
    auto_id: bool = False
    dimension: int = 0
    max_length: int = 0

    @property
    def is_vector(self) -> bool:
        return self.data_type is DataType.FLOAT_VECTOR


@dataclass(frozen=True)
class Schema:
    """Collection schema. Fixed for the lifetime of the collection."""
    name: str
    fields: tuple[FieldSchema, ...]
    description: str = ""

    def __post_init__(self):
        # Accept lists for convenience while keeping the schema immutable
        object.__setattr__(self, "fields", tuple(self.fields))

    def validate(self) -> None:
        """Raise InvalidArgumentError if the schema is malformed."""
        if not self.fields:
            raise InvalidArgumentError(f"schema '{self.name}' has no fields")

        names = [f.name for f in self.fields]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise InvalidArgumentError(f"schema '{self.name}' has duplicate fields: {sorted(duplicates)}")

        primary = [f for f in self.fields if f.primary_key]
        if len(primary) != 1:
            raise InvalidArgumentError(
                f"schema '{self.name}' must have exactly one primary key, found {len(primary)}"
            )
        if primary[0].data_type is not DataType.INT64:
            raise InvalidArgumentError(f"primary key '{primary[0].name}' must be Int64")

        for f in self.fields:
            if f.is_vector and f.dimension <= 0:
                raise InvalidArgumentError(f"vector field '{f.name}' needs a positive dimension")
            if f.auto_id and not f.primary_key:
                raise InvalidArgumentError(f"auto_id is only valid on the primary key, not '{f.name}'")

    def validate_record(self, record: "Record") -> None:
        """
        Raise InvalidArgumentError if ``record`` does not fit this schema.

        The primary key must be an int unless it is auto-generated, in which
        case it must be absent. Schema vector fields are optional per record
        but at least one must be present, with the declared dimension.
        Fields outside the schema are allowed and not checked.
        """
        fields = record.fields
        pk = self.primary_key

        if pk.auto_id:
            if pk.name in fields:
                raise InvalidArgumentError(f"primary key '{pk.name}' is auto-generated")
        else:
            value = fields.get(pk.name)
            if value is None:
                raise InvalidArgumentError(f"missing primary key '{pk.name}'")
            if value.kind is not FieldKind.INT:
                raise InvalidArgumentError(f"primary key '{pk.name}' must be an int")

        has_vector = False
        for spec in self.fields:
            value = fields.get(spec.name)
            if value is None or spec.primary_key:
                continue
            if spec.is_vector:
                if not value.is_vector:
                    raise InvalidArgumentError(f"field '{spec.name}' must be a vector")
                if len(value.value) != spec.dimension:
                    raise InvalidArgumentError(
                        f"field '{spec.name}' expects dimension {spec.dimension}, got {len(value.value)}"
                    )
                has_vector = True
            elif value.kind not in _SCALAR_KINDS[spec.data_type]:
                raise InvalidArgumentError(
                    f"field '{spec.name}' expects {spec.data_type.value}, got {value.kind.value}"
                )
            elif spec.max_length and value.kind is FieldKind.STRING and len(value.value) > spec.max_length:
                raise InvalidArgumentError(f"field '{spec.name}' exceeds max length {spec.max_length}")

        if self.vector_fields and not has_vector:
            raise InvalidArgumentError("record carries none of the schema's vector fields")

    @property
    def primary_key(self) -> FieldSchema:
        for f in self.fields:
            if f.primary_key:
                return f
        raise InvalidArgumentError(f"schema '{self.name}' has no primary key")

    @property
    def vector_fields(self) -> list[FieldSchema]:
        return [f for f in self.fields if f.is_vector]

    def get_field(self, name: str) -> FieldSchema | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class Metric(str, Enum):
    """Distance metrics. Scores are always "smaller is closer"."""
    L2 = "L2"
    IP = "IP"


@dataclass(frozen=True)
class IndexSpec:
    """Index creation hint passed to create_index."""
    type: str
    metric: Metric = Metric.L2
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    """
    Single search hit.

    Score semantics depend on the producer: distances (L2, negated IP) are
    smaller-is-closer, BM25 and fused RRF scores are larger-is-better.
    """
    id: int
    score: float
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordFailure:
    """A record rejected by a batch operation."""
    index: int
    reason: str


@dataclass
class InsertResult:
    """Outcome of a batch insert: how many records landed and which were skipped."""
    inserted: int = 0
    failed: list[RecordFailure] = field(default_factory=list)
    ids: list[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


__all__ = [
    "FieldKind",
    "FieldValue",
    "to_field_values",
    "Record",
    "DataType",
    "FieldSchema",
    "Schema",
    "Metric",
    "IndexSpec",
    "SearchResult",
    "RecordFailure",
    "InsertResult",
]
