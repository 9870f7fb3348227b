"""
Query translation for the list/get endpoints.

Raw query parameters (`where`, `sort`, `select`, `skip`, `limit`, `count`)
are parsed into a `QueryDescriptor`. Filters become a small typed predicate
tree, so only whitelisted operators ever reach MongoDB.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from database import TASKS, USERS, parse_object_id

DEFAULT_LIMITS: Dict[str, int] = {TASKS: 100}
MAX_FILTER_DEPTH = 8

LOGICAL_OPERATORS = {"$and", "$or", "$nor"}
FIELD_OPERATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$options",
    "$all", "$size", "$not",
}
OBJECT_ID_FIELDS = {"_id", "pendingTasks"}
DATE_FIELDS = {"deadline", "dateCreated"}
FIELD_ALIASES = {"id": "_id"}

SORT_DIRECTIONS = {
    1: 1, -1: -1,
    "1": 1, "-1": -1,
    "asc": 1, "ascending": 1,
    "desc": -1, "descending": -1,
}
TRUE_STRINGS = {"true", "1", "yes", "on"}


class QueryShapeError(ValueError):
    """Parsed JSON that does not describe a supported filter/sort/projection."""


# -----------------------------
# Filter predicates
# -----------------------------
@dataclass(frozen=True)
class FieldPredicate:
    """All conditions on one field, rendered as a single operator object."""

    field: str
    conditions: Tuple[Tuple[str, Any], ...]

    def to_mongo(self) -> Dict[str, Any]:
        return {self.field: dict(self.conditions)}


@dataclass(frozen=True)
class LogicalPredicate:
    operator: str
    clauses: Tuple["Predicate", ...]

    def to_mongo(self) -> Dict[str, Any]:
        return {self.operator: [c.to_mongo() for c in self.clauses]}


Predicate = Union[FieldPredicate, LogicalPredicate]


def _field_name(raw: str) -> str:
    if not raw or raw.startswith("$"):
        raise QueryShapeError(f"unsupported field name {raw!r}")
    return FIELD_ALIASES.get(raw, raw)


def _cast_scalar(field_name: str, value: Any) -> Any:
    leaf = field_name.rsplit(".", 1)[-1]
    if leaf in OBJECT_ID_FIELDS and isinstance(value, str):
        object_id = parse_object_id(value)
        return object_id if object_id is not None else value
    if leaf in DATE_FIELDS and isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _cast_value(field_name: str, value: Any) -> Any:
    if isinstance(value, list):
        return [_cast_scalar(field_name, v) for v in value]
    if isinstance(value, dict):
        raise QueryShapeError(f"unexpected object value for {field_name!r}")
    return _cast_scalar(field_name, value)


def _parse_operators(field_name: str, operators: Dict[str, Any], depth: int) -> FieldPredicate:
    if depth > MAX_FILTER_DEPTH:
        raise QueryShapeError("filter nested too deeply")
    if "$options" in operators and "$regex" not in operators:
        raise QueryShapeError("$options needs a $regex")
    conditions: List[Tuple[str, Any]] = []
    for op, operand in operators.items():
        if op not in FIELD_OPERATORS:
            raise QueryShapeError(f"unsupported operator {op!r}")
        if op == "$not":
            if not isinstance(operand, dict):
                raise QueryShapeError("$not expects an operator object")
            inner = _parse_operators(field_name, operand, depth + 1)
            conditions.append((op, inner.to_mongo()[field_name]))
        elif op in ("$in", "$nin", "$all"):
            if not isinstance(operand, list):
                raise QueryShapeError(f"{op} expects an array")
            conditions.append((op, _cast_value(field_name, operand)))
        elif op == "$exists":
            conditions.append((op, bool(operand)))
        elif op == "$size":
            if not isinstance(operand, int) or isinstance(operand, bool) or operand < 0:
                raise QueryShapeError("$size expects a non-negative integer")
            conditions.append((op, operand))
        elif op in ("$regex", "$options"):
            if not isinstance(operand, str):
                raise QueryShapeError(f"{op} expects a string")
            conditions.append((op, operand))
        else:
            conditions.append((op, _cast_value(field_name, operand)))
    return FieldPredicate(field_name, tuple(conditions))


def parse_filter(where: Any, depth: int = 0) -> Optional[Predicate]:
    """Turn a `where` object into a predicate tree (None matches everything)."""
    if depth > MAX_FILTER_DEPTH:
        raise QueryShapeError("filter nested too deeply")
    if not isinstance(where, dict):
        raise QueryShapeError("where must be a JSON object")

    clauses: List[Predicate] = []
    for key, value in where.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, list) or not value:
                raise QueryShapeError(f"{key} expects a non-empty array")
            subclauses = []
            for item in value:
                sub = parse_filter(item, depth + 1)
                if sub is not None:
                    subclauses.append(sub)
            if subclauses:
                clauses.append(LogicalPredicate(key, tuple(subclauses)))
            continue

        name = _field_name(key)
        if isinstance(value, dict):
            if not value or not all(k.startswith("$") for k in value):
                raise QueryShapeError(f"expected operator object for {key!r}")
            clauses.append(_parse_operators(name, value, depth + 1))
        else:
            clauses.append(FieldPredicate(name, (("$eq", _cast_value(name, value)),)))

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return LogicalPredicate("$and", tuple(clauses))


def parse_sort(raw: Any) -> List[Tuple[str, int]]:
    def direction(value: Any) -> int:
        key = value.lower() if isinstance(value, str) else value
        if isinstance(key, bool) or not isinstance(key, (int, str)) or key not in SORT_DIRECTIONS:
            raise QueryShapeError(f"unsupported sort direction {value!r}")
        return SORT_DIRECTIONS[key]

    if isinstance(raw, dict):
        return [(_field_name(k), direction(v)) for k, v in raw.items()]
    if isinstance(raw, list):
        keys: List[Tuple[str, int]] = []
        for item in raw:
            if isinstance(item, str):
                if item.startswith("-"):
                    keys.append((_field_name(item[1:]), -1))
                else:
                    keys.append((_field_name(item.lstrip("+")), 1))
            elif isinstance(item, list) and len(item) == 2 and isinstance(item[0], str):
                keys.append((_field_name(item[0]), direction(item[1])))
            else:
                raise QueryShapeError(f"unsupported sort entry {item!r}")
        return keys
    raise QueryShapeError("sort must be a JSON object or array")


def parse_projection(raw: Any) -> Dict[str, int]:
    if isinstance(raw, list):
        if not all(isinstance(f, str) for f in raw):
            raise QueryShapeError("select array must contain field names")
        projection = {_field_name(f): 1 for f in raw}
    elif isinstance(raw, dict):
        projection = {}
        for key, value in raw.items():
            if isinstance(value, bool) or value in (0, 1):
                projection[_field_name(key)] = int(value)
            else:
                raise QueryShapeError(f"unsupported projection value for {key!r}")
    else:
        raise QueryShapeError("select must be a JSON object or array")

    modes = {v for k, v in projection.items() if k != "_id"}
    if len(modes) > 1:
        raise QueryShapeError("cannot mix inclusion and exclusion in select")
    return projection


# -----------------------------
# Descriptor
# -----------------------------
@dataclass(frozen=True)
class QueryDescriptor:
    filter: Optional[Predicate] = None
    sort: Optional[List[Tuple[str, int]]] = None
    projection: Optional[Dict[str, int]] = None
    skip: Optional[int] = None
    limit: Optional[int] = None
    is_count_request: bool = False
    invalid: bool = False
    errors: List[str] = field(default_factory=list)

    def mongo_filter(self) -> Dict[str, Any]:
        return self.filter.to_mongo() if self.filter is not None else {}

    def find_kwargs(self) -> Dict[str, Any]:
        return {
            "where": self.mongo_filter(),
            "sort": self.sort,
            "projection": self.projection,
            "skip": self.skip,
            "limit": self.limit,
        }


_INVALID_JSON = object()


def _parse_json(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return None
    try:
        return json.loads(value)
    except ValueError:
        return _INVALID_JSON


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return False


def translate_query(collection: str, params: Mapping[str, Any]) -> QueryDescriptor:
    """Build a QueryDescriptor for `collection` ("tasks" or "users")."""
    if collection not in (TASKS, USERS):
        raise ValueError(f"unknown collection {collection!r}")

    errors: List[str] = []
    where = _parse_json(params.get("where"))
    sort = _parse_json(params.get("sort"))
    select = _parse_json(params.get("select"))
    for name, parsed in (("where", where), ("sort", sort), ("select", select)):
        if parsed is _INVALID_JSON:
            errors.append(f"{name} is not valid JSON")

    skip = _parse_int(params.get("skip"))
    limit = _parse_int(params.get("limit"))
    if limit is None:
        limit = DEFAULT_LIMITS.get(collection)
    is_count = _parse_bool(params.get("count"))

    predicate = sort_keys = projection = None
    if not errors:
        try:
            if where is not None:
                predicate = parse_filter(where)
            if sort is not None:
                sort_keys = parse_sort(sort) or None
            if select is not None:
                projection = parse_projection(select) or None
        except QueryShapeError as exc:
            errors.append(str(exc))

    if errors:
        return QueryDescriptor(
            skip=skip, limit=limit, is_count_request=is_count, invalid=True, errors=errors
        )
    return QueryDescriptor(
        filter=predicate,
        sort=sort_keys,
        projection=projection,
        skip=skip,
        limit=limit,
        is_count_request=is_count,
    )
