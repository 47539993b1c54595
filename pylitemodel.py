# pylitemodel.py
import os
import re
import copy
import json
import time
import asyncio
import logging
import numbers
import sqlite3
import binascii
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import (Any, Awaitable, Callable, Dict, Iterable, List, Mapping,
                    Optional, Protocol, Sequence, Tuple, Union)

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel, to_snake

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


# =========================
# Errors
# =========================
class ModelError(Exception):
    """Base class for pylitemodel errors."""
    pass


class SchemaErrorReason(str, Enum):
    UNKNOWN_TYPE = "unknown_type"
    DEFAULT_TYPE_MISMATCH = "default_type_mismatch"
    ENUM_NOT_ARRAY = "enum_not_array"
    ENUM_TYPE_MISMATCH = "enum_type_mismatch"
    DEFAULT_NOT_IN_ENUM = "default_not_in_enum"
    MISSING_ATTRIBUTES = "missing_attributes"
    INVALID_DESCRIPTOR = "invalid_descriptor"


class ValidationErrorReason(str, Enum):
    MISSING_REQUIRED = "missing_required"
    TYPE_MISMATCH = "type_mismatch"
    NOT_IN_ENUM = "not_in_enum"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    INVALID_FIELD = "invalid_field"
    INVALID_SORT_DIRECTION = "invalid_sort_direction"
    INVALID_LIMIT = "invalid_limit"
    INVALID_PAGE = "invalid_page"
    INVALID_BATCH_SIZE = "invalid_batch_size"


class SchemaError(ModelError):
    """Raised when a schema declaration is malformed. Fatal to the model."""

    def __init__(self, reason: SchemaErrorReason, message: str, attribute: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.attribute = attribute


class ValidationError(ModelError):
    """Raised when a document or query argument breaks the schema contract."""

    def __init__(self, reason: ValidationErrorReason, message: str, attribute: Optional[str] = None,
                 expected: Any = None, actual: Any = None):
        super().__init__(message)
        self.reason = reason
        self.attribute = attribute
        self.expected = expected
        self.actual = actual


class ConflictError(ModelError):
    """Raised when creating a document whose id is already taken."""
    pass


class UsageError(ModelError):
    """Raised when the API is called with the wrong shape of arguments."""
    pass


class InvalidParamTypeError(UsageError, TypeError):
    """Raised when a parameter has the wrong runtime type."""
    pass


class InvalidQueryError(UsageError):
    """Raised when criteria syntax is invalid."""
    pass


class StateError(ModelError):
    """Raised when a query is changed after it was executed or subscribed to."""
    pass


class StoreNotFoundError(ModelError):
    """Raised by a store when patching a document that does not exist."""
    pass


class BatchError(ModelError):
    """Raised when a batch mutation fails part way through.

    Documents mutated before the failure stay mutated; ``committed`` says
    how many there were and ``batches`` how many rounds completed in full.
    The store error is chained as ``__cause__``.
    """

    def __init__(self, message: str, committed: int, batches: int):
        super().__init__(message)
        self.committed = committed
        self.batches = batches


def _param_type_error(method: str, param: str, expected: str, value: Any) -> InvalidParamTypeError:
    return InvalidParamTypeError(
        f"{method}() expected '{param}' to be of type {expected}, got {kind_of(value).value}")


# =========================
# Utils
# =========================
def generate_document_id() -> str:
    """Generate a 24-char hex id: 8 chars of timestamp then 16 random."""
    ts = int(time.time())
    rand = binascii.b2a_hex(os.urandom(8)).decode("ascii")
    return f"{ts:08x}{rand}"[:24]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def deep_get(doc: Mapping, dotted_key: str, default=None):
    cur = doc
    for part in dotted_key.split("."):
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def deep_set(doc: dict, dotted_key: str, value):
    parts = dotted_key.split(".")
    cur = doc
    for part in parts[:-1]:
        if not isinstance(cur.get(part), dict):
            cur[part] = {}
        cur = cur[part]
    cur[parts[-1]] = value


def deep_merge(target: dict, source: Mapping) -> dict:
    """Merge ``source`` into ``target`` in place, recursing into nested mappings."""
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def is_mapping(value) -> bool:
    return isinstance(value, Mapping)


def is_string_list(value) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value)


def chunked(items: Sequence, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# =========================
# Kinds
# =========================
class Kind(str, Enum):
    """Closed set of attribute kinds a schema may declare."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    DATE = "date"
    ANY = "any"
    NULL = "null"


VALID_KINDS = frozenset(kind.value for kind in Kind)


def kind_of(value) -> Kind:
    """Runtime kind of a value. ``Kind.ANY`` is never returned."""
    if value is None:
        return Kind.NULL
    if isinstance(value, bool):
        return Kind.BOOLEAN
    if isinstance(value, numbers.Number):
        return Kind.NUMBER
    if isinstance(value, str):
        return Kind.STRING
    if isinstance(value, (datetime, date)):
        return Kind.DATE
    if isinstance(value, (list, tuple)):
        return Kind.ARRAY
    return Kind.OBJECT


def value_matches_kind(value, kind: Union[Kind, str]) -> bool:
    kind = Kind(kind)
    if kind is Kind.ANY:
        return True
    return kind_of(value) is kind


# =========================
# Schema
# =========================
class AttributeSpec(BaseModel):
    """Declared shape of one document field."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Optional[str] = None
    required: bool = False
    defaults_to: Any = None
    enum: Any = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    field_name: Optional[str] = None
    validator: Optional[Callable[[Any], Any]] = Field(default=None, alias="validate")

    @field_validator("type", mode="before")
    @classmethod
    def unwrap_kind(cls, value):
        return value.value if isinstance(value, Kind) else value

    @property
    def has_default(self) -> bool:
        # a declared default of None is still a default
        return "defaults_to" in self.model_fields_set

    @property
    def kind(self) -> Optional[Kind]:
        return Kind(self.type) if self.type is not None else None


class SchemaDescriptor(BaseModel):
    """Normalized description of a collection.

    Built once per model by :meth:`build` and checked by
    :func:`validate_schema`; not re-validated per document.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              frozen=True, extra="forbid")

    identity: str
    collection_name: str
    auto_id: bool = True
    auto_created_at: bool = True
    auto_updated_at: bool = True
    auto_created_by: bool = True
    auto_updated_by: bool = True
    strict: bool = Field(default=True, alias="schema")
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def normalize_keys(layer: Mapping) -> dict:
        out = {}
        for key, value in layer.items():
            out["strict" if key == "schema" else to_snake(key)] = value
        return out

    @classmethod
    def build(cls, name: str, config: Optional[Mapping] = None,
              attributes: Optional[Mapping] = None, **overrides) -> "SchemaDescriptor":
        """Merge built-in defaults, app-level config and model overrides."""
        merged: Dict[str, Any] = {"identity": name.lower(), "collection_name": name.lower()}
        merged_attributes: Dict[str, Any] = {}
        for layer in (config or {}, overrides):
            layer = cls.normalize_keys(layer)
            merged_attributes.update(layer.pop("attributes", None) or {})
            merged.update(layer)
        merged_attributes.update(attributes or {})
        merged["attributes"] = merged_attributes
        try:
            return cls.model_validate(merged)
        except PydanticValidationError as e:
            raise SchemaError(SchemaErrorReason.INVALID_DESCRIPTOR,
                              f"Invalid schema descriptor for model '{name}': {e}") from e


def validate_schema(descriptor: SchemaDescriptor) -> SchemaDescriptor:
    """Check every declared attribute, normalizing shorthand declarations in place.

    ``{"name": "string"}`` becomes ``{"name": AttributeSpec(type="string")}``.
    This is the only time the descriptor's attributes are rewritten.
    """
    attributes = descriptor.attributes
    if descriptor.strict and not attributes:
        raise SchemaError(SchemaErrorReason.MISSING_ATTRIBUTES,
                          f"Model '{descriptor.identity}' uses a strict schema but declares no attributes")

    for name in list(attributes):
        attribute = attributes[name]
        if isinstance(attribute, str):
            attribute = {"type": attribute}
        if isinstance(attribute, Mapping):
            try:
                attribute = AttributeSpec.model_validate(dict(attribute))
            except PydanticValidationError as e:
                raise SchemaError(SchemaErrorReason.INVALID_DESCRIPTOR,
                                  f"Attribute '{name}' is malformed: {e}", name) from e
        elif not isinstance(attribute, AttributeSpec):
            raise SchemaError(SchemaErrorReason.INVALID_DESCRIPTOR,
                              f"Attribute '{name}' must be a type name or a mapping", name)
        _check_attribute_type(name, attribute)
        _check_default_value(name, attribute)
        _check_enum(name, attribute)
        attributes[name] = attribute
    return descriptor


def _check_attribute_type(name: str, attribute: AttributeSpec):
    if attribute.type not in VALID_KINDS:
        raise SchemaError(SchemaErrorReason.UNKNOWN_TYPE,
                          f"Attribute '{name}' has unknown type {attribute.type!r}", name)


def _check_default_value(name: str, attribute: AttributeSpec):
    if attribute.has_default and not value_matches_kind(attribute.defaults_to, attribute.type):
        raise SchemaError(SchemaErrorReason.DEFAULT_TYPE_MISMATCH,
                          f"Default value {attribute.defaults_to!r} of '{name}' is not of type {attribute.type}",
                          name)


def _check_enum(name: str, attribute: AttributeSpec):
    if attribute.enum is None:
        return
    if not isinstance(attribute.enum, (list, tuple)):
        raise SchemaError(SchemaErrorReason.ENUM_NOT_ARRAY, f"Enum of '{name}' must be a list", name)
    for value in attribute.enum:
        if not value_matches_kind(value, attribute.type):
            raise SchemaError(SchemaErrorReason.ENUM_TYPE_MISMATCH,
                              f"Enum of '{name}' contains {value!r} which is not of type {attribute.type}",
                              name)
    if attribute.has_default and attribute.defaults_to not in attribute.enum:
        raise SchemaError(SchemaErrorReason.DEFAULT_NOT_IN_ENUM,
                          f"Default value {attribute.defaults_to!r} of '{name}' is not in its enum", name)


# =========================
# Document validation
# =========================
class DocumentValidator:
    """Validates and normalizes documents against a checked SchemaDescriptor.

    Pure: never touches a store and never mutates its input.
    """

    def __init__(self, descriptor: SchemaDescriptor):
        self.descriptor = descriptor

    def effective_attributes(self, document: Mapping) -> Dict[str, AttributeSpec]:
        if self.descriptor.strict:
            return self.descriptor.attributes
        # loose schema: kinds come from the input, declared attributes win
        attributes = {
            name: AttributeSpec(type=kind_of(value).value, field_name=name)
            for name, value in document.items()
        }
        attributes.update(self.descriptor.attributes)
        return attributes

    def validate(self, document: Mapping, partial: bool = False) -> dict:
        if not is_mapping(document):
            raise _param_type_error("validate", "document", "object", document)

        output = {}
        for name, attribute in self.effective_attributes(document).items():
            present = name in document
            if partial and not present:
                continue
            if not present and not attribute.has_default:
                if attribute.required:
                    raise ValidationError(ValidationErrorReason.MISSING_REQUIRED,
                                          f"Missing required attribute '{name}'", name)
                continue
            value = document[name] if present else copy.deepcopy(attribute.defaults_to)
            self._check_value(name, attribute, value)
            output[attribute.field_name or name] = value

        output.pop("id", None)
        return output

    def _check_value(self, name: str, attribute: AttributeSpec, value):
        kind = attribute.kind
        if kind not in (None, Kind.ANY) and not value_matches_kind(value, kind):
            actual = kind_of(value).value
            raise ValidationError(ValidationErrorReason.TYPE_MISMATCH,
                                  f"Attribute '{name}' has invalid type, expected '{kind.value}' got '{actual}'",
                                  name, expected=kind.value, actual=actual)

        if attribute.enum is not None and value not in attribute.enum:
            raise ValidationError(ValidationErrorReason.NOT_IN_ENUM,
                                  f"Attribute '{name}' must be one of {list(attribute.enum)!r}, got {value!r}",
                                  name, expected=list(attribute.enum), actual=value)

        if kind is Kind.STRING:
            if attribute.min_length is not None and len(value) < attribute.min_length:
                raise ValidationError(ValidationErrorReason.TOO_SHORT,
                                      f"Attribute '{name}' must be at least {attribute.min_length} characters",
                                      name, expected=attribute.min_length, actual=len(value))
            if attribute.max_length is not None and len(value) > attribute.max_length:
                raise ValidationError(ValidationErrorReason.TOO_LONG,
                                      f"Attribute '{name}' must be at most {attribute.max_length} characters",
                                      name, expected=attribute.max_length, actual=len(value))

        if attribute.validator is not None:
            # validators may raise or return an exception; either reaches the caller untouched
            error = attribute.validator(value)
            if isinstance(error, BaseException):
                raise error


# =========================
# Criteria engine
# =========================
COMPARATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$size",
    "$all", "$elemMatch"
}
LOGICAL = {"$and", "$or", "$not"}


def match_query(doc: Mapping, criteria: Mapping) -> bool:
    """True when ``doc`` satisfies every clause of ``criteria``."""
    if not is_mapping(criteria):
        raise InvalidQueryError("Criteria must be a mapping.")
    for key, cond in criteria.items():
        if key in LOGICAL:
            matched = _eval_logical(doc, key, cond)
        else:
            matched = _eval_field(doc, key, cond)
        if not matched:
            return False
    return True


def _eval_logical(doc: Mapping, op: str, clauses) -> bool:
    if op == "$not":
        if not is_mapping(clauses):
            raise InvalidQueryError("$not requires a single criteria mapping.")
        return not match_query(doc, clauses)
    if not isinstance(clauses, (list, tuple)):
        raise InvalidQueryError(f"{op} requires a list of criteria.")
    results = (match_query(doc, clause) for clause in clauses)
    return all(results) if op == "$and" else any(results)


def _eval_field(doc: Mapping, dotted_key: str, cond) -> bool:
    value = deep_get(doc, dotted_key)
    if not (is_mapping(cond) and cond and all(str(op).startswith("$") for op in cond)):
        return value == cond
    for op, arg in cond.items():
        if op not in COMPARATORS:
            raise InvalidQueryError(f"Unsupported operator: {op}")
        if not _eval_op(value, op, arg):
            return False
    return True


def _compare(val, arg, test) -> bool:
    if val is None:
        return False
    try:
        return test(val, arg)
    except TypeError:
        # values of different kinds never match a range clause
        return False


def _eval_op(val, op: str, arg) -> bool:
    if op == "$eq": return val == arg
    if op == "$ne": return val != arg
    if op == "$gt": return _compare(val, arg, lambda a, b: a > b)
    if op == "$gte": return _compare(val, arg, lambda a, b: a >= b)
    if op == "$lt": return _compare(val, arg, lambda a, b: a < b)
    if op == "$lte": return _compare(val, arg, lambda a, b: a <= b)
    if op in ("$in", "$nin"):
        if not isinstance(arg, (list, tuple)):
            raise InvalidQueryError(f"{op} requires a list of values.")
        return (val in arg) if op == "$in" else (val not in arg)
    if op == "$exists": return (val is not None) if arg else (val is None)
    if op == "$regex":
        if not isinstance(val, str):
            return False
        pattern, flags = _parse_regex(arg)
        return re.search(pattern, val, flags) is not None
    if op == "$size":
        return isinstance(val, (list, tuple)) and len(val) == arg
    if op == "$all":
        return isinstance(val, (list, tuple)) and all(item in val for item in arg)
    if op == "$elemMatch":
        if not isinstance(val, (list, tuple)):
            return False
        return any(match_query(elem, arg) if is_mapping(elem) else _eval_field({"v": elem}, "v", arg)
                   for elem in val)
    return False


def _parse_regex(arg) -> Tuple[str, int]:
    if isinstance(arg, str):
        return arg, 0
    if is_mapping(arg):
        options = arg.get("options", "")
        flags = 0
        if "i" in options: flags |= re.IGNORECASE
        if "m" in options: flags |= re.MULTILINE
        if "s" in options: flags |= re.DOTALL
        return arg.get("pattern", ""), flags
    raise InvalidQueryError("$regex must be a string or a mapping {pattern, options}.")


KIND_ORDER = {kind: rank for rank, kind in enumerate(
    (Kind.NULL, Kind.NUMBER, Kind.STRING, Kind.OBJECT, Kind.ARRAY, Kind.BOOLEAN, Kind.DATE))}


def _sort_key(value):
    # missing values first, then grouped by kind so different kinds never compare
    kind = kind_of(value)
    rank = KIND_ORDER[kind]
    if kind in (Kind.NULL, Kind.OBJECT):
        # nulls and mappings are equal within their kind
        return (rank,)
    if kind is Kind.ARRAY:
        return (rank, tuple(_sort_key(item) for item in value))
    if kind is Kind.DATE:
        if isinstance(value, datetime) and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return (rank, value.isoformat())
    return (rank, value)


def sort_documents(docs: List[dict], sort: Optional[Sequence[Tuple[str, str]]]) -> List[dict]:
    """Stable multi-key sort; ``sort`` is an ordered list of (field, 'asc'|'desc')."""
    for key, direction in reversed(list(sort or [])):
        docs.sort(key=lambda d: _sort_key(deep_get(d, key)), reverse=direction == "desc")
    return docs


def window(docs: List[dict], limit: Optional[int], offset: int = 0) -> List[dict]:
    if offset:
        docs = docs[offset:]
    if limit:
        docs = docs[:limit]
    return docs


# =========================
# Query
# =========================
SORT_DIRECTIONS = {"asc": "asc", "ascending": "asc", "desc": "desc", "descending": "desc"}
FIELD_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def is_valid_field(name) -> bool:
    if not isinstance(name, str) or not FIELD_PATH_RE.match(name):
        return False
    # dunder segments are reserved by the store
    return not any(part.startswith("__") and part.endswith("__") for part in name.split("."))


def is_valid_sort(direction) -> bool:
    return isinstance(direction, str) and direction.lower() in SORT_DIRECTIONS


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass
class QueryDescriptor:
    """Criteria, sort and paging accumulated by one Query."""
    criteria: Dict[str, Any] = field(default_factory=dict)
    sort: Dict[str, str] = field(default_factory=dict)
    limit: Optional[int] = None
    page: Optional[int] = None
    find_one: bool = False
    document_id: Optional[str] = None

    @property
    def offset(self) -> int:
        if self.limit and self.page:
            return self.limit * self.page
        return 0

    def sort_pairs(self) -> List[Tuple[str, str]]:
        return list(self.sort.items())

    def is_identity_lookup(self) -> bool:
        return self.document_id is not None and self.criteria == {"id": self.document_id}


class Query:
    """Deferred query over one model's collection.

    Building (``where``/``sort``/``limit``/``page``) does no I/O. The store
    is hit once, on the first ``await query`` or ``await query.execute()``;
    later awaits return the memoized outcome, errors included. A query
    cannot be changed once execution or a subscription has started.
    """

    def __init__(self, model: "Model", criteria_or_id: Union[None, str, Mapping] = None):
        self._model = model
        self._descriptor = QueryDescriptor()
        self._task: Optional[asyncio.Future] = None
        self._subscribed = False
        if isinstance(criteria_or_id, str):
            self._descriptor.document_id = criteria_or_id
            self._descriptor.criteria["id"] = criteria_or_id
            self._descriptor.find_one = True
        elif criteria_or_id is not None:
            self.where(criteria_or_id)

    @property
    def descriptor(self) -> QueryDescriptor:
        return self._descriptor

    @property
    def executed(self) -> bool:
        return self._task is not None

    def _ensure_mutable(self):
        if self._task is not None or self._subscribed:
            raise StateError("Query has already been executed or subscribed to and can no longer be modified.")

    def is_find_one(self, flag: bool = True) -> "Query":
        self._ensure_mutable()
        self._descriptor.find_one = bool(flag)
        return self

    def limit(self, value: int) -> "Query":
        self._ensure_mutable()
        if not _is_count(value):
            raise ValidationError(ValidationErrorReason.INVALID_LIMIT,
                                  f"limit must be a non-negative integer, got {value!r}")
        self._descriptor.limit = value
        return self

    def page(self, value: int) -> "Query":
        self._ensure_mutable()
        if not _is_count(value):
            raise ValidationError(ValidationErrorReason.INVALID_PAGE,
                                  f"page must be a non-negative integer, got {value!r}")
        self._descriptor.page = value
        return self

    def where(self, criteria: Mapping) -> "Query":
        self._ensure_mutable()
        if not is_mapping(criteria):
            raise _param_type_error("where", "criteria", "object", criteria)
        deep_merge(self._descriptor.criteria, criteria)
        return self

    def sort(self, field_or_map: Union[str, Mapping[str, str]], direction: Optional[str] = None) -> "Query":
        self._ensure_mutable()
        if isinstance(field_or_map, str):
            field_or_map = {field_or_map: "asc" if direction is None else direction}
        if not is_mapping(field_or_map):
            raise _param_type_error("sort", "field_or_map", "string or object", field_or_map)

        normalized = {}
        for name, value in field_or_map.items():
            if not is_valid_field(name):
                raise ValidationError(ValidationErrorReason.INVALID_FIELD,
                                      f"Invalid field name for sort(): {name!r}", name)
            if not is_valid_sort(value):
                raise ValidationError(ValidationErrorReason.INVALID_SORT_DIRECTION,
                                      f"Sort direction must be one of {sorted(SORT_DIRECTIONS)}, got {value!r}",
                                      name)
            normalized[name] = SORT_DIRECTIONS[value.lower()]
        self._descriptor.sort.update(normalized)
        return self

    # ----- Execution -----
    async def execute(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    def __await__(self):
        return self.execute().__await__()

    async def _run(self):
        descriptor = self._descriptor
        store = self._model.store
        collection = self._model.collection_name
        if descriptor.is_identity_lookup():
            logger.debug("get %s/%s", collection, descriptor.document_id)
            doc = await store.get(collection, descriptor.document_id)
            docs = [] if doc is None else [doc]
        else:
            limit = 1 if descriptor.find_one else (descriptor.limit or None)
            logger.debug("query %s criteria=%r sort=%r limit=%r offset=%r", collection,
                         descriptor.criteria, descriptor.sort, limit, descriptor.offset)
            docs = await store.query(collection, copy.deepcopy(descriptor.criteria),
                                     descriptor.sort_pairs(), limit, descriptor.offset)
        return self._shape(list(docs))

    def _shape(self, docs: List[dict]):
        if self._descriptor.find_one:
            return docs[0] if docs else None
        return docs

    # ----- Live results -----
    async def on_snapshot(self, on_data: Callable[[Any], None],
                          on_error: Optional[Callable[[BaseException], None]] = None) -> Callable[[], None]:
        """Listen for changes to this query's result; returns an unsubscribe callable."""
        self._subscribed = True
        descriptor = self._descriptor
        sort_pairs = descriptor.sort_pairs()
        limit = 1 if descriptor.find_one else descriptor.limit
        offset = descriptor.offset

        def deliver(docs):
            docs = sort_documents(list(docs), sort_pairs)
            on_data(self._shape(window(docs, limit, offset)))

        return await self._model.store.listen(self._model.collection_name,
                                              copy.deepcopy(descriptor.criteria), deliver, on_error)


# =========================
# Batch mutations
# =========================
@dataclass
class BatchResult:
    affected: int = 0
    batches: int = 0


class BatchCursor:
    """Keyset cursor: pages through matches in id order, after the last id seen."""

    def __init__(self, criteria: Mapping):
        self.criteria = dict(criteria)
        self.last_id: Optional[str] = None

    def page_criteria(self) -> dict:
        criteria = copy.deepcopy(self.criteria)
        if self.last_id is None:
            return criteria
        existing = criteria.get("id")
        if existing is None:
            criteria["id"] = {"$gt": self.last_id}
        elif is_mapping(existing):
            criteria["id"] = {**existing, "$gt": self.last_id}
        else:
            criteria["id"] = {"$eq": existing, "$gt": self.last_id}
        return criteria

    def advance(self, ids: List[str]):
        self.last_id = ids[-1]


def _check_batch_size(batch_size):
    if not _is_count(batch_size) or batch_size == 0:
        raise ValidationError(ValidationErrorReason.INVALID_BATCH_SIZE,
                              f"batch_size must be a positive integer, got {batch_size!r}")


class BatchMutationEngine:
    """Applies updates or deletes to many documents, one bounded page at a time.

    Pages run strictly in sequence. Nothing is rolled back: on failure a
    BatchError reports how far the operation got.
    """

    def __init__(self, store: "DocumentStore", collection_name: str):
        self.store = store
        self.collection_name = collection_name

    async def update_query(self, descriptor: QueryDescriptor, patch: Mapping,
                           batch_size: int = DEFAULT_BATCH_SIZE) -> BatchResult:
        async def mutate(document_id):
            try:
                await self.store.patch(self.collection_name, document_id, copy.deepcopy(dict(patch)))
            except StoreNotFoundError:
                # removed by someone else since the page was read
                logger.debug("skip %s/%s: no longer exists", self.collection_name, document_id)
                return False
            return True

        return await self._run_query(descriptor, batch_size, mutate, "update")

    async def delete_query(self, descriptor: QueryDescriptor,
                           batch_size: int = DEFAULT_BATCH_SIZE) -> BatchResult:
        return await self._run_query(descriptor, batch_size, self._delete, "delete")

    async def delete_ids(self, ids: Sequence[str], batch_size: int = DEFAULT_BATCH_SIZE) -> BatchResult:
        _check_batch_size(batch_size)
        result = BatchResult()
        for chunk in chunked(list(ids), batch_size):
            await self._apply(chunk, self._delete, result, "delete")
        logger.info("delete %s: %d documents in %d batches", self.collection_name, result.affected, result.batches)
        return result

    async def _delete(self, document_id: str) -> bool:
        await self.store.delete(self.collection_name, document_id)
        return True

    async def _run_query(self, descriptor: QueryDescriptor, batch_size: int,
                         mutate: Callable[[str], Awaitable[bool]], action: str) -> BatchResult:
        _check_batch_size(batch_size)
        cursor = BatchCursor(descriptor.criteria)
        result = BatchResult()
        while True:
            try:
                page = await self.store.query(self.collection_name, cursor.page_criteria(),
                                              [("id", "asc")], batch_size, 0)
            except UsageError:
                raise
            except Exception as e:
                raise self._abort(action, "the next page read", result, e) from e
            if not page:
                break
            ids = [doc["id"] for doc in page]
            await self._apply(ids, mutate, result, action)
            cursor.advance(ids)
        logger.info("%s %s: %d documents in %d batches", action, self.collection_name,
                    result.affected, result.batches)
        return result

    async def _apply(self, ids: List[str], mutate: Callable[[str], Awaitable[bool]],
                     result: BatchResult, action: str):
        logger.debug("%s batch %d on %s: %d documents", action, result.batches + 1,
                     self.collection_name, len(ids))
        for document_id in ids:
            try:
                mutated = await mutate(document_id)
            except Exception as e:
                raise self._abort(action, f"document {document_id!r}", result, e) from e
            if mutated:
                result.affected += 1
        result.batches += 1

    def _abort(self, action: str, where: str, result: BatchResult, error: Exception) -> BatchError:
        logger.warning("%s on %s aborted at %s after %d documents: %s", action,
                       self.collection_name, where, result.affected, error)
        return BatchError(f"Batch {action} failed on {where} after {result.affected} documents: {error}",
                          committed=result.affected, batches=result.batches)


# =========================
# Stores
# =========================
class DocumentStore(Protocol):
    """Async document store the models are built on.

    Documents handed back always carry their identifier under ``id``.
    ``patch`` raises StoreNotFoundError for a missing document; ``listen``
    returns a zero-argument callable that stops delivery.
    """

    async def get(self, collection: str, document_id: str) -> Optional[dict]: ...

    async def put(self, collection: str, document_id: str, document: Mapping) -> None: ...

    async def patch(self, collection: str, document_id: str, partial: Mapping) -> None: ...

    async def delete(self, collection: str, document_id: str) -> None: ...

    async def query(self, collection: str, criteria: Mapping,
                    sort: Optional[Sequence[Tuple[str, str]]] = None,
                    limit: Optional[int] = None, offset: int = 0) -> List[dict]: ...

    async def listen(self, collection: str, criteria: Mapping,
                     on_change: Callable[[List[dict]], None],
                     on_error: Optional[Callable[[BaseException], None]] = None) -> Callable[[], None]: ...


@dataclass
class _Listener:
    collection: str
    criteria: Dict[str, Any]
    on_change: Callable[[List[dict]], None]
    on_error: Optional[Callable[[BaseException], None]] = None


class _ListenerSet:
    def __init__(self):
        self._listeners: List[_Listener] = []

    def add(self, listener: _Listener, fetch: Callable[[str, Mapping], List[dict]]) -> Callable[[], None]:
        self._listeners.append(listener)
        self._deliver(listener, fetch)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def notify(self, collection: str, fetch: Callable[[str, Mapping], List[dict]]):
        for listener in list(self._listeners):
            if listener.collection == collection:
                self._deliver(listener, fetch)

    @staticmethod
    def _deliver(listener: _Listener, fetch):
        try:
            listener.on_change(fetch(listener.collection, listener.criteria))
        except Exception as e:
            if listener.on_error is None:
                logger.exception("listener on %s failed", listener.collection)
            else:
                listener.on_error(e)


def _with_id(document_id: str, doc: Mapping) -> dict:
    out = copy.deepcopy(dict(doc))
    out["id"] = document_id
    return out


class MemoryStore:
    """In-process DocumentStore keeping documents in nested dicts.

    Documents are copied on the way in and out, so callers never share
    state with the store.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._listeners = _ListenerSet()

    def _collection(self, name: str) -> Dict[str, dict]:
        return self._collections.setdefault(name, {})

    def _matching(self, collection: str, criteria: Mapping) -> List[dict]:
        docs = (_with_id(doc_id, doc) for doc_id, doc in self._collection(collection).items())
        return [doc for doc in docs if match_query(doc, criteria)]

    async def get(self, collection, document_id):
        doc = self._collection(collection).get(document_id)
        return None if doc is None else _with_id(document_id, doc)

    async def put(self, collection, document_id, document):
        stored = copy.deepcopy(dict(document))
        stored.pop("id", None)
        self._collection(collection)[document_id] = stored
        self._listeners.notify(collection, self._matching)

    async def patch(self, collection, document_id, partial):
        stored = self._collection(collection).get(document_id)
        if stored is None:
            raise StoreNotFoundError(f"no entity to update: {collection}/{document_id}")
        for key, value in partial.items():
            deep_set(stored, key, copy.deepcopy(value))
        self._listeners.notify(collection, self._matching)

    async def delete(self, collection, document_id):
        self._collection(collection).pop(document_id, None)
        self._listeners.notify(collection, self._matching)

    async def query(self, collection, criteria, sort=None, limit=None, offset=0):
        docs = sort_documents(self._matching(collection, criteria), sort)
        return window(docs, limit, offset)

    async def count(self, collection, criteria):
        return len(self._matching(collection, criteria))

    async def listen(self, collection, criteria, on_change, on_error=None):
        return self._listeners.add(_Listener(collection, dict(criteria), on_change, on_error), self._matching)

    def list_collection_names(self) -> List[str]:
        return list(self._collections.keys())


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    document TEXT NOT NULL
);
"""
TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _encode_value(value):
    if isinstance(value, (datetime, date)):
        return {"$date": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj: dict):
    if set(obj) == {"$date"}:
        text = obj["$date"]
        return datetime.fromisoformat(text) if "T" in text else date.fromisoformat(text)
    return obj


def dumps_document(doc: Mapping) -> str:
    return json.dumps(doc, default=_encode_value)


def loads_document(text: str) -> dict:
    return json.loads(text, object_hook=_decode_object)


class SQLiteStore:
    """DocumentStore persisting each collection as a table of JSON documents.

    Criteria are evaluated in Python with the same engine as MemoryStore.
    Usage:
        store = SQLiteStore("app.db")
        users = Model.define("User", store, {"name": "string"})
    """

    def __init__(self, db_path: str = ":memory:"):
        self.conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._tables = set()
        self._listeners = _ListenerSet()

    def _table(self, collection: str) -> str:
        if not TABLE_NAME_RE.match(collection):
            raise InvalidQueryError(f"Collection name {collection!r} is not a valid table name.")
        if collection not in self._tables:
            self.conn.execute(CREATE_TABLE_SQL.format(table=collection))
            self._tables.add(collection)
        return collection

    def _load(self, collection: str, document_id: str) -> Optional[dict]:
        row = self.conn.execute(f"SELECT document FROM {self._table(collection)} WHERE id = ?",
                                (document_id,)).fetchone()
        return None if row is None else loads_document(row[0])

    def _write(self, collection: str, document_id: str, doc: Mapping):
        self.conn.execute(f"INSERT OR REPLACE INTO {self._table(collection)} (id, document) VALUES (?, ?)",
                          (document_id, dumps_document(doc)))

    def _matching(self, collection: str, criteria: Mapping) -> List[dict]:
        rows = self.conn.execute(f"SELECT id, document FROM {self._table(collection)}")
        docs = (_with_id(doc_id, loads_document(text)) for doc_id, text in rows)
        return [doc for doc in docs if match_query(doc, criteria)]

    async def get(self, collection, document_id):
        doc = self._load(collection, document_id)
        return None if doc is None else _with_id(document_id, doc)

    async def put(self, collection, document_id, document):
        stored = dict(document)
        stored.pop("id", None)
        self._write(collection, document_id, stored)
        self._listeners.notify(collection, self._matching)

    async def patch(self, collection, document_id, partial):
        stored = self._load(collection, document_id)
        if stored is None:
            raise StoreNotFoundError(f"no entity to update: {collection}/{document_id}")
        for key, value in partial.items():
            deep_set(stored, key, value)
        self._write(collection, document_id, stored)
        self._listeners.notify(collection, self._matching)

    async def delete(self, collection, document_id):
        self.conn.execute(f"DELETE FROM {self._table(collection)} WHERE id = ?", (document_id,))
        self._listeners.notify(collection, self._matching)

    async def query(self, collection, criteria, sort=None, limit=None, offset=0):
        docs = sort_documents(self._matching(collection, criteria), sort)
        return window(docs, limit, offset)

    async def count(self, collection, criteria):
        return len(self._matching(collection, criteria))

    async def listen(self, collection, criteria, on_change, on_error=None):
        return self._listeners.add(_Listener(collection, dict(criteria), on_change, on_error), self._matching)

    def list_collection_names(self) -> List[str]:
        rows = self.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
        return [name for (name,) in rows]

    def close(self):
        self.conn.close()


# =========================
# Model
# =========================
ActorSource = Union[None, str, Callable[[], Optional[str]]]


class Model:
    """Validated CRUD surface over one store collection.

    Usage:
        store = MemoryStore()
        people = Model.define("Person", store, {
            "name": {"type": "string", "required": True},
            "age": {"type": "number", "defaultsTo": 0},
        })
        ann = await people.create({"name": "Ann"})
        adults = await people.find({"age": {"$gte": 18}}).sort("name").limit(10)

    ``create`` checks for an existing id and then writes in a second round
    trip, so two concurrent creates with the same id can both succeed.
    """

    def __init__(self, store: DocumentStore, descriptor: SchemaDescriptor, actor: ActorSource = None):
        self.store = store
        self.descriptor = validate_schema(descriptor)
        self.validator = DocumentValidator(self.descriptor)
        self.batches = BatchMutationEngine(store, self.descriptor.collection_name)
        self.actor = actor

    @classmethod
    def define(cls, name: str, store: DocumentStore, attributes: Optional[Mapping] = None,
               config: Optional[Mapping] = None, actor: ActorSource = None, **overrides) -> "Model":
        return cls(store, SchemaDescriptor.build(name, config, attributes, **overrides), actor=actor)

    @property
    def identity(self) -> str:
        return self.descriptor.identity

    @property
    def collection_name(self) -> str:
        return self.descriptor.collection_name

    def __repr__(self):
        return f"<Model {self.identity} collection={self.collection_name!r}>"

    # ----- Metadata -----
    def _current_actor(self) -> Optional[str]:
        return self.actor() if callable(self.actor) else self.actor

    def touch_created(self, doc: dict) -> dict:
        now = utcnow()
        actor = self._current_actor()
        if self.descriptor.auto_created_at:
            doc["created_at"] = now
        if self.descriptor.auto_created_by and actor is not None:
            doc["created_by"] = actor
        return self.touch_updated(doc, now)

    def touch_updated(self, doc: dict, now: Optional[datetime] = None) -> dict:
        actor = self._current_actor()
        if self.descriptor.auto_updated_at:
            doc["updated_at"] = now or utcnow()
        if self.descriptor.auto_updated_by and actor is not None:
            doc["updated_by"] = actor
        return doc

    # ----- Find -----
    def find(self, criteria: Optional[Mapping] = None) -> Query:
        """Find zero or more documents."""
        return Query(self, criteria or {})

    def find_one(self, criteria_or_id: Union[None, str, Mapping] = None) -> Query:
        """Find a single document by criteria or id; resolves to None when nothing matches."""
        return Query(self, criteria_or_id or {}).is_find_one(True)

    def find_by_field(self, field_name: str, value) -> Query:
        if not is_valid_field(field_name):
            raise ValidationError(ValidationErrorReason.INVALID_FIELD, f"Invalid field name {field_name!r}",
                                  field_name)
        return Query(self, {field_name: value})

    def find_one_by_field(self, field_name: str, value) -> Query:
        return self.find_by_field(field_name, value).is_find_one(True)

    def find_one_by_id(self, document_id: str) -> Query:
        if not isinstance(document_id, str):
            raise _param_type_error("find_one_by_id", "id", "string", document_id)
        return Query(self, document_id)

    def validate(self, document: Mapping, partial: bool = False) -> dict:
        return self.validator.validate(document, partial)

    # ----- Create -----
    async def create(self, document: Mapping) -> Optional[dict]:
        if not is_mapping(document):
            raise _param_type_error("create", "document", "object", document)
        supplied_id = document.get("id")
        if self.descriptor.auto_id and supplied_id:
            raise UsageError("Cannot supply an id when auto_id is enabled")
        if not self.descriptor.auto_id and not supplied_id:
            raise UsageError("An id is required when auto_id is disabled")

        document_id = supplied_id or generate_document_id()
        if await self.find_one_by_id(document_id) is not None:
            raise ConflictError(f"Document with the id {document_id} already exists. Create failed.")

        validated = self.touch_created(self.validate(document))
        await self.store.put(self.collection_name, document_id, validated)
        logger.info("created %s/%s", self.collection_name, document_id)
        return await self.find_one_by_id(document_id)

    async def find_or_create(self, criteria_or_id: Union[str, Mapping], document: Mapping) -> Optional[dict]:
        """Return the first match, or create ``document`` when there is none.

        A bare id is written onto the new document, so it is subject to the
        same auto_id rules as ``create``.
        """
        if is_mapping(criteria_or_id) and "id" in criteria_or_id:
            raise UsageError("Given criteria cannot contain an id key. Use find_or_create(id, document)")
        existing = await self.find_one(criteria_or_id)
        if existing is not None:
            return existing
        document = dict(document)
        if isinstance(criteria_or_id, str):
            document["id"] = criteria_or_id
        return await self.create(document)

    # ----- Update -----
    async def update(self, criteria: Optional[Mapping], patch: Mapping,
                     batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Apply ``patch`` to every matching document; returns how many were updated."""
        if isinstance(criteria, str):
            raise UsageError("Given criteria should not be a string. Use update_one(id, document)")
        if criteria is not None and not is_mapping(criteria):
            raise _param_type_error("update", "criteria", "object", criteria)
        validated = self.touch_updated(self.validate(patch, partial=True))
        result = await self.batches.update_query(self.find(criteria).descriptor, validated, batch_size)
        return result.affected

    async def update_one(self, document_id: str, document: Mapping) -> Optional[dict]:
        if not isinstance(document_id, str):
            raise _param_type_error("update_one", "id", "string", document_id)
        if not is_mapping(document):
            raise _param_type_error("update_one", "document", "object", document)
        if "id" in document:
            raise UsageError("update_one() document cannot contain an id field")

        validated = self.touch_updated(self.validate(document, partial=True))
        try:
            await self.store.patch(self.collection_name, document_id, validated)
        except StoreNotFoundError:
            return None
        return await self.find_one_by_id(document_id)

    # ----- Destroy -----
    async def destroy(self, target: Union[None, str, Mapping, Sequence[str]] = None,
                      batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Delete by criteria (None for the whole collection), list of ids, or single id.

        Returns the number of deletes issued.
        """
        if is_mapping(target) and "id" in target:
            raise UsageError("Given criteria cannot contain an id key. Use destroy(id)")
        if target is None or is_mapping(target):
            result = await self.batches.delete_query(self.find(target).descriptor, batch_size)
            return result.affected
        if isinstance(target, (list, tuple)):
            if not is_string_list(target):
                raise UsageError("Given list must only contain string ids")
            return await self.delete_ids_by_batch(target, batch_size)
        if isinstance(target, str):
            await self.store.delete(self.collection_name, target)
            return 1
        raise _param_type_error("destroy", "target", "object, list or string", target)

    async def delete_ids_by_batch(self, ids: Sequence[str], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        result = await self.batches.delete_ids(ids, batch_size)
        return result.affected

    # ----- Count / subscribe -----
    async def count(self, criteria_or_id: Union[None, str, Mapping] = None) -> int:
        if isinstance(criteria_or_id, str):
            return 0 if await self.find_one_by_id(criteria_or_id) is None else 1
        query = self.find(criteria_or_id)
        native_count = getattr(self.store, "count", None)
        if callable(native_count):
            return await native_count(self.collection_name, copy.deepcopy(query.descriptor.criteria))
        return len(await query)

    async def subscribe(self, criteria_or_id: Union[None, str, Mapping], on_data: Callable[[Any], None],
                        on_error: Optional[Callable[[BaseException], None]] = None) -> Callable[[], None]:
        """Deliver the query result on every change until the returned callable is invoked."""
        if isinstance(criteria_or_id, str):
            query = self.find_one_by_id(criteria_or_id)
        else:
            query = self.find(criteria_or_id)
        return await query.on_snapshot(on_data, on_error)


# =========================
# App
# =========================
class App:
    """Registry of models sharing one store and one app-level config.

    Usage:
        app = App(MemoryStore(), config={"autoCreatedBy": False})
        app.define("Task", {"title": "string"})
        tasks = app["Task"]
    """

    def __init__(self, store: DocumentStore, config: Optional[Mapping] = None,
                 actor: ActorSource = None, name: str = "[DEFAULT]"):
        self.name = name
        self.store = store
        self.config = dict(config or {})
        self.actor = actor
        self.models: Dict[str, Model] = {}

    def define(self, name: str, attributes: Optional[Mapping] = None, **overrides) -> Model:
        if name in self.models:
            raise SchemaError(SchemaErrorReason.INVALID_DESCRIPTOR,
                              f"Model '{name}' is already defined in app '{self.name}'")
        descriptor = SchemaDescriptor.build(name, self.config, attributes, **overrides)
        model = Model(self.store, descriptor, actor=self.actor)
        self.models[name] = model
        return model

    def model(self, name: str) -> Model:
        if name not in self.models:
            raise UsageError(f"Model '{name}' is not defined in app '{self.name}'")
        return self.models[name]

    def __getitem__(self, name: str) -> Model:
        return self.model(name)

    def list_model_names(self) -> List[str]:
        return list(self.models.keys())
