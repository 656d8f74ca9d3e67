"""
Record translator: self-describing JSON payload -> parameterized INSERT
The payload alone decides the column set; no table schema is consulted
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

from ..utils.logger import SystemFailure


INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

PLACEHOLDER = '%s'

# Identifier quote character per storage dialect
IDENTIFIER_QUOTES = {
    'mysql': '`',
    'postgresql': '"',
}


class TranslationError(Exception):
    """Payload cannot be turned into an insert; the message is dropped"""

    system_failure = SystemFailure.UNKNOWN_ERROR


class MalformedPayload(TranslationError):
    system_failure = SystemFailure.MALFORMED_PAYLOAD


class UnsupportedShape(TranslationError):
    system_failure = SystemFailure.UNSUPPORTED_SHAPE


class UnsupportedValueType(TranslationError):
    system_failure = SystemFailure.UNSUPPORTED_VALUE_TYPE


class InvalidIdentifier(TranslationError):
    system_failure = SystemFailure.INVALID_IDENTIFIER


class ValueKind(Enum):
    BOOLEAN = "BOOLEAN"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    STRING = "STRING"


@dataclass(frozen=True)
class BoundValue:
    kind: ValueKind
    value: Any


def coerce_value(column: str, raw: Any) -> BoundValue:
    """
    Map one decoded JSON value to a bound parameter

    bool is tested before int because bool is an int subclass in Python.
    Integers must fit a signed 64-bit column; floats are bound as floats
    (never truncated). Objects, arrays and null are rejected.
    """
    if isinstance(raw, bool):
        return BoundValue(ValueKind.BOOLEAN, raw)

    if isinstance(raw, int):
        if not INT64_MIN <= raw <= INT64_MAX:
            raise UnsupportedValueType(
                f"Column '{column}': integer {raw} does not fit in 64 bits"
            )
        return BoundValue(ValueKind.INTEGER, raw)

    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise UnsupportedValueType(f"Column '{column}': non-finite number {raw}")
        return BoundValue(ValueKind.FLOAT, raw)

    if isinstance(raw, str):
        return BoundValue(ValueKind.STRING, raw)

    if raw is None:
        kind = 'null'
    elif isinstance(raw, dict):
        kind = 'object'
    elif isinstance(raw, list):
        kind = 'array'
    else:
        kind = type(raw).__name__
    raise UnsupportedValueType(f"Column '{column}': unsupported {kind} value")


def quote_identifier(name: str, quote: str) -> str:
    """
    Quote a table or column name

    Names containing the quote character, NUL or '%' are rejected; the drivers
    read '%' in the statement text as a parameter marker.
    """
    if not isinstance(name, str) or not name:
        raise InvalidIdentifier("Identifier must be a non-empty string")
    if quote in name:
        raise InvalidIdentifier(f"Identifier {name!r} contains the quote character {quote!r}")
    if '\x00' in name:
        raise InvalidIdentifier(f"Identifier {name!r} contains a NUL character")
    if '%' in name:
        raise InvalidIdentifier(f"Identifier {name!r} contains '%'")
    return f"{quote}{name}{quote}"


@dataclass(frozen=True)
class InsertStatement:
    """One insert, built fresh for each message"""
    table: str
    columns: Tuple[Tuple[str, BoundValue], ...]
    quote: str = '`'

    @property
    def column_names(self) -> List[str]:
        return [name for name, _ in self.columns]

    @property
    def params(self) -> Tuple[Any, ...]:
        return tuple(bound.value for _, bound in self.columns)

    @property
    def sql(self) -> str:
        table = quote_identifier(self.table, self.quote)
        columns = ', '.join(quote_identifier(name, self.quote) for name in self.column_names)
        placeholders = ', '.join([PLACEHOLDER] * len(self.columns))
        return f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"

    def as_dict(self) -> dict:
        return {name: bound.value for name, bound in self.columns}


def _reject_duplicate_keys(pairs):
    document = {}
    for key, value in pairs:
        if key in document:
            raise MalformedPayload(f"Duplicate key '{key}' in payload")
        document[key] = value
    return document


class RecordTranslator:
    """
    Translates raw payloads into inserts for a given dialect
    Stateless: one instance may serve every topic
    """

    def __init__(self, dialect: str = 'mysql'):
        if dialect not in IDENTIFIER_QUOTES:
            raise ValueError(
                f"Unsupported dialect: {dialect}. Must be one of {sorted(IDENTIFIER_QUOTES)}"
            )
        self.dialect = dialect
        self.quote = IDENTIFIER_QUOTES[dialect]

    def parse(self, payload: bytes) -> dict:
        """Decode and parse the payload; only a non-empty JSON object is accepted"""
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = bytes(payload).decode('utf-8')
            document = json.loads(payload, object_pairs_hook=_reject_duplicate_keys)
        except ValueError as e:
            # JSONDecodeError, UnicodeDecodeError and the int digit limit
            raise MalformedPayload(f"Payload is not valid JSON: {e}") from e
        except RecursionError as e:
            raise MalformedPayload("Payload is nested too deeply") from e

        if not isinstance(document, dict):
            shape = 'null' if document is None else type(document).__name__
            raise UnsupportedShape(f"Payload must be a JSON object, got {shape}")
        if not document:
            raise UnsupportedShape("Payload object has no fields")

        return document

    def translate(self, table: str, payload: bytes) -> InsertStatement:
        """
        Build the insert for one message

        Args:
            table: Destination table, already resolved from the topic
            payload: Raw message payload

        Returns:
            InsertStatement with columns in payload key order

        Raises:
            TranslationError subclass when the message must be dropped
        """
        quote_identifier(table, self.quote)

        document = self.parse(payload)

        columns = []
        for name, raw in document.items():
            quote_identifier(name, self.quote)
            columns.append((name, coerce_value(name, raw)))

        return InsertStatement(table=table, columns=tuple(columns), quote=self.quote)
