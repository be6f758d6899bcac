"""Data types of trends and typed measurement values."""

from __future__ import annotations

import json
import math
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

from .errors import MinervaRuntimeError


class DataType(Enum):
    """Data type of a trend or attribute, valued by its definition name."""

    BOOLEAN = "boolean"
    INT2 = "smallint"
    INTEGER = "integer"
    INT8 = "bigint"
    REAL = "real"
    DOUBLE = "double precision"
    TEXT = "text"
    TEXT_ARRAY = "text[]"
    TIMESTAMP = "timestamp"
    NUMERIC = "numeric"
    NUMERIC_ARRAY = "numeric[]"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, value: str) -> DataType:
        """Map a database type name to a DataType; unknown names give TEXT."""
        return _FROM_DATABASE_NAME.get(value, cls.TEXT)

    def sql_name(self) -> str:
        """Name of the type as used in SQL statements."""
        if self is DataType.TIMESTAMP:
            return "timestamptz"
        return self.value


_FROM_DATABASE_NAME = {
    "smallint": DataType.INT2,
    "integer": DataType.INTEGER,
    "bigint": DataType.INT8,
    "numeric": DataType.NUMERIC,
    "real": DataType.REAL,
    "double precision": DataType.DOUBLE,
    "text": DataType.TEXT,
    "text[]": DataType.TEXT_ARRAY,
    "timestamptz": DataType.TIMESTAMP,
}

_VALUE_TYPES = frozenset(
    {
        DataType.INT2,
        DataType.INTEGER,
        DataType.INT8,
        DataType.REAL,
        DataType.DOUBLE,
        DataType.TEXT,
        DataType.TEXT_ARRAY,
        DataType.TIMESTAMP,
        DataType.NUMERIC,
    }
)

_NULLABLE_TYPES = frozenset(
    {
        DataType.INT2,
        DataType.INTEGER,
        DataType.INT8,
        DataType.REAL,
        DataType.DOUBLE,
        DataType.NUMERIC,
    }
)

_DECIMAL_MAX = Decimal(2**96 - 1)
_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(
    r"[+-]?(?:inf|infinity|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)",
    re.IGNORECASE,
)
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)")


def _to_f32(value: float) -> float:
    try:
        return struct.unpack("f", struct.pack("f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _shortest_f32(value: float) -> str:
    for precision in range(1, 10):
        text = f"{value:.{precision}g}"
        if _to_f32(float(text)) == value:
            return text
    return repr(value)


def _format_float(value: float, single: bool = False) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    text = format(Decimal(_shortest_f32(value) if single else repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    micros = value.microsecond
    if micros == 0:
        fraction = ""
    elif micros % 1000 == 0:
        fraction = f".{micros // 1000:03d}"
    else:
        fraction = f".{micros:06d}"
    return f"{value:%Y-%m-%d %H:%M:%S}{fraction} UTC"


def _debug(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        return "[" + ", ".join(_debug(item) for item in value) + "]"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, float):
        text = _format_float(value)
        if math.isfinite(value) and "." not in text:
            text += ".0"
        return text
    return str(value)


def _debug_option(value: Any) -> str:
    return "None" if value is None else f"Some({_debug(value)})"


def _no_mapping(description: str, target: DataType) -> MinervaRuntimeError:
    return MinervaRuntimeError(f"No mapping defined for {description} -> {target}")


def _wrap(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >= 1 << (bits - 1) else value


def _in_range(value: int, bits: int) -> int | None:
    limit = 1 << (bits - 1)
    return value if -limit <= value < limit else None


def _float_to_int(value: float, bits: int) -> int | None:
    if not math.isfinite(value):
        return None
    return _in_range(math.trunc(value), bits)


def _float_to_decimal(value: float, single: bool = False) -> Decimal | None:
    if not math.isfinite(value):
        return None
    result = Decimal(_shortest_f32(value) if single else repr(value))
    return result if abs(result) <= _DECIMAL_MAX else None


def _decimal_to_int(value: Decimal, bits: int) -> int | None:
    return _in_range(int(value), bits)


def _parse_int(text: str, bits: int) -> int | None:
    if _INT_RE.fullmatch(text) is None:
        return None
    return _in_range(int(text), bits)


def _parse_float(text: str, single: bool = False) -> float | None:
    if _FLOAT_RE.fullmatch(text) is None:
        return None
    value = float(text)
    return _to_f32(value) if single else value


def _parse_decimal(text: str) -> Decimal | None:
    if _DECIMAL_RE.fullmatch(text) is None:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if abs(value) <= _DECIMAL_MAX else None


@dataclass(frozen=True)
class MeasValue:
    """A measurement value tagged with its data type.

    Numeric values may be None, meaning SQL NULL.
    """

    data_type: DataType
    value: Any = None

    def __post_init__(self) -> None:
        if self.data_type not in _VALUE_TYPES:
            raise ValueError(f"No measurement value of type {self.data_type}")

    @classmethod
    def null_value_of_type(cls, data_type: DataType) -> MeasValue:
        """The value used for a missing measurement of ``data_type``."""
        if data_type in _NULLABLE_TYPES:
            return cls(data_type, None)
        return cls(DataType.TEXT, "")

    def to_value_of(self, data_type: DataType) -> MeasValue:
        """Convert this value to ``data_type``, raising when no mapping exists."""
        mapper = _MAPPERS.get(self.data_type)
        if mapper is not None:
            return mapper(self.value, data_type)
        if self.data_type is DataType.TEXT and data_type is DataType.TEXT:
            return MeasValue(DataType.TEXT, self.value)
        if self.data_type is DataType.TEXT_ARRAY and data_type is DataType.TEXT:
            return MeasValue(DataType.TEXT, ",".join(self.value))
        if self.data_type is DataType.TIMESTAMP and data_type is DataType.TIMESTAMP:
            return MeasValue(DataType.TIMESTAMP, self.value)
        raise _no_mapping(_debug(self.value), data_type)

    def __str__(self) -> str:
        if self.data_type is DataType.TEXT:
            return self.value
        if self.data_type is DataType.TEXT_ARRAY:
            return "ARRAY(text)"
        if self.data_type is DataType.TIMESTAMP:
            return _format_timestamp(self.value)
        if self.value is None:
            return "NULL"
        if self.data_type is DataType.REAL:
            return _format_float(self.value, single=True)
        if self.data_type is DataType.DOUBLE:
            return _format_float(self.value)
        if self.data_type is DataType.NUMERIC:
            return format(self.value, "f")
        return str(self.value)


_PARSERS: dict[DataType, Callable[[str], Any]] = {
    DataType.INT2: lambda text: _parse_int(text, 16),
    DataType.INTEGER: lambda text: _parse_int(text, 32),
    DataType.INT8: lambda text: _parse_int(text, 64),
    DataType.NUMERIC: _parse_decimal,
    DataType.REAL: lambda text: _parse_float(text, single=True),
    DataType.DOUBLE: _parse_float,
}


def parse_meas_value(data_type: DataType, value: str) -> MeasValue:
    """Parse text as a value of ``data_type``; unparsable numbers become NULL."""
    parser = _PARSERS.get(data_type)
    if parser is None:
        return MeasValue(DataType.TEXT, value)
    return MeasValue(data_type, parser(value))


def _map(
    value: Any,
    target_data_type: DataType,
    conversions: dict[DataType, Callable[[Any], Any]],
) -> MeasValue:
    convert = conversions.get(target_data_type)
    if convert is None:
        raise _no_mapping(_debug_option(value), target_data_type)
    return MeasValue(target_data_type, None if value is None else convert(value))


def _same(value: Any) -> Any:
    return value


def _int_to_f32(value: int) -> float:
    return _to_f32(float(value))


def map_int2(value: int | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional smallint to ``target_data_type``."""
    return _map(
        value,
        target_data_type,
        {
            DataType.INT2: _same,
            DataType.INTEGER: _same,
            DataType.INT8: _same,
            DataType.NUMERIC: Decimal,
            DataType.DOUBLE: float,
            DataType.REAL: _int_to_f32,
        },
    )


def map_int4(value: int | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional integer to ``target_data_type``."""
    return _map(
        value,
        target_data_type,
        {
            DataType.INTEGER: _same,
            DataType.INT8: _same,
            DataType.NUMERIC: Decimal,
            DataType.DOUBLE: float,
            DataType.REAL: _int_to_f32,
        },
    )


def map_int8(value: int | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional bigint to ``target_data_type``; integer wraps around."""
    return _map(
        value,
        target_data_type,
        {
            DataType.INTEGER: lambda x: _wrap(x, 32),
            DataType.INT8: _same,
            DataType.NUMERIC: Decimal,
            DataType.DOUBLE: float,
            DataType.REAL: _int_to_f32,
        },
    )


def map_real(value: float | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional real to ``target_data_type``."""
    return _map(
        value,
        target_data_type,
        {
            DataType.NUMERIC: lambda x: _float_to_decimal(x, single=True),
            DataType.REAL: _same,
            DataType.DOUBLE: _same,
            DataType.INT8: lambda x: _float_to_int(x, 64),
            DataType.INTEGER: lambda x: _float_to_int(x, 32),
        },
    )


def map_double(value: float | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional double precision value to ``target_data_type``."""
    return _map(
        value,
        target_data_type,
        {
            DataType.NUMERIC: _float_to_decimal,
            DataType.DOUBLE: _same,
            DataType.INT8: lambda x: _float_to_int(x, 64),
            DataType.INTEGER: lambda x: _float_to_int(x, 32),
        },
    )


def map_numeric(value: Decimal | None, target_data_type: DataType) -> MeasValue:
    """Convert an optional numeric to ``target_data_type``."""
    return _map(
        value,
        target_data_type,
        {
            DataType.INTEGER: lambda x: _decimal_to_int(x, 32),
            DataType.INT8: lambda x: _decimal_to_int(x, 64),
            DataType.REAL: lambda x: _to_f32(float(x)),
            DataType.DOUBLE: float,
            DataType.NUMERIC: _same,
        },
    )


_MAPPERS: dict[DataType, Callable[[Any, DataType], MeasValue]] = {
    DataType.INT2: map_int2,
    DataType.INTEGER: map_int4,
    DataType.INT8: map_int8,
    DataType.REAL: map_real,
    DataType.DOUBLE: map_double,
    DataType.NUMERIC: map_numeric,
}

INT2_NONE_VALUE = MeasValue(DataType.INT2, None)
INTEGER_NONE_VALUE = MeasValue(DataType.INTEGER, None)
INT8_NONE_VALUE = MeasValue(DataType.INT8, None)
NUMERIC_NONE_VALUE = MeasValue(DataType.NUMERIC, None)
TEXT_NONE_VALUE = MeasValue(DataType.TEXT, "")