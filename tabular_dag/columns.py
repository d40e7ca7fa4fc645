"""
Column Store
============

Typed, immutable, nullable columns addressed by name, and the provider
protocol through which the ``Loc`` operator reads them.

Columns wrap a ``polars.Series``. Null is polars' validity mask and stays
distinct from NaN, which is an ordinary float64 value. Kernels always
allocate fresh Series; nothing in the package mutates one in place, so a
Column can be shared between concurrent evaluations over the same snapshot.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

import polars as pl

from .errors import TypeMismatchError, UnknownColumnError

logger = logging.getLogger(__name__)


class ColumnType(Enum):
    """Element types a column may carry."""
    FLOAT64 = "float64"
    STRING = "string"
    BOOLEAN = "boolean"
    RECORD = "record"

    @classmethod
    def of(cls, dtype: pl.DataType) -> ColumnType:
        if dtype == pl.Float64:
            return cls.FLOAT64
        if dtype == pl.String:
            return cls.STRING
        if dtype == pl.Boolean:
            return cls.BOOLEAN
        if isinstance(dtype, pl.Struct):
            return cls.RECORD
        raise TypeMismatchError(f"Unsupported column dtype: {dtype}")

    @property
    def polars_dtype(self) -> pl.DataType:
        return {
            ColumnType.FLOAT64: pl.Float64,
            ColumnType.STRING: pl.String,
            ColumnType.BOOLEAN: pl.Boolean,
        }[self]


def normalize_series(series: pl.Series) -> pl.Series:
    """Coerce a series onto one of the supported element types."""
    dtype = series.dtype
    if dtype in (pl.Float64, pl.String, pl.Boolean) or isinstance(dtype, pl.Struct):
        return series
    if dtype.is_numeric() or dtype == pl.Null:
        return series.cast(pl.Float64)
    return series.cast(pl.String)


@dataclass(frozen=True)
class Column:
    """A named, typed, nullable sequence of values."""
    name: str
    series: pl.Series

    def __post_init__(self):
        if self.series.name != self.name:
            object.__setattr__(self, 'series', self.series.rename(self.name))
        # Validates the dtype.
        ColumnType.of(self.series.dtype)

    @classmethod
    def from_values(cls, name: str, values: Iterable[Any],
                    dtype: Optional[ColumnType] = None) -> Column:
        """Create a column from Python values; ``None`` marks a null."""
        values = list(values)
        if dtype is not None and dtype is not ColumnType.RECORD:
            series = pl.Series(name, values, dtype=dtype.polars_dtype)
        else:
            series = normalize_series(pl.Series(name, values))
        return cls(name, series)

    @property
    def dtype(self) -> ColumnType:
        return ColumnType.of(self.series.dtype)

    @property
    def is_numeric(self) -> bool:
        return self.dtype is ColumnType.FLOAT64

    @property
    def null_count(self) -> int:
        return self.series.null_count()

    def __len__(self) -> int:
        return len(self.series)

    def values(self) -> List[Any]:
        return self.series.to_list()

    def renamed(self, name: str) -> Column:
        return Column(name, self.series.rename(name))

    def with_series(self, series: pl.Series) -> Column:
        """New column under the same name with different contents."""
        return Column(self.name, series.rename(self.name))

    def to_payload(self) -> Dict[str, Any]:
        return {'name': self.name, 'values': json_value(self.values())}

    def equals(self, other: Column) -> bool:
        """Value equality; nulls compare equal to nulls and NaN to NaN."""
        if self.name != other.name or self.series.dtype != other.series.dtype:
            return False
        if len(self) != len(other):
            return False
        return all(_same_value(a, b) for a, b in zip(self.values(), other.values()))


def _same_value(a: Any, b: Any) -> bool:
    if isinstance(a, float) and isinstance(b, float) and a != a and b != b:
        return True
    return a == b


def json_value(value: Any) -> Any:
    """Replace non-finite floats, recursively, by "NaN", "Infinity" or "-Infinity"."""
    if isinstance(value, float):
        if math.isnan(value):
            return 'NaN'
        if math.isinf(value):
            return 'Infinity' if value > 0 else '-Infinity'
        return value
    if isinstance(value, dict):
        return {key: json_value(v) for key, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_value(v) for v in value]
    return value


# ==============================================================================
# PROVIDERS
# ==============================================================================

@runtime_checkable
class TabularProvider(Protocol):
    """Source of named columns; the only consumer is the ``Loc`` operator."""

    def get_column(self, name: str) -> Column:
        ...


class DataFrameProvider:
    """Read-only provider over an in-memory ``polars.DataFrame``."""

    def __init__(self, frame: pl.DataFrame):
        self._frame = frame
        self._cache: Dict[str, Column] = {}

    @property
    def column_names(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def frame(self) -> pl.DataFrame:
        return self._frame

    def get_column(self, name: str) -> Column:
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        if name not in self._frame.columns:
            raise UnknownColumnError(f"column {name!r} not found")

        column = Column(name, normalize_series(self._frame.get_column(name)))
        self._cache[name] = column
        return column

    @classmethod
    def from_dict(cls, data: Mapping[str, Iterable[Any]]) -> DataFrameProvider:
        series = [normalize_series(pl.Series(name, list(values)))
                  for name, values in data.items()]
        return cls(pl.DataFrame(series))

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> DataFrameProvider:
        """
        Load a CSV file.

        A column becomes float64 when at least one of its cells parses as a
        number; cells that do not parse become null. Every other column stays
        a string column. Empty cells are null in both cases.
        """
        raw = pl.read_csv(path, infer_schema=False)

        converted = []
        for name in raw.columns:
            text = raw.get_column(name)
            parsed = text.cast(pl.Float64, strict=False)
            if len(parsed) > 0 and parsed.null_count() < len(parsed):
                converted.append(parsed)
            else:
                converted.append(text)

        frame = pl.DataFrame(converted)
        logger.debug("Loaded %s: %d rows, %d columns", path, frame.height, frame.width)
        return cls(frame)


__all__ = [
    'ColumnType',
    'Column',
    'TabularProvider',
    'DataFrameProvider',
    'normalize_series',
    'json_value',
]
