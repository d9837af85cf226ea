"""Schema-less key/value container shared between the host and apps."""

from __future__ import annotations

from collections.abc import Iterator, Mapping, MutableMapping
from enum import Enum
from typing import Any, TypeVar, Union

T = TypeVar("T")

RecordValue = Union[None, bool, int, float, str, "DynamicRecord", tuple["RecordValue", ...]]

_ABSENT: Any = object()


class MissingKeyPolicy(str, Enum):
    """How `DynamicRecord.get` behaves for keys that are not present."""

    STRICT = "strict"
    PERMISSIVE = "permissive"


class RecordError(Exception):
    """Base error for dynamic record lookups."""


class MissingKeyError(RecordError, KeyError):
    """Raised when a strict record is asked for an absent key."""


class TypeMismatchError(RecordError, TypeError):
    """Raised when a stored value cannot be coerced to the requested type."""


class RecordTypeError(RecordError, TypeError):
    """Raised when a value of an unsupported type is stored."""


class DynamicRecord(MutableMapping[str, RecordValue]):
    """Insertion-ordered mapping with normalized keys.

    Both modes are fixed for the lifetime of the record. With ``ignore_case``
    every key is lower-cased on the way in and on every lookup. ``missing``
    decides whether `get` returns ``None`` or raises `MissingKeyError` for
    absent keys; ``record[key]`` always raises so the mapping protocol keeps
    its usual contract.

    ``source`` is imported with `merge`, so keys already present win.
    """

    __slots__ = ("_data", "_ignore_case", "_missing")

    def __init__(
        self,
        source: Mapping[str, Any] | None = None,
        *,
        ignore_case: bool = False,
        missing: MissingKeyPolicy = MissingKeyPolicy.STRICT,
    ) -> None:
        self._data: dict[str, RecordValue] = {}
        self._ignore_case = ignore_case
        self._missing = MissingKeyPolicy(missing)
        if source is not None:
            self.merge(source)

    @property
    def ignore_case(self) -> bool:
        return self._ignore_case

    @property
    def missing(self) -> MissingKeyPolicy:
        return self._missing

    def normalize_key(self, key: str) -> str:
        """Return the stored form of ``key``."""

        if not isinstance(key, str):
            raise RecordTypeError(f"Record keys must be strings, got {type(key).__name__}")
        return key.lower() if self._ignore_case else key

    def get(self, key: str, default: Any = _ABSENT) -> Any:  # type: ignore[override]
        """Look up ``key`` honouring the missing-key policy.

        An explicit ``default`` takes precedence over the policy.
        """

        normalized = self.normalize_key(key)
        if normalized in self._data:
            return self._data[normalized]
        if default is not _ABSENT:
            return default
        if self._missing is MissingKeyPolicy.PERMISSIVE:
            return None
        raise MissingKeyError(key)

    def get_typed(self, key: str, default: T) -> T:
        """Return the value coerced to ``type(default)``, or ``default`` if absent."""

        normalized = self.normalize_key(key)
        if normalized not in self._data:
            return default
        value = self._data[normalized]
        if default is None:
            return value  # type: ignore[return-value]
        target = type(default)
        if isinstance(value, target) and not (target is int and isinstance(value, bool)):
            return value  # type: ignore[return-value]
        if value is None or target is bool or isinstance(value, DynamicRecord):
            raise TypeMismatchError(
                f"Value for '{key}' is {type(value).__name__}, expected {target.__name__}"
            )
        try:
            return target(value)  # type: ignore[call-arg]
        except (TypeError, ValueError) as exc:
            raise TypeMismatchError(
                f"Value for '{key}' cannot be converted to {target.__name__}: {value!r}"
            ) from exc

    def set(self, key: str, value: Any) -> None:
        """Insert or overwrite ``key``."""

        self._data[self.normalize_key(key)] = self._coerce(value)

    def has(self, key: str) -> bool:
        return self.normalize_key(key) in self._data

    def remove(self, key: str) -> bool:
        """Remove ``key``; returns False when nothing matched."""

        return self._data.pop(self.normalize_key(key), _ABSENT) is not _ABSENT

    def contains_item(self, key: str, value: Any) -> bool:
        normalized = self.normalize_key(key)
        return normalized in self._data and self._data[normalized] == value

    def remove_item(self, key: str, value: Any) -> bool:
        """Remove ``key`` only when it currently maps to ``value``."""

        if not self.contains_item(key, value):
            return False
        del self._data[self.normalize_key(key)]
        return True

    def merge(self, other: Mapping[str, Any]) -> DynamicRecord:
        """Import keys from ``other`` that are not present yet; returns self."""

        for key, value in list(other.items()):
            normalized = self.normalize_key(key)
            if normalized not in self._data:
                self._data[normalized] = self._coerce(value)
        return self

    def copy(self) -> DynamicRecord:
        return DynamicRecord(self, ignore_case=self._ignore_case, missing=self._missing)

    def to_dict(self) -> dict[str, Any]:
        """Plain ``dict`` view with nested records and tuples unwrapped."""

        return {key: _plain(value) for key, value in self._data.items()}

    def __getitem__(self, key: str) -> RecordValue:
        normalized = self.normalize_key(key)
        try:
            return self._data[normalized]
        except KeyError:
            raise MissingKeyError(key) from None

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        if not self.remove(key):
            raise MissingKeyError(key)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DynamicRecord):
            return self._data == other._data
        if isinstance(other, Mapping):
            try:
                imported = DynamicRecord(other, ignore_case=self._ignore_case, missing=self._missing)
            except RecordTypeError:
                return False
            return self._data == imported._data
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        return ", ".join(
            f"{key} = {'(null)' if value is None else value}" for key, value in self._data.items()
        )

    def __repr__(self) -> str:
        return f"DynamicRecord({self._data!r}, ignore_case={self._ignore_case}, missing={self._missing.value!r})"

    def _coerce(self, value: Any) -> RecordValue:
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, Mapping):
            return DynamicRecord(value, ignore_case=self._ignore_case, missing=self._missing)
        if isinstance(value, (list, tuple)):
            return tuple(self._coerce(item) for item in value)
        raise RecordTypeError(f"Unsupported record value type: {type(value).__name__}")


def _plain(value: RecordValue) -> Any:
    if isinstance(value, DynamicRecord):
        return value.to_dict()
    if isinstance(value, tuple):
        return [_plain(item) for item in value]
    return value


__all__ = [
    "DynamicRecord",
    "MissingKeyError",
    "MissingKeyPolicy",
    "RecordError",
    "RecordTypeError",
    "RecordValue",
    "TypeMismatchError",
]
