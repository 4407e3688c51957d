"""Field matchers with AND semantics.

A filter maps a field name to a :class:`Matcher`: either :class:`Exact`
(equality) or :class:`Predicate` (a boolean function of the field value).
:func:`build_filter` accepts the convenient raw form, where plain values
become ``Exact`` and callables become ``Predicate``::

    build_filter({"domain": "switch", "name": lambda n: "valve" in n})

State filters may carry one nested ``attributes`` clause, itself a filter
over the state's attribute mapping.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

ATTRIBUTES_KEY = "attributes"


@dataclass(frozen=True)
class Exact:
    value: Any

    def matches(self, candidate: Any) -> bool:
        return candidate == self.value


@dataclass(frozen=True)
class Predicate:
    fn: Callable[[Any], bool]

    def matches(self, candidate: Any) -> bool:
        return bool(self.fn(candidate))


Matcher = Exact | Predicate


@dataclass(frozen=True)
class Filter:
    """Immutable conjunction of per-field matchers."""

    clauses: tuple[tuple[str, Matcher], ...] = ()
    attributes: Filter | None = None

    def __bool__(self) -> bool:
        return bool(self.clauses) or self.attributes is not None

    def matches(self, record: Any) -> bool:
        """True when every clause matches *record* (a mapping or an object)."""
        if record is None:
            return False
        if not all(matcher.matches(_field(record, name)) for name, matcher in self.clauses):
            return False
        if self.attributes is not None:
            attrs = _field(record, ATTRIBUTES_KEY)
            return self.attributes.matches(attrs if attrs is not None else {})
        return True


FilterLike = Filter | Mapping[str, Any] | None


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _matcher(value: Any) -> Matcher:
    if isinstance(value, (Exact, Predicate)):
        return value
    if callable(value):
        return Predicate(value)
    return Exact(value)


def build_filter(raw: FilterLike = None, *, nested: bool = True) -> Filter:
    """Coerce a raw ``{field: value | callable | Matcher}`` mapping into a :class:`Filter`.

    Raises
    ------
    ValueError
        If an ``attributes`` clause is nested more than one level deep.
    """
    if raw is None:
        return Filter()
    if isinstance(raw, Filter):
        return raw

    clauses: list[tuple[str, Matcher]] = []
    attributes: Filter | None = None
    for name, value in raw.items():
        if name == ATTRIBUTES_KEY and isinstance(value, (Mapping, Filter)):
            if not nested:
                raise ValueError("Only one level of 'attributes' nesting is supported")
            attributes = build_filter(value, nested=False)
        else:
            clauses.append((name, _matcher(value)))
    return Filter(tuple(clauses), attributes)


def matches(record: Any, raw: FilterLike) -> bool:
    """Shorthand for ``build_filter(raw).matches(record)``."""
    return build_filter(raw).matches(record)
