"""
Typed FHIR search parameters and their query string encoding.

    query = SearchQuery().add("status", eq("active")).count(20)
    str(query)  # status=active&_count=20

Values passed together to one add() call are comma-joined (any of them may match).
Separate add() calls always produce separate name=value pairs, even for the same name.
"""

import dataclasses
import datetime
import decimal
import enum
import urllib.parse
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from fhir_sdk.model import primitives

# Characters that have structural meaning inside a search value and need a backslash when literal
_ESCAPED = ("\\", ",", "$", "|")
# Left readable in the encoded query, since they are common in names & values and safe in a query
_SAFE_NAME = ":._-"
_SAFE_VALUE = ":/|$,"


class Prefix(enum.Enum):
    """Comparison prefixes for ordered values (numbers, dates, quantities)"""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GE = "ge"
    LE = "le"
    SA = "sa"
    EB = "eb"
    AP = "ap"

    def render(self) -> str:
        # eq is the default, so it is never written out
        return "" if self is Prefix.EQ else self.value


def escape(text: str) -> str:
    """Backslash-escapes characters that would otherwise split a search value"""
    for char in _ESCAPED:
        text = text.replace(char, f"\\{char}")
    return text


def format_value(value: Any) -> str:
    """
    Renders a plain Python value (or a search parameter) as a search value.

    Bare strings are taken as already being in search syntax (like "http://loinc.org|1234-5"),
    so only typed parameters like StringParam escape their special characters.
    """
    if isinstance(value, SearchParam):
        return value.encode_value()
    return _plain_text(value)


def _plain_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, decimal.Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, datetime.datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (primitives.FhirDate, primitives.FhirDateTime, primitives.FhirInstant)):
        return value.text
    if isinstance(value, str):
        return value
    raise TypeError(f"Cannot use a {type(value).__name__} as a search value")


###############################################################################
#
# Typed parameters
#
###############################################################################


class SearchParam:
    """Base class for typed search values"""

    modifier: str | None = None

    def encode_value(self) -> str:
        raise NotImplementedError  # pragma: no cover


@dataclasses.dataclass(frozen=True)
class StringParam(SearchParam):
    value: str
    modifier: str | None = None  # exact, contains, text, missing

    def encode_value(self) -> str:
        return escape(self.value)


@dataclasses.dataclass(frozen=True)
class TokenParam(SearchParam):
    """
    A code, optionally scoped by a system.

    - TokenParam("male") -> male
    - TokenParam("1234-5", system="http://loinc.org") -> http://loinc.org|1234-5
    - TokenParam("x", system="") -> |x (a code with no system at all)
    - TokenParam(None, system="http://loinc.org") -> http://loinc.org| (any code in that system)
    """

    code: str | None = None
    system: str | None = None
    modifier: str | None = None  # not, text, above, below, in, not-in, of-type

    def encode_value(self) -> str:
        if self.system is None:
            return escape(self.code or "")
        return f"{escape(self.system)}|{escape(self.code or '')}"


@dataclasses.dataclass(frozen=True)
class PrefixParam(SearchParam):
    """An ordered value with a comparison prefix (eq when not given)"""

    value: Any
    prefix: Prefix = Prefix.EQ

    def encode_value(self) -> str:
        return Prefix(self.prefix).render() + escape(_plain_text(self.value))


@dataclasses.dataclass(frozen=True)
class DateParam(PrefixParam):
    pass


@dataclasses.dataclass(frozen=True)
class NumberParam(PrefixParam):
    pass


@dataclasses.dataclass(frozen=True)
class QuantityParam(SearchParam):
    """A number with optional units, like ge5.4|http://unitsofmeasure.org|mg"""

    value: Any
    system: str | None = None
    code: str | None = None
    prefix: Prefix = Prefix.EQ

    def encode_value(self) -> str:
        text = Prefix(self.prefix).render() + escape(_plain_text(self.value))
        if self.system is not None or self.code is not None:
            text += f"|{escape(self.system or '')}|{escape(self.code or '')}"
        return text


@dataclasses.dataclass(frozen=True)
class ReferenceParam(SearchParam):
    """
    A reference to another resource.

    - ReferenceParam("123") -> 123
    - ReferenceParam("123", resource_type="Patient") -> Patient/123
    - ReferenceParam(url="https://example.com/fhir/Patient/123") -> the URL as given
    """

    id: str | None = None
    resource_type: str | None = None
    url: str | None = None
    modifier: str | None = None  # a target type (like Patient), identifier, missing

    def __post_init__(self):
        if (self.id is None) == (self.url is None):
            raise ValueError("A reference search value needs exactly one of an id or a url")

    def encode_value(self) -> str:
        if self.url is not None:
            return escape(self.url)
        if self.resource_type:
            return f"{self.resource_type}/{escape(self.id)}"
        return escape(self.id)


@dataclasses.dataclass(frozen=True)
class UriParam(SearchParam):
    value: str
    modifier: str | None = None  # above, below

    def encode_value(self) -> str:
        return escape(self.value)


@dataclasses.dataclass(frozen=True, init=False)
class CompositeParam(SearchParam):
    """Several values combined with $, like code-value-quantity=http://loinc.org|1234-5$gt5"""

    parts: tuple

    def __init__(self, *parts: Any):
        object.__setattr__(self, "parts", parts)

    def encode_value(self) -> str:
        return "$".join(format_value(part) for part in self.parts)


@dataclasses.dataclass(frozen=True)
class MissingParam(SearchParam):
    is_missing: bool = True
    modifier: str = dataclasses.field(default="missing", init=False)

    def encode_value(self) -> str:
        return "true" if self.is_missing else "false"


def missing(is_missing: bool = True) -> MissingParam:
    """Matches resources where the parameter has no value (or, with False, has some value)"""
    return MissingParam(is_missing)


def _prefixed(prefix: Prefix, value: Any) -> PrefixParam:
    if isinstance(value, (int, float, decimal.Decimal)) and not isinstance(value, bool):
        return NumberParam(value, prefix)
    if isinstance(value, (datetime.date, primitives.FhirDate, primitives.FhirDateTime, primitives.FhirInstant)):
        return DateParam(value, prefix)
    return PrefixParam(value, prefix)


def eq(value: Any) -> PrefixParam:
    return _prefixed(Prefix.EQ, value)


def ne(value: Any) -> PrefixParam:
    return _prefixed(Prefix.NE, value)


def gt(value: Any) -> PrefixParam:
    return _prefixed(Prefix.GT, value)


def lt(value: Any) -> PrefixParam:
    return _prefixed(Prefix.LT, value)


def ge(value: Any) -> PrefixParam:
    return _prefixed(Prefix.GE, value)


def le(value: Any) -> PrefixParam:
    return _prefixed(Prefix.LE, value)


def sa(value: Any) -> PrefixParam:
    return _prefixed(Prefix.SA, value)


def eb(value: Any) -> PrefixParam:
    return _prefixed(Prefix.EB, value)


def ap(value: Any) -> PrefixParam:
    return _prefixed(Prefix.AP, value)


###############################################################################
#
# Parameter names
#
###############################################################################


def chain(*names: str) -> str:
    """Builds a chained parameter name, like chain("subject:Patient", "name") -> subject:Patient.name"""
    return ".".join(names)


def has(resource_type: str, reference_param: str, param: str) -> str:
    """
    Builds a reverse chain name.

    has("Observation", "patient", "code") -> _has:Observation:patient:code
    (patients referenced by an observation's patient param, filtered by that observation's code)
    """
    return f"_has:{resource_type}:{reference_param}:{param}"


###############################################################################
#
# Queries
#
###############################################################################


class SearchQuery:
    """An ordered list of search parameters, in the order they were added"""

    def __init__(self, params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None):
        self._pairs: list[tuple[str, str]] = []
        if params:
            items = params.items() if isinstance(params, Mapping) else params
            for name, value in items:
                if isinstance(value, (list, tuple)):
                    self.add(name, *value)
                else:
                    self.add(name, value)

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "SearchQuery":
        return cls(params)

    def add(self, name: str, *values: Any) -> "SearchQuery":
        """
        Adds one name=value pair. Several values are comma-joined (matching any of them).

        A modifier on a typed value (like StringParam("x", modifier="exact")) is appended to the name.
        """
        if not values:
            raise ValueError(f"No values given for search parameter '{name}'")

        modifiers = {getattr(value, "modifier", None) for value in values}
        if len(modifiers) > 1:
            raise ValueError(f"Values for search parameter '{name}' use different modifiers")
        modifier = modifiers.pop()
        if modifier:
            name = f"{name}:{modifier}"

        self._pairs.append((name, ",".join(format_value(value) for value in values)))
        return self

    def with_raw(self, name: str, value: str) -> "SearchQuery":
        """Adds a pair whose value is already in search syntax (no escaping)"""
        self._pairs.append((name, value))
        return self

    def sort(self, *fields: str) -> "SearchQuery":
        """Sort order, like sort("-date", "status") (a leading dash means descending)"""
        return self.with_raw("_sort", ",".join(fields))

    def count(self, count: int) -> "SearchQuery":
        return self.with_raw("_count", str(count))

    def include(
        self, source_type: str, param: str, target_type: str | None = None, *, iterate: bool = False
    ) -> "SearchQuery":
        return self._include("_include", source_type, param, target_type, iterate)

    def revinclude(
        self, source_type: str, param: str, target_type: str | None = None, *, iterate: bool = False
    ) -> "SearchQuery":
        return self._include("_revinclude", source_type, param, target_type, iterate)

    def _include(self, name: str, source_type: str, param: str, target_type: str | None, iterate: bool):
        value = f"{source_type}:{param}"
        if target_type:
            value += f":{target_type}"
        return self.with_raw(f"{name}:iterate" if iterate else name, value)

    def summary(self, mode: str = "true") -> "SearchQuery":
        """Summary mode: true, text, data, count, or false"""
        return self.with_raw("_summary", mode)

    def elements(self, *names: str) -> "SearchQuery":
        return self.with_raw("_elements", ",".join(names))

    def items(self) -> list[tuple[str, str]]:
        """The (name, value) pairs in insertion order, before percent-encoding (handy for form bodies)"""
        return list(self._pairs)

    def encode(self) -> str:
        """The canonical percent-encoded query string"""
        return "&".join(
            urllib.parse.quote(name, safe=_SAFE_NAME) + "=" + urllib.parse.quote(value, safe=_SAFE_VALUE)
            for name, value in self._pairs
        )

    def __str__(self) -> str:
        return self.encode()

    def __repr__(self) -> str:
        return f"SearchQuery({self.encode()!r})"

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SearchQuery):
            return NotImplemented
        return self._pairs == other._pairs


def as_query(query: "SearchQuery | Mapping[str, Any] | Iterable[tuple[str, Any]] | str | None") -> SearchQuery:
    """
    Accepts the loose query forms that client calls take.

    A string is taken as an already-encoded query string (like "name=smith&_count=10").
    """
    if isinstance(query, SearchQuery):
        return query
    if isinstance(query, str):
        parsed = SearchQuery()
        for name, value in urllib.parse.parse_qsl(query.lstrip("?"), keep_blank_values=True):
            parsed.with_raw(name, value)
        return parsed
    return SearchQuery(query)
