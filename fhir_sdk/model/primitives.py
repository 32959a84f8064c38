"""FHIR primitive types and their lexical rules"""

import base64
import binascii
import dataclasses
import datetime
import decimal
import enum
import re
from typing import Any


class PrimitiveKind(enum.Enum):
    """Every primitive type code, across all supported revisions"""

    BOOLEAN = "boolean"
    INTEGER = "integer"
    UNSIGNED_INT = "unsignedInt"
    POSITIVE_INT = "positiveInt"
    INTEGER64 = "integer64"
    DECIMAL = "decimal"
    STRING = "string"
    CODE = "code"
    ID = "id"
    MARKDOWN = "markdown"
    URI = "uri"
    URL = "url"
    CANONICAL = "canonical"
    OID = "oid"
    UUID = "uuid"
    XHTML = "xhtml"
    DATE = "date"
    DATETIME = "dateTime"
    INSTANT = "instant"
    TIME = "time"
    BASE64_BINARY = "base64Binary"

    @classmethod
    def codes(cls) -> set[str]:
        return {kind.value for kind in cls}


INTEGER_KINDS = {
    PrimitiveKind.INTEGER,
    PrimitiveKind.UNSIGNED_INT,
    PrimitiveKind.POSITIVE_INT,
}
STRING_KINDS = {
    PrimitiveKind.STRING,
    PrimitiveKind.CODE,
    PrimitiveKind.ID,
    PrimitiveKind.MARKDOWN,
    PrimitiveKind.URI,
    PrimitiveKind.URL,
    PrimitiveKind.CANONICAL,
    PrimitiveKind.OID,
    PrimitiveKind.UUID,
    PrimitiveKind.XHTML,
}

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


###############################################################################
#
# Lexical value types
#
###############################################################################

_YEAR = r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
_MONTH = r"(0[1-9]|1[0-2])"
_DAY = r"(0[1-9]|[1-2][0-9]|3[0-1])"
_TIME = r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]{1,9})?"
_ZONE = r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"

DATE_REGEX = re.compile(rf"{_YEAR}(-{_MONTH}(-{_DAY})?)?")
DATETIME_REGEX = re.compile(rf"{_YEAR}(-{_MONTH}(-{_DAY}(T{_TIME}{_ZONE})?)?)?")
INSTANT_REGEX = re.compile(rf"{_YEAR}-{_MONTH}-{_DAY}T{_TIME}{_ZONE}")
TIME_REGEX = re.compile(_TIME)
BASE64_REGEX = re.compile(r"(?:[A-Za-z0-9+/]{4})*(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=)?")
INTEGER64_REGEX = re.compile(r"-?(0|[1-9][0-9]*)")


def parse_datetime(value: str) -> datetime.datetime:
    """
    Converts FHIR instant/dateTime/date lexical forms into a Python datetime.

    Missing month/day fields are treated as the earliest possible date (i.e. '1').

    CAUTION: Returned datetime might be naive - which makes more sense for dates without a time.
             FHIR says any field with hours/minutes SHALL have a timezone.
             But fields that are just dates SHALL NOT have a timezone.

    Raises ValueError if the calendar date does not exist (like 2021-02-30).
    """
    # Handle partial dates like "1980-12" (which FHIR allows, but fromisoformat can't handle)
    pieces = value.split("-")
    if len(pieces) == 1:
        return datetime.datetime(int(pieces[0]), 1, 1)  # note: naive datetime
    elif len(pieces) == 2:
        return datetime.datetime(int(pieces[0]), int(pieces[1]), 1)  # note: naive datetime

    # fromisoformat before 3.11 only handles exactly three or six fractional digits, and no Z
    value = value.replace("Z", "+00:00")
    value = re.sub(r"\.([0-9]{1,9})", lambda m: "." + (m.group(1) + "00000")[:6], value)
    # Leap seconds are lexically valid but Python has no room for them
    value = re.sub(r"(T[0-9]{2}:[0-9]{2}):60", r"\1:59", value)

    return datetime.datetime.fromisoformat(value)


class _Lexical:
    """A primitive value that keeps its exact original lexical form"""

    __slots__ = ("text",)
    _regex: re.Pattern
    _label: str

    def __init__(self, text: str):
        if not isinstance(text, str):
            raise TypeError(f"expected a string for {self._label}, got {type(text).__name__}")
        if not self._regex.fullmatch(text):
            raise ValueError(f"'{text}' is not a valid {self._label}")
        self._check(text)
        object.__setattr__(self, "text", text)

    def _check(self, text: str) -> None:
        pass

    def __setattr__(self, key, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.text!r})"

    def __eq__(self, other) -> bool:
        if type(other) is type(self):
            return self.text == other.text
        return NotImplemented

    def __hash__(self) -> int:
        return hash((type(self), self.text))


class FhirDate(_Lexical):
    """FHIR date: YYYY, YYYY-MM or YYYY-MM-DD"""

    __slots__ = ()
    _regex = DATE_REGEX
    _label = "date"

    def _check(self, text: str) -> None:
        parse_datetime(text)

    @classmethod
    def from_date(cls, value: datetime.date) -> "FhirDate":
        return cls(value.isoformat())

    @property
    def precision(self) -> str:
        return ("year", "month", "day")[self.text.count("-")]

    def to_date(self) -> datetime.date:
        """The earliest calendar date covered by this (possibly partial) date"""
        return parse_datetime(self.text).date()


class FhirDateTime(_Lexical):
    """FHIR dateTime: a partial date, or a full date and time with a timezone"""

    __slots__ = ()
    _regex = DATETIME_REGEX
    _label = "dateTime"

    def _check(self, text: str) -> None:
        parse_datetime(text)

    @classmethod
    def from_datetime(cls, value: datetime.date) -> "FhirDateTime":
        if isinstance(value, datetime.datetime):
            if value.tzinfo is None:
                raise ValueError("a dateTime with a time component needs a timezone")
            return cls(value.isoformat().replace("+00:00", "Z"))
        return cls(value.isoformat())

    @property
    def has_time(self) -> bool:
        return "T" in self.text

    def to_datetime(self) -> datetime.datetime:
        return parse_datetime(self.text)


class FhirInstant(_Lexical):
    """FHIR instant: a full timestamp with a timezone"""

    __slots__ = ()
    _regex = INSTANT_REGEX
    _label = "instant"

    def _check(self, text: str) -> None:
        parse_datetime(text)

    @classmethod
    def from_datetime(cls, value: datetime.datetime) -> "FhirInstant":
        if value.tzinfo is None:
            raise ValueError("an instant needs a timezone")
        return cls(value.isoformat().replace("+00:00", "Z"))

    def to_datetime(self) -> datetime.datetime:
        return parse_datetime(self.text)


class FhirTime(_Lexical):
    """FHIR time of day: hh:mm:ss with optional fractional seconds"""

    __slots__ = ()
    _regex = TIME_REGEX
    _label = "time"

    @classmethod
    def from_time(cls, value: datetime.time) -> "FhirTime":
        return cls(value.isoformat())


class Base64Binary(_Lexical):
    """Canonical base64 content (standard alphabet, mandatory padding, no whitespace)"""

    __slots__ = ()
    _regex = BASE64_REGEX
    _label = "base64Binary"

    def _check(self, text: str) -> None:
        try:
            base64.b64decode(text, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"'{text}' is not a valid base64Binary: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> "Base64Binary":
        return cls(base64.standard_b64encode(data).decode("ascii"))

    def decode(self) -> bytes:
        return base64.standard_b64decode(self.text)


class FhirDecimal(decimal.Decimal):
    """
    A Decimal that remembers its original digits.

    Decimal already keeps trailing zeros ("100.00" stays "100.00"), but str() switches to
    scientific notation for small numbers. Clinically meaningful precision lives in the
    original spelling, so that is what we hand back when serializing.
    """

    def __new__(cls, value: Any = "0"):
        text = value if isinstance(value, str) else str(value)
        text = text.strip()
        try:
            obj = super().__new__(cls, text)
        except decimal.InvalidOperation as exc:
            raise ValueError(f"'{text}' is not a valid decimal") from exc
        if not obj.is_finite():
            raise ValueError(f"'{text}' is not a valid decimal")
        obj._text = text
        return obj

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"FhirDecimal({self._text!r})"


###############################################################################
#
# Primitive values
#
###############################################################################


@dataclasses.dataclass(frozen=True)
class Primitive:
    """
    One primitive field value, tagged with its kind.

    The sibling `_field` data on the wire (element id & extensions) travels in the same object,
    so a value and its extensions can never drift apart.
    The value itself may be None when only the `_field` sibling was present.
    """

    kind: PrimitiveKind
    value: Any = None
    id: str | None = None
    extension: tuple = ()

    @property
    def has_extension(self) -> bool:
        return bool(self.id or self.extension)


def convert(kind: PrimitiveKind, value: Any) -> Any:
    """
    Normalizes a Python value into the canonical Python type for a primitive kind.

    Raises TypeError if the value has the wrong Python type and ValueError if its form is invalid.
    """
    if kind is PrimitiveKind.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeError(f"expected a boolean, got {type(value).__name__}")
        return value

    if kind in INTEGER_KINDS or kind is PrimitiveKind.INTEGER64:
        if isinstance(value, str) and kind is PrimitiveKind.INTEGER64:
            if not INTEGER64_REGEX.fullmatch(value):
                raise ValueError(f"'{value}' is not a valid integer64")
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"expected an integer, got {type(value).__name__}")
        if kind is PrimitiveKind.UNSIGNED_INT and value < 0:
            raise ValueError(f"{value} is not a valid unsignedInt")
        if kind is PrimitiveKind.POSITIVE_INT and value < 1:
            raise ValueError(f"{value} is not a valid positiveInt")
        if kind in INTEGER_KINDS and not INT32_MIN <= value <= INT32_MAX:
            raise ValueError(f"{value} is out of range for {kind.value}")
        return value

    if kind is PrimitiveKind.DECIMAL:
        if isinstance(value, FhirDecimal):
            return value
        if isinstance(value, bool) or not isinstance(value, (int, float, decimal.Decimal, str)):
            raise TypeError(f"expected a decimal, got {type(value).__name__}")
        return FhirDecimal(repr(value) if isinstance(value, float) else str(value))

    if kind in STRING_KINDS:
        if not isinstance(value, str):
            raise TypeError(f"expected a string, got {type(value).__name__}")
        return value

    match kind:
        case PrimitiveKind.DATE:
            if isinstance(value, FhirDate):
                return value
            if isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
                return FhirDate.from_date(value)
            return FhirDate(value)
        case PrimitiveKind.DATETIME:
            if isinstance(value, FhirDateTime):
                return value
            if isinstance(value, (FhirDate, FhirInstant)):
                return FhirDateTime(value.text)
            if isinstance(value, datetime.date):
                return FhirDateTime.from_datetime(value)
            return FhirDateTime(value)
        case PrimitiveKind.INSTANT:
            if isinstance(value, FhirInstant):
                return value
            if isinstance(value, datetime.datetime):
                return FhirInstant.from_datetime(value)
            return FhirInstant(value)
        case PrimitiveKind.TIME:
            if isinstance(value, FhirTime):
                return value
            if isinstance(value, datetime.time):
                return FhirTime.from_time(value)
            return FhirTime(value)
        case PrimitiveKind.BASE64_BINARY:
            if isinstance(value, Base64Binary):
                return value
            if isinstance(value, bytes):
                return Base64Binary.from_bytes(value)
            return Base64Binary(value)

    raise ValueError(f"Unexpected primitive kind: {kind}")  # pragma: no cover


def check_wire_type(kind: PrimitiveKind, node: Any) -> None:
    """Raises TypeError if a JSON node has the wrong JSON type for this kind"""
    if kind is PrimitiveKind.BOOLEAN:
        ok = isinstance(node, bool)
    elif kind in INTEGER_KINDS:
        ok = isinstance(node, int) and not isinstance(node, bool)
    elif kind is PrimitiveKind.INTEGER64:
        # R5 puts integer64 in a JSON string, but be forgiving of bare numbers
        ok = isinstance(node, (str, int)) and not isinstance(node, bool)
    elif kind is PrimitiveKind.DECIMAL:
        ok = isinstance(node, (int, float, decimal.Decimal)) and not isinstance(node, bool)
    else:
        ok = isinstance(node, str)

    if not ok:
        raise TypeError(f"expected JSON {_wire_type_name(kind)} for {kind.value}, got {json_type_name(node)}")


def to_wire(kind: PrimitiveKind, value: Any) -> Any:
    """Converts a canonical Python value into its JSON node"""
    if kind is PrimitiveKind.INTEGER64:
        return str(value)
    if isinstance(value, _Lexical):
        return value.text
    return value


def python_kinds(value: Any) -> list[PrimitiveKind]:
    """Primitive kinds a bare Python value could stand for, most likely first"""
    if isinstance(value, bool):
        return [PrimitiveKind.BOOLEAN]
    if isinstance(value, int):
        return [
            PrimitiveKind.INTEGER,
            PrimitiveKind.POSITIVE_INT,
            PrimitiveKind.UNSIGNED_INT,
            PrimitiveKind.INTEGER64,
            PrimitiveKind.DECIMAL,
        ]
    if isinstance(value, (float, decimal.Decimal)):
        return [PrimitiveKind.DECIMAL]
    if isinstance(value, FhirDate):
        return [PrimitiveKind.DATE, PrimitiveKind.DATETIME]
    if isinstance(value, (FhirDateTime, datetime.datetime)):
        return [PrimitiveKind.DATETIME, PrimitiveKind.INSTANT]
    if isinstance(value, FhirInstant):
        return [PrimitiveKind.INSTANT, PrimitiveKind.DATETIME]
    if isinstance(value, datetime.date):
        return [PrimitiveKind.DATE, PrimitiveKind.DATETIME]
    if isinstance(value, (FhirTime, datetime.time)):
        return [PrimitiveKind.TIME]
    if isinstance(value, (Base64Binary, bytes)):
        return [PrimitiveKind.BASE64_BINARY]
    if isinstance(value, str):
        return [
            PrimitiveKind.STRING,
            PrimitiveKind.CODE,
            PrimitiveKind.MARKDOWN,
            PrimitiveKind.URI,
            PrimitiveKind.URL,
            PrimitiveKind.CANONICAL,
            PrimitiveKind.ID,
            PrimitiveKind.OID,
            PrimitiveKind.UUID,
        ]
    return []


def _wire_type_name(kind: PrimitiveKind) -> str:
    if kind is PrimitiveKind.BOOLEAN:
        return "boolean"
    if kind in INTEGER_KINDS or kind is PrimitiveKind.DECIMAL:
        return "number"
    return "string"


def json_type_name(node: Any) -> str:
    if node is None:
        return "null"
    if isinstance(node, bool):
        return "boolean"
    if isinstance(node, (int, float, decimal.Decimal)):
        return "number"
    if isinstance(node, str):
        return "string"
    if isinstance(node, list):
        return "array"
    if isinstance(node, dict):
        return "object"
    return type(node).__name__
