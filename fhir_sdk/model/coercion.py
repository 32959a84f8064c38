"""Turns loose Python values into the normalized values that elements store"""

import collections.abc
from typing import TYPE_CHECKING, Any

from fhir_sdk import errors
from fhir_sdk.model import primitives, schema
from fhir_sdk.model.base import Choice, Element, Resource
from fhir_sdk.model.primitives import Primitive, PrimitiveKind

if TYPE_CHECKING:
    from fhir_sdk.revisions import Revision  # pragma: no cover


def coerce_field(revision: "Revision", prop: schema.FhirProperty, value: Any, choice_type: str | None = None) -> Any:
    """
    Normalizes a value for one field: primitives get wrapped, lists become tuples, choices get tagged.

    Returns None (or an empty tuple) when the field should be left unset.
    Raises BuildError for values of the wrong type and UnsupportedVersionError for
    elements that belong to some other revision.
    """
    if value is None:
        return None

    if prop.choice:
        return coerce_choice(revision, prop, value, choice_type)

    if prop.is_list:
        if isinstance(value, (str, bytes, collections.abc.Mapping)) or not isinstance(value, collections.abc.Iterable):
            raise errors.BuildError(f"{prop.json_name} expects a list, got {type(value).__name__}")
        return tuple(_coerce_single(revision, prop, item) for item in value)

    return _coerce_single(revision, prop, value)


def _coerce_single(revision: "Revision", prop: schema.FhirProperty, value: Any) -> Any:
    if prop.is_primitive:
        return coerce_primitive(PrimitiveKind(prop.type_code), value, prop.json_name)
    if prop.is_resource:
        if not isinstance(value, Resource):
            raise errors.BuildError(f"{prop.json_name} expects a resource, got {type(value).__name__}")
        check_revision(revision, value)
        return value
    return check_element(revision, prop.type_code, value, prop.json_name)


def coerce_primitive(kind: PrimitiveKind, value: Any, label: str) -> Primitive:
    if isinstance(value, Primitive):
        if value.value is None and not value.has_extension:
            raise errors.BuildError(f"{label}: a primitive needs a value, an id, or extensions")
        inner = value.value
        if inner is not None:
            inner = _convert(kind, inner, label)
        return Primitive(kind, inner, value.id, tuple(value.extension))

    return Primitive(kind, _convert(kind, value, label))


def _convert(kind: PrimitiveKind, value: Any, label: str) -> Any:
    try:
        return primitives.convert(kind, value)
    except (TypeError, ValueError) as exc:
        raise errors.BuildError(f"{label}: {exc}") from exc


def coerce_choice(revision: "Revision", prop: schema.FhirProperty, value: Any, choice_type: str | None) -> Choice:
    allowed = revision.choice_types(prop)

    if isinstance(value, Choice):
        type_code, element = value.type, value.element
    elif choice_type:
        type_code, element = choice_type, value
    elif isinstance(value, Element):
        type_code, element = value.type_definition.name, value
    elif isinstance(value, Primitive):
        type_code, element = value.kind.value, value
    else:
        # Infer a primitive variant from the Python type, preferring the most natural kind
        for kind in primitives.python_kinds(value):
            if kind.value in allowed:
                type_code, element = kind.value, value
                break
        else:
            raise errors.BuildError(f"{prop.label} cannot hold a value of type {type(value).__name__}")

    if type_code not in allowed:
        raise errors.BuildError(f"{prop.label} does not allow type '{type_code}'")

    if schema.is_primitive_code(type_code):
        element = coerce_primitive(PrimitiveKind(type_code), element, prop.label)
    else:
        element = check_element(revision, type_code, element, prop.label)
    return Choice(type_code, element)


def check_element(revision: "Revision", type_code: str, value: Any, label: str) -> Element:
    expected = revision.get_class(type_code)
    if isinstance(value, Element):
        check_revision(revision, value)
    if not isinstance(value, expected):
        raise errors.BuildError(f"{label} expects {type_code}, got {type(value).__name__}")
    return value


def check_revision(revision: "Revision", value: Element) -> None:
    if value.revision is not revision:
        raise errors.UnsupportedVersionError(
            f"{type(value).__name__} belongs to FHIR {value.revision.version.name}, not {revision.version.name}"
        )
