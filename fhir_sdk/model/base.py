"""Immutable in-memory representation of FHIR elements and resources"""

import dataclasses
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, ClassVar

from fhir_sdk import errors
from fhir_sdk.model import schema
from fhir_sdk.model.primitives import Primitive

if TYPE_CHECKING:
    from fhir_sdk.builder import Builder  # pragma: no cover
    from fhir_sdk.revisions import Revision  # pragma: no cover


@dataclasses.dataclass(frozen=True)
class Choice:
    """
    The one live variant of a choice field (like Observation.value[x]).

    `type` is the FHIR type code (like "Quantity" or "dateTime"), which also picks the wire name.
    `element` is a Primitive for primitive variants, else an Element.
    """

    type: str
    element: Any

    @property
    def value(self) -> Any:
        """The variant's content, with primitives unwrapped into plain Python values"""
        if isinstance(self.element, Primitive):
            return self.element.value
        return self.element

    def json_key(self, prefix: str) -> str:
        return prefix + self.type[0].upper() + self.type[1:]


def _unwrap(prop: schema.FhirProperty, stored: Any) -> Any:
    if stored is None:
        return () if prop.is_list else None
    if prop.is_primitive:
        if prop.is_list:
            return tuple(item.value for item in stored)
        return stored.value
    return stored


class Element:
    """
    Base class for every FHIR complex type and backbone element (and resources, via Resource).

    Concrete classes are made per revision (see fhir_sdk.revisions), so an R4B Coding and an
    R5 Coding are different types. Values are immutable: use to_builder() or replace() to get
    a modified copy.

    Field access uses python names (patient.birth_date). Primitive fields come back as plain
    Python values; use get_primitive() to see their element id and extensions.
    """

    __slots__ = ("_values",)

    type_definition: ClassVar[schema.TypeDefinition]
    revision: ClassVar["Revision"]
    _by_name: ClassVar[dict[str, schema.FhirProperty]]
    _lookup: ClassVar[dict[str, tuple[schema.FhirProperty, str | None]]]

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        definition = cls.__dict__.get("type_definition")
        if definition is None:
            return  # an abstract helper class, not a concrete FHIR type

        cls._by_name = {prop.name: prop for prop in definition.properties}
        lookup = {}
        for prop in definition.properties:
            lookup[prop.name] = (prop, None)
            lookup[prop.json_name] = (prop, None)
            if prop.choice:
                for type_code in cls.revision.choice_types(prop):
                    wire_name = Choice(type_code, None).json_key(prop.json_name)
                    lookup[wire_name] = (prop, type_code)
                    lookup[schema.python_name(wire_name)] = (prop, type_code)
        cls._lookup = lookup

    def __init__(self, **fields: Any):
        from fhir_sdk.model import coercion

        values = {}
        for name, value in fields.items():
            prop, choice_type = self.resolve_field(name)
            stored = coercion.coerce_field(self.revision, prop, value, choice_type=choice_type)
            if stored is not None and stored != ():
                values[prop.name] = stored
        self.validate_values(values)
        object.__setattr__(self, "_values", values)

    @classmethod
    def _from_values(cls, values: dict[str, Any]) -> "Element":
        """Makes an instance from already-normalized and already-validated values"""
        instance = cls.__new__(cls)
        object.__setattr__(instance, "_values", values)
        return instance

    ###########################################################################
    #
    # Schema helpers
    #
    ###########################################################################

    @classmethod
    def resolve_field(cls, name: str) -> tuple[schema.FhirProperty, str | None]:
        """
        Finds the property for a python name, wire name, or choice wire name (like valueQuantity).

        :returns: the property and, for choice wire names, the choice type code
        """
        try:
            return cls._lookup[name]
        except KeyError:
            raise errors.BuildError(f"{cls.__name__} has no field '{name}'") from None

    @classmethod
    def first_missing_field(cls, values: dict[str, Any]) -> str | None:
        """Returns the wire label of the first unset required field, in declaration order"""
        for prop in cls.type_definition.properties:
            if prop.required and prop.name not in values:
                return prop.label
        return None

    @classmethod
    def field_conflict(cls, values: dict[str, Any]) -> str | None:
        """Returns a description of any cross-field rule the values break (subclasses extend)"""
        return None

    @classmethod
    def validate_values(cls, values: dict[str, Any]) -> None:
        missing = cls.first_missing_field(values)
        if missing:
            raise errors.MissingRequiredField(cls.__name__, missing)
        conflict = cls.field_conflict(values)
        if conflict:
            raise errors.BuildError(f"{cls.__name__}: {conflict}")

    ###########################################################################
    #
    # Accessors
    #
    ###########################################################################

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        prop = type(self)._by_name.get(name)
        if prop is None:
            raise AttributeError(f"'{type(self).__name__}' has no field '{name}'")
        return _unwrap(prop, self._values.get(name))

    def has(self, name: str) -> bool:
        prop, _ = self.resolve_field(name)
        return prop.name in self._values

    def get_primitive(self, name: str) -> Primitive | tuple[Primitive, ...] | None:
        """Returns a primitive field with its element id & extensions still attached"""
        prop, _ = self.resolve_field(name)
        if not prop.is_primitive:
            raise errors.BuildError(f"{type(self).__name__}.{prop.json_name} is not a primitive field")
        return self._values.get(prop.name, () if prop.is_list else None)

    def items(self) -> Iterator[tuple[schema.FhirProperty, Any]]:
        """Yields (property, stored value) for each set field, in canonical declaration order"""
        for prop in self.type_definition.properties:
            if prop.name in self._values:
                yield prop, self._values[prop.name]

    ###########################################################################
    #
    # Producing new values
    #
    ###########################################################################

    @classmethod
    def builder(cls) -> "Builder":
        from fhir_sdk.builder import Builder

        return Builder(cls)

    def to_builder(self) -> "Builder":
        from fhir_sdk.builder import Builder

        return Builder(type(self), self._values)

    def replace(self, **changes: Any) -> "Element":
        """Returns a copy with some fields changed (a value of None unsets the field)"""
        builder = self.to_builder()
        for name, value in changes.items():
            builder.set(name, value)
        return builder.build()

    ###########################################################################
    #
    # Plumbing
    #
    ###########################################################################

    def __setattr__(self, key, value):
        raise AttributeError(f"{type(self).__name__} is immutable, use replace() or to_builder()")

    def __delattr__(self, key):
        raise AttributeError(f"{type(self).__name__} is immutable, use replace() or to_builder()")

    def __eq__(self, other) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._values == other._values

    def __hash__(self) -> int:
        return hash((type(self), frozenset(self._values.items())))

    def __repr__(self) -> str:
        fields = ", ".join(f"{prop.name}={_unwrap(prop, value)!r}" for prop, value in self.items())
        return f"{type(self).__name__}({fields})"


class Resource(Element):
    """
    Base class for every FHIR resource.

    Every concrete resource class shares this same capability set (id, meta, extensions),
    rather than a deep base-resource/domain-resource hierarchy.
    """

    __slots__ = ()

    resource_type: ClassVar[str]

    @property
    def version_id(self) -> str | None:
        meta = self.meta
        return meta.version_id if meta else None

    @property
    def last_updated(self):
        meta = self.meta
        return meta.last_updated if meta else None

    @property
    def is_domain_resource(self) -> bool:
        return "text" in self._by_name

    def relative_reference(self) -> str:
        """Returns a reference string like Patient/123"""
        if not self.id:
            raise errors.BuildError(f"{self.resource_type} has no id to reference")
        return f"{self.resource_type}/{self.id}"

    def identifier_with_system(self, system: str) -> str | None:
        """Returns the value of the first identifier with the given system"""
        for identifier in self._identifiers():
            if identifier.system == system:
                return identifier.value
        return None

    def identifier_with_type(self, system: str, code: str) -> str | None:
        """Returns the value of the first identifier whose type has the given coding"""
        for identifier in self._identifiers():
            if identifier.type and code in identifier.type.codes_with_system(system):
                return identifier.value
        return None

    def _identifiers(self) -> tuple:
        if "identifier" not in self._by_name:
            return ()
        identifiers = self.identifier
        if not isinstance(identifiers, tuple):  # a few resources only allow one
            identifiers = (identifiers,) if identifiers else ()
        return identifiers
