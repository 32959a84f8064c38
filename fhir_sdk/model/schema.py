"""Describe FHIR type shapes as data, so each revision can supply its own definitions"""

import dataclasses
import enum
import keyword
import re
from typing import NamedTuple

from fhir_sdk.model.primitives import PrimitiveKind

# Placeholder type list for open choice fields (like Extension.value[x]),
# resolved to every data type of a revision when that revision is assembled.
OPEN_TYPE = "*"
RESOURCE_TYPE = "Resource"


class FhirProperty(NamedTuple):
    """One declared field of a FHIR type"""

    name: str  # python attribute name, like "birth_date"
    json_name: str  # wire name, like "birthDate" (for choices, the prefix, like "value")
    types: tuple[str, ...]  # FHIR type codes, more than one (or OPEN_TYPE) for choices
    is_list: bool
    required: bool
    choice: bool

    @property
    def type_code(self) -> str:
        """The single type of a non-choice field"""
        return self.types[0]

    @property
    def is_primitive(self) -> bool:
        return not self.choice and is_primitive_code(self.type_code)

    @property
    def is_resource(self) -> bool:
        return not self.choice and self.type_code == RESOURCE_TYPE

    @property
    def label(self) -> str:
        return f"{self.json_name}[x]" if self.choice else self.json_name


class TypeKind(enum.Enum):
    RESOURCE = "resource"
    COMPLEX = "complex-type"
    BACKBONE = "backbone"


@dataclasses.dataclass(frozen=True)
class TypeDefinition:
    """The full declared shape of one resource, data type, or backbone element"""

    name: str
    kind: TypeKind
    properties: tuple[FhirProperty, ...]

    def get(self, json_name: str) -> FhirProperty | None:
        for prop in self.properties:
            if prop.json_name == json_name:
                return prop
        return None

    def without(self, *json_names: str) -> "TypeDefinition":
        """A copy of this definition with some fields dropped"""
        for json_name in json_names:
            if not self.get(json_name):
                raise ValueError(f"{self.name} has no field '{json_name}'")
        kept = tuple(p for p in self.properties if p.json_name not in json_names)
        return dataclasses.replace(self, properties=kept)

    def with_fields(self, *props: FhirProperty, after: str | None = None) -> "TypeDefinition":
        """A copy of this definition with fields inserted after another field (or at the end)"""
        properties = list(self.properties)
        index = len(properties)
        if after:
            prop = self.get(after)
            if not prop:
                raise ValueError(f"{self.name} has no field '{after}'")
            index = properties.index(prop) + 1
        properties[index:index] = props
        return dataclasses.replace(self, properties=tuple(properties))

    def replacing(self, prop: FhirProperty) -> "TypeDefinition":
        """A copy of this definition with one same-named field swapped out (keeping its position)"""
        old = self.get(prop.json_name)
        if not old:
            raise ValueError(f"{self.name} has no field '{prop.json_name}'")
        properties = tuple(prop if p is old else p for p in self.properties)
        return dataclasses.replace(self, properties=properties)


###############################################################################
#
# Definition helpers
#
###############################################################################


def is_primitive_code(type_code: str) -> bool:
    # FHIR names primitive types in lowercase and everything else in uppercase
    return type_code in PrimitiveKind.codes()


def python_name(json_name: str) -> str:
    """Converts a wire name like birthDate to a python attribute name like birth_date"""
    name = re.sub(r"(?<!^)(?=[A-Z])", "_", json_name).lower()
    if keyword.iskeyword(name):
        name += "_"
    return name


def field(json_name: str, type_code: str, *, many: bool = False, required: bool = False) -> FhirProperty:
    return FhirProperty(python_name(json_name), json_name, (type_code,), many, required, False)


def choice(json_name: str, *type_codes: str, required: bool = False) -> FhirProperty:
    return FhirProperty(python_name(json_name), json_name, tuple(type_codes), False, required, True)


ELEMENT_FIELDS = (
    field("id", "string"),
    field("extension", "Extension", many=True),
)
BACKBONE_FIELDS = (
    *ELEMENT_FIELDS,
    field("modifierExtension", "Extension", many=True),
)
RESOURCE_FIELDS = (
    field("id", "id"),
    field("meta", "Meta"),
    field("implicitRules", "uri"),
    field("language", "code"),
)
DOMAIN_RESOURCE_FIELDS = (
    *RESOURCE_FIELDS,
    field("text", "Narrative"),
    field("contained", RESOURCE_TYPE, many=True),
    field("extension", "Extension", many=True),
    field("modifierExtension", "Extension", many=True),
)


def complex_type(name: str, *props: FhirProperty) -> TypeDefinition:
    return TypeDefinition(name, TypeKind.COMPLEX, (*ELEMENT_FIELDS, *props))


def backbone(name: str, *props: FhirProperty) -> TypeDefinition:
    return TypeDefinition(name, TypeKind.BACKBONE, (*BACKBONE_FIELDS, *props))


def resource(name: str, *props: FhirProperty, domain: bool = True) -> TypeDefinition:
    base = DOMAIN_RESOURCE_FIELDS if domain else RESOURCE_FIELDS
    return TypeDefinition(name, TypeKind.RESOURCE, (*base, *props))
