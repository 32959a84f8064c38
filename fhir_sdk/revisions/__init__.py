"""
Supported FHIR revisions.

Each revision turns its list of type definitions into a closed set of Python classes.
Pick one explicitly and pass it around (there is no global "current version"):

    from fhir_sdk.revisions import r4b
    patient = r4b.Patient(id="abc")
"""

import enum
import importlib

from fhir_sdk import errors
from fhir_sdk.model import schema
from fhir_sdk.model.base import Element, Resource
from fhir_sdk.model.mixins import MIXINS
from fhir_sdk.model.primitives import PrimitiveKind

# Data types that the open type list (like Extension.value[x]) leaves out
_NOT_OPEN_TYPES = {"Extension", "Narrative"}


class FhirVersion(enum.Enum):
    STU3 = "3.0.2"
    R4B = "4.3.0"
    R5 = "5.0.0"

    @property
    def module_name(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: "FhirVersion | str") -> "FhirVersion":
        """Accepts a version enum, a name like "r4b", or a version number like "4.3.0" or "4.3" """
        if isinstance(value, cls):
            return value
        for version in cls:
            if value.upper() == version.name or version.value.startswith(value):
                return version
        raise errors.UnsupportedVersionError(f"Unsupported FHIR version '{value}'")


class Revision:
    """One FHIR release and its closed set of element & resource classes"""

    def __init__(
        self,
        version: FhirVersion,
        definitions: list[schema.TypeDefinition],
        primitive_kinds: set[PrimitiveKind],
    ):
        self.version = version
        self.primitive_kinds = frozenset(primitive_kinds)

        self._definitions = {}
        for definition in definitions:
            if definition.name in self._definitions:
                raise ValueError(f"Duplicate definition for {definition.name} in FHIR {version.name}")
            self._definitions[definition.name] = definition

        self.open_types = tuple(
            [kind.value for kind in PrimitiveKind if kind in self.primitive_kinds]
            + [
                definition.name
                for definition in definitions
                if definition.kind == schema.TypeKind.COMPLEX and definition.name not in _NOT_OPEN_TYPES
            ]
        )
        self._check_types()

        self._classes = {}
        for definition in definitions:
            self._classes[definition.name] = self._make_class(definition)

    def __repr__(self) -> str:
        return f"Revision({self.version.name})"

    def __getattr__(self, name: str):
        classes = self.__dict__.get("_classes", {})
        if name in classes:
            return classes[name]
        raise AttributeError(f"FHIR {self.version.name} has no type '{name}'")

    def _check_types(self) -> None:
        """Makes sure every field points at a type this revision actually has"""
        known = {kind.value for kind in self.primitive_kinds} | set(self._definitions) | {schema.RESOURCE_TYPE}
        for definition in self._definitions.values():
            for prop in definition.properties:
                for type_code in prop.types:
                    if type_code != schema.OPEN_TYPE and type_code not in known:
                        raise ValueError(
                            f"{definition.name}.{prop.json_name} refers to unknown type '{type_code}' "
                            f"in FHIR {self.version.name}"
                        )

    def _make_class(self, definition: schema.TypeDefinition) -> type[Element]:
        is_resource = definition.kind == schema.TypeKind.RESOURCE
        base = Resource if is_resource else Element
        mixin = MIXINS.get(definition.name)
        bases = (mixin, base) if mixin else (base,)

        namespace = {
            "__slots__": (),
            "__module__": f"fhir_sdk.revisions.{self.version.module_name}",
            "__qualname__": definition.name,
            "__doc__": f"FHIR {self.version.name} {definition.name} ({definition.kind.value})",
            "type_definition": definition,
            "revision": self,
        }
        if is_resource:
            namespace["resource_type"] = definition.name
        return type(definition.name, bases, namespace)

    def choice_types(self, prop: schema.FhirProperty) -> tuple[str, ...]:
        """The type codes a choice field accepts in this revision"""
        if prop.types == (schema.OPEN_TYPE,):
            return self.open_types
        return prop.types

    def get_class(self, name: str) -> type[Element]:
        """Returns the class for a type name, raising UnsupportedVersionError if there is none"""
        try:
            return self._classes[name]
        except KeyError:
            raise errors.UnsupportedVersionError(f"FHIR {self.version.name} has no type '{name}'") from None

    def find_resource_class(self, resource_type: str) -> type[Resource] | None:
        cls = self._classes.get(resource_type)
        if cls is None or not issubclass(cls, Resource):
            return None
        return cls

    @property
    def resource_types(self) -> list[str]:
        return sorted(name for name, cls in self._classes.items() if issubclass(cls, Resource))

    @property
    def type_names(self) -> list[str]:
        return sorted(self._classes)


def get_revision(version: FhirVersion | str) -> Revision:
    """Returns the revision for a version (like FhirVersion.R4B or "4.3.0")"""
    version = FhirVersion.parse(version)
    module = importlib.import_module(f"fhir_sdk.revisions.{version.module_name}")
    return module.REVISION
