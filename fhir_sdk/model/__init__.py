"""Revision-independent machinery for FHIR elements and resources"""

from .base import Choice, Element, Resource
from .primitives import (
    Base64Binary,
    FhirDate,
    FhirDateTime,
    FhirDecimal,
    FhirInstant,
    FhirTime,
    Primitive,
    PrimitiveKind,
)
from .references import (
    AbsoluteReference,
    LocalReference,
    ParsedReference,
    RelativeReference,
    parse_reference,
    reference_to,
)
from .schema import FhirProperty, TypeDefinition, TypeKind
