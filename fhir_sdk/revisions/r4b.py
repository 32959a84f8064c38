"""FHIR R4B (4.3.0)"""

from fhir_sdk import errors
from fhir_sdk.model.primitives import PrimitiveKind
from fhir_sdk.revisions import FhirVersion, Revision, shared

PRIMITIVE_KINDS = shared.BASE_PRIMITIVE_KINDS | {PrimitiveKind.CANONICAL, PrimitiveKind.URL}

REVISION = Revision(FhirVersion.R4B, shared.definitions(), PRIMITIVE_KINDS)


def __getattr__(name: str):
    # Lets callers write `from fhir_sdk.revisions.r4b import Patient`
    try:
        return REVISION.get_class(name)
    except errors.UnsupportedVersionError:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}") from None
