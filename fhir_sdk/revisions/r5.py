"""FHIR R5 (5.0.0)"""

from fhir_sdk import errors
from fhir_sdk.model.primitives import PrimitiveKind
from fhir_sdk.model.schema import RESOURCE_TYPE, backbone, choice, complex_type, field
from fhir_sdk.revisions import FhirVersion, Revision, shared

PRIMITIVE_KINDS = shared.BASE_PRIMITIVE_KINDS | {
    PrimitiveKind.CANONICAL,
    PrimitiveKind.URL,
    PrimitiveKind.INTEGER64,
}

OBSERVATION_VALUE_TYPES = (*shared.OBSERVATION_VALUE_TYPES, "Attachment", "Reference")


def _definitions():
    return shared.patch(
        shared.definitions(),
        complex_type(
            "CodeableReference",
            field("concept", "CodeableConcept"),
            field("reference", "Reference"),
        ),
        shared.ATTACHMENT.replacing(field("size", "integer64")).with_fields(field("pages", "positiveInt")),
        shared.OBSERVATION.replacing(choice("value", *OBSERVATION_VALUE_TYPES)).with_fields(
            choice("instantiates", "canonical", "Reference"), after="identifier"
        ),
        shared.OBSERVATION_COMPONENT.replacing(choice("value", *OBSERVATION_VALUE_TYPES)),
        # R5 reworked encounters: class became a list of concepts, period became actualPeriod,
        # and the two reason fields were merged into one backbone element
        shared.ENCOUNTER.without("class", "period", "reasonCode", "reasonReference")
        .with_fields(field("class", "CodeableConcept", many=True), after="status")
        .with_fields(
            field("actualPeriod", "Period"),
            field("reason", "EncounterReason", many=True),
            after="participant",
        ),
        backbone(
            "EncounterReason",
            field("use", "CodeableConcept", many=True),
            field("value", "CodeableReference", many=True),
        ),
        shared.CONDITION.without("recorder", "asserter").replacing(
            field("clinicalStatus", "CodeableConcept", required=True)
        ),
        shared.BUNDLE.with_fields(field("issues", RESOURCE_TYPE)),
    )


REVISION = Revision(FhirVersion.R5, _definitions(), PRIMITIVE_KINDS)


def __getattr__(name: str):
    # Lets callers write `from fhir_sdk.revisions.r5 import Patient`
    try:
        return REVISION.get_class(name)
    except errors.UnsupportedVersionError:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}") from None
