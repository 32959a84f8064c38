"""FHIR STU3 (3.0.2)"""

from fhir_sdk import errors
from fhir_sdk.model.schema import backbone, choice, field
from fhir_sdk.revisions import FhirVersion, Revision, shared

# STU3 predates the canonical and url types, using plain uri for both
PRIMITIVE_KINDS = shared.BASE_PRIMITIVE_KINDS

OBSERVATION_VALUE_TYPES = (*shared.OBSERVATION_VALUE_TYPES, "Attachment")


def _definitions():
    defs = shared.patch(
        shared.definitions(),
        shared.META.without("source"),
        shared.REFERENCE.without("type"),
        shared.BINARY.without("data").with_fields(field("content", "base64Binary", required=True)),
        shared.OBSERVATION.without("partOf", "focus", "note", "hasMember", "derivedFrom")
        .replacing(field("interpretation", "CodeableConcept"))
        .replacing(choice("value", *OBSERVATION_VALUE_TYPES))
        .replacing(choice("effective", "dateTime", "Period"))
        .with_fields(field("comment", "string"), after="interpretation"),
        shared.OBSERVATION_COMPONENT.replacing(choice("value", *OBSERVATION_VALUE_TYPES)).replacing(
            field("interpretation", "CodeableConcept")
        ),
        shared.ENCOUNTER.without("reasonCode", "reasonReference").with_fields(
            field("reason", "CodeableConcept", many=True), after="period"
        ),
        shared.CONDITION.without("recordedDate")
        .replacing(field("clinicalStatus", "code"))
        .replacing(field("verificationStatus", "code"))
        .with_fields(field("assertedDate", "dateTime"), after="abatement"),
        shared.OPERATION_OUTCOME_ISSUE.without("expression"),
        shared.CAPABILITY_STATEMENT_REST_RESOURCE.replacing(field("profile", "Reference")),
        shared.PATIENT.with_fields(field("animal", "PatientAnimal"), after="multipleBirth"),
        backbone(
            "PatientAnimal",
            field("species", "CodeableConcept", required=True),
            field("breed", "CodeableConcept"),
            field("genderStatus", "CodeableConcept"),
        ),
    )
    return shared.retype(defs, {"canonical": "uri", "url": "uri"})


REVISION = Revision(FhirVersion.STU3, _definitions(), PRIMITIVE_KINDS)


def __getattr__(name: str):
    # Lets callers write `from fhir_sdk.revisions.stu3 import Patient`
    try:
        return REVISION.get_class(name)
    except errors.UnsupportedVersionError:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}") from None
