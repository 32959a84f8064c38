"""
Type definitions shared across revisions.

These are written in their R4B shape. The other revisions start from here and patch the
differences (see stu3.py and r5.py).
"""

import dataclasses

from fhir_sdk.model.primitives import PrimitiveKind
from fhir_sdk.model.schema import (
    OPEN_TYPE,
    RESOURCE_TYPE,
    TypeDefinition,
    backbone,
    choice,
    complex_type,
    field,
    resource,
)

# Primitive types every supported revision has
BASE_PRIMITIVE_KINDS = set(PrimitiveKind) - {
    PrimitiveKind.CANONICAL,
    PrimitiveKind.URL,
    PrimitiveKind.INTEGER64,
}

###############################################################################
#
# Data types
#
###############################################################################

EXTENSION = complex_type(
    "Extension",
    field("url", "uri", required=True),
    choice("value", OPEN_TYPE),
)
NARRATIVE = complex_type(
    "Narrative",
    field("status", "code", required=True),
    field("div", "xhtml", required=True),
)
META = complex_type(
    "Meta",
    field("versionId", "id"),
    field("lastUpdated", "instant"),
    field("source", "uri"),
    field("profile", "canonical", many=True),
    field("security", "Coding", many=True),
    field("tag", "Coding", many=True),
)
CODING = complex_type(
    "Coding",
    field("system", "uri"),
    field("version", "string"),
    field("code", "code"),
    field("display", "string"),
    field("userSelected", "boolean"),
)
CODEABLE_CONCEPT = complex_type(
    "CodeableConcept",
    field("coding", "Coding", many=True),
    field("text", "string"),
)
IDENTIFIER = complex_type(
    "Identifier",
    field("use", "code"),
    field("type", "CodeableConcept"),
    field("system", "uri"),
    field("value", "string"),
    field("period", "Period"),
    field("assigner", "Reference"),
)
REFERENCE = complex_type(
    "Reference",
    field("reference", "string"),
    field("type", "uri"),
    field("identifier", "Identifier"),
    field("display", "string"),
)
PERIOD = complex_type(
    "Period",
    field("start", "dateTime"),
    field("end", "dateTime"),
)
QUANTITY = complex_type(
    "Quantity",
    field("value", "decimal"),
    field("comparator", "code"),
    field("unit", "string"),
    field("system", "uri"),
    field("code", "code"),
)
RANGE = complex_type(
    "Range",
    field("low", "Quantity"),
    field("high", "Quantity"),
)
RATIO = complex_type(
    "Ratio",
    field("numerator", "Quantity"),
    field("denominator", "Quantity"),
)
HUMAN_NAME = complex_type(
    "HumanName",
    field("use", "code"),
    field("text", "string"),
    field("family", "string"),
    field("given", "string", many=True),
    field("prefix", "string", many=True),
    field("suffix", "string", many=True),
    field("period", "Period"),
)
ADDRESS = complex_type(
    "Address",
    field("use", "code"),
    field("type", "code"),
    field("text", "string"),
    field("line", "string", many=True),
    field("city", "string"),
    field("district", "string"),
    field("state", "string"),
    field("postalCode", "string"),
    field("country", "string"),
    field("period", "Period"),
)
CONTACT_POINT = complex_type(
    "ContactPoint",
    field("system", "code"),
    field("value", "string"),
    field("use", "code"),
    field("rank", "positiveInt"),
    field("period", "Period"),
)
ATTACHMENT = complex_type(
    "Attachment",
    field("contentType", "code"),
    field("language", "code"),
    field("data", "base64Binary"),
    field("url", "url"),
    field("size", "unsignedInt"),
    field("hash", "base64Binary"),
    field("title", "string"),
    field("creation", "dateTime"),
)
ANNOTATION = complex_type(
    "Annotation",
    choice("author", "Reference", "string"),
    field("time", "dateTime"),
    field("text", "markdown", required=True),
)

DATA_TYPES = [
    EXTENSION,
    NARRATIVE,
    META,
    CODING,
    CODEABLE_CONCEPT,
    IDENTIFIER,
    REFERENCE,
    PERIOD,
    QUANTITY,
    RANGE,
    RATIO,
    HUMAN_NAME,
    ADDRESS,
    CONTACT_POINT,
    ATTACHMENT,
    ANNOTATION,
]

###############################################################################
#
# Resources (and their backbone elements)
#
###############################################################################

PATIENT = resource(
    "Patient",
    field("identifier", "Identifier", many=True),
    field("active", "boolean"),
    field("name", "HumanName", many=True),
    field("telecom", "ContactPoint", many=True),
    field("gender", "code"),
    field("birthDate", "date"),
    choice("deceased", "boolean", "dateTime"),
    field("address", "Address", many=True),
    field("maritalStatus", "CodeableConcept"),
    choice("multipleBirth", "boolean", "integer"),
    field("photo", "Attachment", many=True),
    field("contact", "PatientContact", many=True),
    field("communication", "PatientCommunication", many=True),
    field("generalPractitioner", "Reference", many=True),
    field("managingOrganization", "Reference"),
    field("link", "PatientLink", many=True),
)
PATIENT_CONTACT = backbone(
    "PatientContact",
    field("relationship", "CodeableConcept", many=True),
    field("name", "HumanName"),
    field("telecom", "ContactPoint", many=True),
    field("address", "Address"),
    field("gender", "code"),
    field("organization", "Reference"),
    field("period", "Period"),
)
PATIENT_COMMUNICATION = backbone(
    "PatientCommunication",
    field("language", "CodeableConcept", required=True),
    field("preferred", "boolean"),
)
PATIENT_LINK = backbone(
    "PatientLink",
    field("other", "Reference", required=True),
    field("type", "code", required=True),
)

OBSERVATION_VALUE_TYPES = (
    "Quantity",
    "CodeableConcept",
    "string",
    "boolean",
    "integer",
    "Range",
    "Ratio",
    "time",
    "dateTime",
    "Period",
)
OBSERVATION = resource(
    "Observation",
    field("identifier", "Identifier", many=True),
    field("basedOn", "Reference", many=True),
    field("partOf", "Reference", many=True),
    field("status", "code", required=True),
    field("category", "CodeableConcept", many=True),
    field("code", "CodeableConcept", required=True),
    field("subject", "Reference"),
    field("focus", "Reference", many=True),
    field("encounter", "Reference"),
    choice("effective", "dateTime", "Period", "instant"),
    field("issued", "instant"),
    field("performer", "Reference", many=True),
    choice("value", *OBSERVATION_VALUE_TYPES),
    field("dataAbsentReason", "CodeableConcept"),
    field("interpretation", "CodeableConcept", many=True),
    field("note", "Annotation", many=True),
    field("bodySite", "CodeableConcept"),
    field("method", "CodeableConcept"),
    field("specimen", "Reference"),
    field("device", "Reference"),
    field("referenceRange", "ObservationReferenceRange", many=True),
    field("hasMember", "Reference", many=True),
    field("derivedFrom", "Reference", many=True),
    field("component", "ObservationComponent", many=True),
)
OBSERVATION_REFERENCE_RANGE = backbone(
    "ObservationReferenceRange",
    field("low", "Quantity"),
    field("high", "Quantity"),
    field("type", "CodeableConcept"),
    field("appliesTo", "CodeableConcept", many=True),
    field("age", "Range"),
    field("text", "string"),
)
OBSERVATION_COMPONENT = backbone(
    "ObservationComponent",
    field("code", "CodeableConcept", required=True),
    choice("value", *OBSERVATION_VALUE_TYPES),
    field("dataAbsentReason", "CodeableConcept"),
    field("interpretation", "CodeableConcept", many=True),
    field("referenceRange", "ObservationReferenceRange", many=True),
)

ENCOUNTER = resource(
    "Encounter",
    field("identifier", "Identifier", many=True),
    field("status", "code", required=True),
    field("class", "Coding", required=True),
    field("type", "CodeableConcept", many=True),
    field("serviceType", "CodeableConcept"),
    field("priority", "CodeableConcept"),
    field("subject", "Reference"),
    field("participant", "EncounterParticipant", many=True),
    field("period", "Period"),
    field("reasonCode", "CodeableConcept", many=True),
    field("reasonReference", "Reference", many=True),
    field("location", "EncounterLocation", many=True),
    field("serviceProvider", "Reference"),
    field("partOf", "Reference"),
)
ENCOUNTER_PARTICIPANT = backbone(
    "EncounterParticipant",
    field("type", "CodeableConcept", many=True),
    field("period", "Period"),
    field("individual", "Reference"),
)
ENCOUNTER_LOCATION = backbone(
    "EncounterLocation",
    field("location", "Reference", required=True),
    field("status", "code"),
    field("period", "Period"),
)

CONDITION_ONSET_TYPES = ("dateTime", "Period", "Range", "string")
CONDITION = resource(
    "Condition",
    field("identifier", "Identifier", many=True),
    field("clinicalStatus", "CodeableConcept"),
    field("verificationStatus", "CodeableConcept"),
    field("category", "CodeableConcept", many=True),
    field("severity", "CodeableConcept"),
    field("code", "CodeableConcept"),
    field("bodySite", "CodeableConcept", many=True),
    field("subject", "Reference", required=True),
    field("encounter", "Reference"),
    choice("onset", *CONDITION_ONSET_TYPES),
    choice("abatement", *CONDITION_ONSET_TYPES),
    field("recordedDate", "dateTime"),
    field("recorder", "Reference"),
    field("asserter", "Reference"),
    field("note", "Annotation", many=True),
)

ORGANIZATION = resource(
    "Organization",
    field("identifier", "Identifier", many=True),
    field("active", "boolean"),
    field("type", "CodeableConcept", many=True),
    field("name", "string"),
    field("alias", "string", many=True),
    field("telecom", "ContactPoint", many=True),
    field("address", "Address", many=True),
    field("partOf", "Reference"),
)

BASIC = resource(
    "Basic",
    field("identifier", "Identifier", many=True),
    field("code", "CodeableConcept", required=True),
    field("subject", "Reference"),
    field("created", "date"),
    field("author", "Reference"),
)

BINARY = resource(
    "Binary",
    field("contentType", "code", required=True),
    field("securityContext", "Reference"),
    field("data", "base64Binary"),
    domain=False,
)

BUNDLE = resource(
    "Bundle",
    field("identifier", "Identifier"),
    field("type", "code", required=True),
    field("timestamp", "instant"),
    field("total", "unsignedInt"),
    field("link", "BundleLink", many=True),
    field("entry", "BundleEntry", many=True),
    domain=False,
)
BUNDLE_LINK = backbone(
    "BundleLink",
    field("relation", "string", required=True),
    field("url", "uri", required=True),
)
BUNDLE_ENTRY = backbone(
    "BundleEntry",
    field("link", "BundleLink", many=True),
    field("fullUrl", "uri"),
    field("resource", RESOURCE_TYPE),
    field("search", "BundleEntrySearch"),
    field("request", "BundleEntryRequest"),
    field("response", "BundleEntryResponse"),
)
BUNDLE_ENTRY_SEARCH = backbone(
    "BundleEntrySearch",
    field("mode", "code"),
    field("score", "decimal"),
)
BUNDLE_ENTRY_REQUEST = backbone(
    "BundleEntryRequest",
    field("method", "code", required=True),
    field("url", "uri", required=True),
    field("ifNoneMatch", "string"),
    field("ifModifiedSince", "instant"),
    field("ifMatch", "string"),
    field("ifNoneExist", "string"),
)
BUNDLE_ENTRY_RESPONSE = backbone(
    "BundleEntryResponse",
    field("status", "string", required=True),
    field("location", "uri"),
    field("etag", "string"),
    field("lastModified", "instant"),
    field("outcome", RESOURCE_TYPE),
)

OPERATION_OUTCOME = resource(
    "OperationOutcome",
    field("issue", "OperationOutcomeIssue", many=True, required=True),
)
OPERATION_OUTCOME_ISSUE = backbone(
    "OperationOutcomeIssue",
    field("severity", "code", required=True),
    field("code", "code", required=True),
    field("details", "CodeableConcept"),
    field("diagnostics", "string"),
    field("location", "string", many=True),
    field("expression", "string", many=True),
)

PARAMETERS = resource(
    "Parameters",
    field("parameter", "ParametersParameter", many=True),
    domain=False,
)
PARAMETERS_PARAMETER = backbone(
    "ParametersParameter",
    field("name", "string", required=True),
    choice("value", OPEN_TYPE),
    field("resource", RESOURCE_TYPE),
    field("part", "ParametersParameter", many=True),
)

CAPABILITY_STATEMENT = resource(
    "CapabilityStatement",
    field("url", "uri"),
    field("version", "string"),
    field("name", "string"),
    field("status", "code", required=True),
    field("date", "dateTime", required=True),
    field("publisher", "string"),
    field("kind", "code", required=True),
    field("software", "CapabilityStatementSoftware"),
    field("fhirVersion", "code", required=True),
    field("format", "code", many=True, required=True),
    field("rest", "CapabilityStatementRest", many=True),
)
CAPABILITY_STATEMENT_SOFTWARE = backbone(
    "CapabilityStatementSoftware",
    field("name", "string", required=True),
    field("version", "string"),
    field("releaseDate", "dateTime"),
)
CAPABILITY_STATEMENT_REST = backbone(
    "CapabilityStatementRest",
    field("mode", "code", required=True),
    field("documentation", "markdown"),
    field("resource", "CapabilityStatementRestResource", many=True),
)
CAPABILITY_STATEMENT_REST_RESOURCE = backbone(
    "CapabilityStatementRestResource",
    field("type", "code", required=True),
    field("profile", "canonical"),
    field("interaction", "CapabilityStatementRestResourceInteraction", many=True),
    field("searchParam", "CapabilityStatementRestResourceSearchParam", many=True),
)
CAPABILITY_STATEMENT_REST_RESOURCE_INTERACTION = backbone(
    "CapabilityStatementRestResourceInteraction",
    field("code", "code", required=True),
    field("documentation", "markdown"),
)
CAPABILITY_STATEMENT_REST_RESOURCE_SEARCH_PARAM = backbone(
    "CapabilityStatementRestResourceSearchParam",
    field("name", "string", required=True),
    field("definition", "canonical"),
    field("type", "code", required=True),
    field("documentation", "markdown"),
)

RESOURCES = [
    BASIC,
    BINARY,
    BUNDLE,
    BUNDLE_LINK,
    BUNDLE_ENTRY,
    BUNDLE_ENTRY_SEARCH,
    BUNDLE_ENTRY_REQUEST,
    BUNDLE_ENTRY_RESPONSE,
    CAPABILITY_STATEMENT,
    CAPABILITY_STATEMENT_SOFTWARE,
    CAPABILITY_STATEMENT_REST,
    CAPABILITY_STATEMENT_REST_RESOURCE,
    CAPABILITY_STATEMENT_REST_RESOURCE_INTERACTION,
    CAPABILITY_STATEMENT_REST_RESOURCE_SEARCH_PARAM,
    CONDITION,
    ENCOUNTER,
    ENCOUNTER_PARTICIPANT,
    ENCOUNTER_LOCATION,
    OBSERVATION,
    OBSERVATION_REFERENCE_RANGE,
    OBSERVATION_COMPONENT,
    OPERATION_OUTCOME,
    OPERATION_OUTCOME_ISSUE,
    ORGANIZATION,
    PARAMETERS,
    PARAMETERS_PARAMETER,
    PATIENT,
    PATIENT_CONTACT,
    PATIENT_COMMUNICATION,
    PATIENT_LINK,
]


def definitions() -> list[TypeDefinition]:
    return [*DATA_TYPES, *RESOURCES]


def patch(defs: list[TypeDefinition], *changed: TypeDefinition) -> list[TypeDefinition]:
    """Swaps in same-named definitions (or appends new ones)"""
    by_name = {definition.name: definition for definition in changed}
    patched = [by_name.pop(definition.name, definition) for definition in defs]
    return patched + list(by_name.values())


def retype(defs: list[TypeDefinition], mapping: dict[str, str]) -> list[TypeDefinition]:
    """Renames type codes everywhere (like canonical -> uri for revisions without canonical)"""
    retyped = []
    for definition in defs:
        properties = tuple(
            prop._replace(types=tuple(mapping.get(code, code) for code in prop.types)) for prop in definition.properties
        )
        retyped.append(dataclasses.replace(definition, properties=properties))
    return retyped
