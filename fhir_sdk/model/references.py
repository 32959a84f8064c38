"""Parsing and making FHIR references"""

import re
from typing import NamedTuple

from fhir_sdk import errors

_ID = r"[A-Za-z0-9\-.]{1,64}"
RELATIVE_REFERENCE_REGEX = re.compile(rf"(?P<type>[A-Z][A-Za-z]+)/(?P<id>{_ID})(/_history/(?P<vid>{_ID}))?")
ABSOLUTE_REFERENCE_REGEX = re.compile(rf"(?P<base>.+)/{RELATIVE_REFERENCE_REGEX.pattern}")
URL_REGEX = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*:.+")


class LocalReference(NamedTuple):
    """A reference to a contained resource, like #med1"""

    id: str

    def __str__(self) -> str:
        return f"#{self.id}"


class RelativeReference(NamedTuple):
    """A reference relative to the server base, like Patient/123 or Patient/123/_history/2"""

    resource_type: str
    id: str
    version_id: str | None = None

    def __str__(self) -> str:
        text = f"{self.resource_type}/{self.id}"
        if self.version_id:
            text += f"/_history/{self.version_id}"
        return text

    def with_base_url(self, base_url: str) -> "AbsoluteReference":
        return AbsoluteReference(base_url.rstrip("/"), self.resource_type, self.id, self.version_id)


class AbsoluteReference(NamedTuple):
    """
    A full URL reference.

    If the URL looks like a FHIR REST URL, the resource type, id, and version are split out.
    Otherwise, the whole URL is kept as the base and the other parts are None.
    """

    base_url: str
    resource_type: str | None = None
    id: str | None = None
    version_id: str | None = None

    def __str__(self) -> str:
        if not self.resource_type:
            return self.base_url
        relative = RelativeReference(self.resource_type, self.id, self.version_id)
        return f"{self.base_url}/{relative}"


ParsedReference = LocalReference | RelativeReference | AbsoluteReference


def parse_reference(reference: str) -> ParsedReference:
    """
    Splits a reference string into its parts.

    Examples:
    - #1 -> LocalReference("1")
    - Encounter/1/_history/2 -> RelativeReference("Encounter", "1", "2")
    - https://server.test/fhir/Encounter/1 -> AbsoluteReference("https://server.test/fhir", "Encounter", "1")

    Raises ValueError if the reference could not be understood (like a conditional reference).
    """
    if reference.startswith("#"):
        return LocalReference(reference[1:])

    if match := RELATIVE_REFERENCE_REGEX.fullmatch(reference):
        return RelativeReference(match["type"], match["id"], match["vid"])

    if URL_REGEX.fullmatch(reference):
        if match := ABSOLUTE_REFERENCE_REGEX.fullmatch(reference):
            return AbsoluteReference(match["base"], match["type"], match["id"], match["vid"])
        return AbsoluteReference(reference)

    raise ValueError(f'Unrecognized reference: "{reference}"')


def reference_to(resource, display: str | None = None):
    """
    Makes a Reference element (of the resource's own revision) pointing at a resource.

    Raises BuildError if the resource has no id yet.
    """
    reference_class = resource.revision.get_class("Reference")
    if not resource.id:
        raise errors.BuildError(f"Cannot reference a {resource.resource_type} without an id")
    fields = {"reference": resource.relative_reference(), "display": display}
    if reference_class.type_definition.get("type"):  # STU3 references have no type field
        fields["type"] = resource.resource_type
    return reference_class(**fields)
