"""Convenience behavior attached to specific FHIR types in every revision"""

from typing import Any

from fhir_sdk.model import references


class ExtensionMixin:
    """An extension carries exactly one of a value or nested extensions"""

    __slots__ = ()

    @classmethod
    def first_missing_field(cls, values: dict[str, Any]) -> str | None:
        missing = super().first_missing_field(values)
        if not missing and "value" not in values and "extension" not in values:
            missing = "value[x]"
        return missing

    @classmethod
    def field_conflict(cls, values: dict[str, Any]) -> str | None:
        if "value" in values and "extension" in values:
            return "an extension cannot have both a value and nested extensions"
        return super().field_conflict(values)


class CodeableConceptMixin:
    __slots__ = ()

    def codes_with_system(self, system: str) -> list[str]:
        """All codes in this concept with the given system"""
        return [coding.code for coding in self.coding if coding.system == system and coding.code]

    def code_with_system(self, system: str) -> str | None:
        """The first code in this concept with the given system"""
        codes = self.codes_with_system(system)
        return codes[0] if codes else None


class ReferenceMixin:
    __slots__ = ()

    def parse(self) -> references.ParsedReference | None:
        """Parses the literal reference string, if there is one"""
        return references.parse_reference(self.reference) if self.reference else None


class BundleMixin:
    __slots__ = ()

    def link_url(self, relation: str) -> str | None:
        """Returns the URL of the first link with the given relation (like "next")"""
        for link in self.link:
            if link.relation == relation:
                return link.url
        return None

    def resources(self) -> list:
        """All entry resources, in entry order"""
        return [entry.resource for entry in self.entry if entry.resource]


class OperationOutcomeMixin:
    __slots__ = ()

    def summary(self) -> str:
        """A human-readable line describing the issues, for error messages"""
        messages = []
        for issue in self.issue:
            text = issue.details and issue.details.text
            messages.append(text or issue.diagnostics or issue.code)
        return "; ".join(messages)

    def has_errors(self) -> bool:
        return any(issue.severity in {"error", "fatal"} for issue in self.issue)


MIXINS = {
    "Bundle": BundleMixin,
    "CodeableConcept": CodeableConceptMixin,
    "Extension": ExtensionMixin,
    "OperationOutcome": OperationOutcomeMixin,
    "Reference": ReferenceMixin,
}
