"""Builders for the two patch formats FHIR servers accept"""

from typing import Any

from fhir_sdk import codec
from fhir_sdk.model import Element, Resource
from fhir_sdk.revisions import Revision

JSON_PATCH_MIME_TYPE = "application/json-patch+json"


class JsonPatch:
    """
    An RFC 6902 JSON Patch document.

    Values may be plain JSON or model elements (which get encoded to FHIR JSON).
    """

    def __init__(self):
        self._operations: list[dict] = []

    def __len__(self) -> int:
        return len(self._operations)

    def _operation(self, op: str, path: str, **extra: Any) -> "JsonPatch":
        operation = {"op": op, "path": path}
        for key, value in extra.items():
            operation[key] = codec.encode(value) if isinstance(value, Element) else value
        self._operations.append(operation)
        return self

    def add(self, path: str, value: Any) -> "JsonPatch":
        return self._operation("add", path, value=value)

    def remove(self, path: str) -> "JsonPatch":
        return self._operation("remove", path)

    def replace(self, path: str, value: Any) -> "JsonPatch":
        return self._operation("replace", path, value=value)

    def move(self, from_path: str, path: str) -> "JsonPatch":
        return self._operation("move", path, **{"from": from_path})

    def copy(self, from_path: str, path: str) -> "JsonPatch":
        return self._operation("copy", path, **{"from": from_path})

    def test(self, path: str, value: Any) -> "JsonPatch":
        return self._operation("test", path, value=value)

    def to_json(self) -> list[dict]:
        return list(self._operations)


class FhirPathPatch:
    """
    A FHIRPath Patch, which travels as a Parameters resource.

    See https://hl7.org/fhir/fhirpatch.html for the operation semantics.
    """

    def __init__(self, revision: Revision):
        self.revision = revision
        self._parameter_class = revision.get_class("ParametersParameter")
        self._operations = []

    def __len__(self) -> int:
        return len(self._operations)

    def _part(self, name: str, value: Any):
        return self._parameter_class(name=name, value=value)

    def _operation(self, op_type: str, path: str, *parts) -> "FhirPathPatch":
        operation = self._parameter_class(
            name="operation",
            part=[self._parameter_class(name="type", value_code=op_type), self._part("path", path), *parts],
        )
        self._operations.append(operation)
        return self

    def add(self, path: str, name: str, value: Any) -> "FhirPathPatch":
        return self._operation("add", path, self._part("name", name), self._part("value", value))

    def insert(self, path: str, value: Any, index: int) -> "FhirPathPatch":
        return self._operation("insert", path, self._part("value", value), self._part("index", index))

    def delete(self, path: str) -> "FhirPathPatch":
        return self._operation("delete", path)

    def replace(self, path: str, value: Any) -> "FhirPathPatch":
        return self._operation("replace", path, self._part("value", value))

    def move(self, path: str, source: int, destination: int) -> "FhirPathPatch":
        return self._operation(
            "move", path, self._part("source", source), self._part("destination", destination)
        )

    def build(self) -> Resource:
        return self.revision.get_class("Parameters")(parameter=self._operations)
