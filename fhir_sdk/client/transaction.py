"""Accumulates the entries of a batch or transaction Bundle"""

import uuid
from typing import TYPE_CHECKING, Any

from fhir_sdk.client.patch import FhirPathPatch
from fhir_sdk.model import Resource
from fhir_sdk.search import as_query

if TYPE_CHECKING:
    from fhir_sdk.client.client import FhirClient  # pragma: no cover


class BundleBuilder:
    """
    Collects interactions into a batch or transaction Bundle, then sends it in one request.

    In a transaction, created resources get a temporary urn:uuid full URL, which other entries
    can use in their references (the server rewrites them to the real ids):

        transaction = client.transaction_builder()
        patient_url = transaction.create(patient)
        transaction.create(observation.replace(subject=Reference(reference=patient_url)))
        response = await transaction.send()
    """

    def __init__(self, client: "FhirClient", bundle_type: str):
        if bundle_type not in {"batch", "transaction"}:
            raise ValueError(f"Unknown bundle type '{bundle_type}'")
        self.client = client
        self.bundle_type = bundle_type
        self._revision = client.revision
        self._entries = []

    def __len__(self) -> int:
        return len(self._entries)

    def _add(self, method: str, url: str, *, resource: Resource | None = None, full_url: str | None = None, **extra):
        if resource is not None:
            self.client.check_resource(resource)
        request = self._revision.get_class("BundleEntryRequest")(method=method, url=url, **extra)
        entry = self._revision.get_class("BundleEntry")(full_url=full_url, resource=resource, request=request)
        self._entries.append(entry)

    def create(self, resource: Resource, *, if_none_exist: Any = None) -> str:
        """Adds a create, returning the full URL that other entries can reference it by"""
        full_url = f"urn:uuid:{uuid.uuid4()}"
        if_none_exist = str(as_query(if_none_exist)) if if_none_exist is not None else None
        self._add("POST", resource.resource_type, resource=resource, full_url=full_url, if_none_exist=if_none_exist)
        return full_url

    def read(self, resource_type: str, resource_id: str) -> None:
        self._add("GET", f"{resource_type}/{resource_id}")

    def vread(self, resource_type: str, resource_id: str, version_id: str) -> None:
        self._add("GET", f"{resource_type}/{resource_id}/_history/{version_id}")

    def update(self, resource: Resource, *, conditional: bool = False) -> None:
        """Adds an update by id, checking the version id first if conditional is set"""
        resource_id = self.client.require_id(resource)
        if_match = self.client.if_match(resource) if conditional else None
        url = f"{resource.resource_type}/{resource_id}"
        self._add("PUT", url, resource=resource, full_url=self.client.url(url), if_match=if_match)

    def conditional_update(self, resource: Resource, query: Any) -> None:
        self._add("PUT", f"{resource.resource_type}?{as_query(query)}", resource=resource)

    def patch(self, resource_type: str, resource_id: str, patch: FhirPathPatch) -> None:
        """Adds a FHIRPath patch (bundles cannot carry JSON patches directly)"""
        self._add("PATCH", f"{resource_type}/{resource_id}", resource=patch.build())

    def delete(self, resource_type: str, resource_id: str) -> None:
        self._add("DELETE", f"{resource_type}/{resource_id}")

    def conditional_delete(self, resource_type: str, query: Any) -> None:
        self._add("DELETE", f"{resource_type}?{as_query(query)}")

    def search(self, resource_type: str, query: Any = None) -> None:
        url = resource_type
        if query:
            url += f"?{as_query(query)}"
        self._add("GET", url)

    def build(self) -> Resource:
        return self._revision.get_class("Bundle")(type=self.bundle_type, entry=self._entries)

    async def send(self) -> Resource:
        """Sends the bundle, returning the server's response bundle"""
        bundle = self.build()
        if self.bundle_type == "transaction":
            return await self.client.transaction(bundle)
        return await self.client.batch(bundle)
