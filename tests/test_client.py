"""Tests for client/client.py"""

import asyncio
import json

import ddt
import httpx

from fhir_sdk import errors
from fhir_sdk.client import FhirClient, FhirPathPatch, JsonPatch, basic_auth, bearer_auth
from fhir_sdk.client.client import parse_etag
from fhir_sdk.revisions import r4b, r5
from fhir_sdk.search import SearchQuery
from tests.utils import AsyncTestCase, FhirClientMixin, make_bundle, make_response


def observation_json(index: int) -> dict:
    return {"resourceType": "Observation", "id": f"o{index}", "status": "final", "code": {"text": "test"}}


def concept(code: str) -> r4b.CodeableConcept:
    return r4b.CodeableConcept(coding=[r4b.Coding(system="http://loinc.org", code=code)])


@ddt.ddt
class TestFhirClient(AsyncTestCase, FhirClientMixin):
    """
    Test case for the FHIR REST interactions.

    Every test talks to a respx-mocked server at self.fhir_base.
    """

    def mock_get(self, path: str, **kwargs):
        return self.respx_mock.get(host="example.com", path=f"/fhir/{path}", **kwargs)

    def sent_json(self, route) -> dict | list:
        return json.loads(route.calls.last.request.content)

    ###########################################################################
    #
    # Setup
    #
    ###########################################################################

    def test_requires_base_url(self):
        with self.assertRaises(ValueError):
            FhirClient("", r4b.REVISION)

    def test_revision_by_name(self):
        self.assertIs(r5.REVISION, FhirClient(self.fhir_base, "r5").revision)
        self.assertIs(r4b.REVISION, FhirClient(self.fhir_base, "4.3.0").revision)

    def test_base_url_normalized(self):
        self.assertEqual("https://example.com/fhir/", FhirClient("https://example.com/fhir///", "r4b").base_url)
        client = self.fhir_client()
        self.assertEqual("https://example.com/fhir/Patient/1", client.url("Patient/1"))
        self.assertEqual("https://example.com/fhir/Patient/1", client.url("/Patient/1"))
        self.assertEqual("https://other.example.com/x", client.url("https://other.example.com/x"))

    async def test_requires_context_manager(self):
        with self.assertRaisesRegex(RuntimeError, "async with"):
            await self.fhir_client().read("Patient", "1")

    async def test_does_not_close_given_session(self):
        self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        session = httpx.AsyncClient()
        self.addAsyncCleanup(session.aclose)

        async with self.fhir_client(session=session) as client:
            await client.read("Patient", "1")

        self.assertFalse(session.is_closed)

    ###########################################################################
    #
    # Reading
    #
    ###########################################################################

    async def test_read(self):
        route = self.mock_get("Patient/123").respond(
            json={"resourceType": "Patient", "id": "123", "active": True, "meta": {"versionId": "4"}}
        )

        async with self.fhir_client() as client:
            patient = await client.read("Patient", "123")

        self.assertIsInstance(patient, r4b.Patient)
        self.assertEqual("123", patient.id)
        self.assertEqual("4", patient.version_id)
        self.assertTrue(patient.active)
        self.assertEqual("application/fhir+json", route.calls.last.request.headers["Accept"])

    async def test_read_by_class(self):
        self.mock_get("Patient/123").respond(json={"resourceType": "Patient", "id": "123"})
        async with self.fhir_client() as client:
            patient = await client.read(r4b.Patient, "123")
        self.assertEqual("123", patient.id)

    async def test_read_wrong_type_returned(self):
        self.mock_get("Patient/123").respond(json={"resourceType": "Group", "id": "123", "type": "person"})
        async with self.fhir_client() as client:
            with self.assertRaises(errors.DecodeError):
                await client.read("Patient", "123")

    async def test_read_unknown_type(self):
        async with self.fhir_client() as client:
            with self.assertRaises(errors.UnsupportedVersionError):
                await client.read("Spaceship", "1")
            with self.assertRaises(errors.UnsupportedVersionError):
                await client.read(r5.Patient, "1")

    async def test_read_not_json(self):
        self.mock_get("Patient/123").respond(text="<html>hello</html>")
        async with self.fhir_client() as client:
            with self.assertRaisesRegex(errors.ProtocolError, "did not return FHIR JSON"):
                await client.read("Patient", "123")

    async def test_read_retries_transient_errors(self):
        route = self.mock_get("Patient/123")
        route.side_effect = [
            make_response(status_code=503),
            make_response(status_code=503),
            make_response(json_payload={"resourceType": "Patient", "id": "123"}),
        ]

        async with self.fhir_client() as client:
            response = await client.read_response("Patient", "123")

        self.assertEqual(3, response.attempts)
        self.assertEqual(200, response.status)
        self.assertEqual("123", response.resource.id)
        self.assertEqual(3, route.call_count)
        self.assertEqual(2, self.sleep_mock.call_count)

    async def test_read_retries_until_it_gives_up(self):
        route = self.mock_get("Patient/123")
        route.side_effect = [
            make_response(status_code=503),
            make_response(status_code=503),
            make_response(json_payload={"resourceType": "Patient", "id": "123"}),
        ]
        async with self.fhir_client() as client:
            patient = await client.read("Patient", "123")
        self.assertEqual("123", patient.id)
        self.assertEqual(3, route.call_count)

        route.side_effect = None
        route.mock(return_value=make_response(status_code=503))
        async with self.fhir_client() as client:
            with self.assertRaises(errors.RequestError) as cm:
                await client.read("Patient", "123")
        self.assertEqual(503, cm.exception.status_code)
        self.assertEqual(client.retry_policy.max_attempts, cm.exception.attempts)

    @ddt.data(
        ("Patient/123", lambda client: client.read("Patient", "123")),
        ("Patient/123", lambda client: client.read_response("Patient", "123", if_none_match="3")),
        ("Patient/123/_history/2", lambda client: client.vread("Patient", "123", "2")),
        ("Patient", lambda client: client.search("Patient", {"name": "smith"})),
        ("_history", lambda client: client.history()),
        ("Patient", lambda client: client.fetch_page("Patient?page=2")),
        ("metadata", lambda client: client.capabilities()),
    )
    @ddt.unpack
    async def test_outcome_instead_of_resource(self, path, call):
        outcome = {
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "too-costly", "diagnostics": "Too many results"}],
        }
        self.mock_get(path).respond(json=outcome)  # a success status, but no resource

        async with self.fhir_client() as client:
            with self.assertRaisesRegex(errors.FhirError, "Too many results") as cm:
                await call(client)

        self.assertEqual(200, cm.exception.status_code)
        self.assertEqual(1, cm.exception.attempts)
        self.assertIsInstance(cm.exception.outcome, r4b.OperationOutcome)

    async def test_outcome_instead_of_searchset_with_post(self):
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": "processing"}]}
        self.respx_mock.post(f"{self.fhir_base}/Patient/_search").respond(json=outcome)
        async with self.fhir_client() as client:
            with self.assertRaises(errors.FhirError):
                await client.search("Patient", {"name": "smith"}, use_post=True)

    async def test_outcome_stops_paging(self):
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": "processing"}]}
        self.mock_get("Patient").respond(json=outcome)
        async with self.fhir_client() as client:
            with self.assertRaises(errors.FhirError):
                [patient async for patient in client.search_all("Patient")]

    async def test_read_does_not_retry_404(self):
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": "not-found"}]}
        route = self.mock_get("Patient/nope").mock(return_value=make_response(status_code=404, json_payload=outcome))

        async with self.fhir_client() as client:
            with self.assertRaises(errors.FhirError) as cm:
                await client.read("Patient", "nope")

        self.assertEqual(404, cm.exception.status_code)
        self.assertEqual(1, cm.exception.attempts)
        self.assertEqual(1, route.call_count)
        self.assertEqual(0, self.sleep_mock.call_count)

    async def test_conditional_read_not_modified(self):
        route = self.mock_get("Patient/123").respond(status_code=304)
        async with self.fhir_client() as client:
            patient = await client.read("Patient", "123", if_none_match="4")
        self.assertIsNone(patient)
        self.assertEqual('W/"4"', route.calls.last.request.headers["If-None-Match"])

    async def test_conditional_read_modified(self):
        route = self.mock_get("Patient/123").respond(
            json={"resourceType": "Patient", "id": "123", "meta": {"versionId": "5"}}
        )
        async with self.fhir_client() as client:
            patient = await client.read("Patient", "123", if_none_match='W/"4"')
        self.assertEqual("5", patient.version_id)
        self.assertEqual('W/"4"', route.calls.last.request.headers["If-None-Match"])

    async def test_vread(self):
        self.mock_get("Patient/123/_history/2").respond(
            json={"resourceType": "Patient", "id": "123", "meta": {"versionId": "2"}}
        )
        async with self.fhir_client() as client:
            patient = await client.vread("Patient", "123", "2")
        self.assertEqual("2", patient.version_id)

    async def test_capabilities(self):
        self.mock_get("metadata").respond(
            json={
                "resourceType": "CapabilityStatement",
                "status": "active",
                "date": "2024-01-01",
                "kind": "instance",
                "fhirVersion": "4.3.0",
                "format": ["json"],
            }
        )
        async with self.fhir_client() as client:
            capabilities = await client.capabilities()
        self.assertEqual("4.3.0", capabilities.fhir_version)

    async def test_concurrent_reads(self):
        self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1", "gender": "female"})
        self.mock_get("Patient/2").respond(json={"resourceType": "Patient", "id": "2", "gender": "male"})

        async with self.fhir_client() as client:
            first, second = await asyncio.gather(client.read("Patient", "1"), client.read("Patient", "2"))

        self.assertEqual(("1", "female"), (first.id, first.gender))
        self.assertEqual(("2", "male"), (second.id, second.gender))

    @ddt.data(
        "Patient/1",
        "https://example.com/fhir/Patient/1",
        r4b.Reference(reference="Patient/1", type="Patient"),
    )
    async def test_read_referenced(self, reference):
        self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        async with self.fhir_client() as client:
            patient = await client.read_referenced(reference)
        self.assertEqual("1", patient.id)

    async def test_read_referenced_type_mismatch(self):
        self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        async with self.fhir_client() as client:
            with self.assertRaisesRegex(errors.ProtocolError, "to be a Group"):
                await client.read_referenced(r4b.Reference(reference="Patient/1", type="Group"))

    async def test_read_referenced_outcome(self):
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": "processing"}]}
        self.mock_get("Patient/1").respond(json=outcome)
        async with self.fhir_client() as client:
            with self.assertRaisesRegex(errors.ProtocolError, "OperationOutcome"):
                await client.read_referenced("Patient/1")

    async def test_read_referenced_refusals(self):
        async with self.fhir_client() as client:
            with self.assertRaisesRegex(ValueError, "contained"):
                await client.read_referenced("#med1")
            with self.assertRaises(ValueError):
                await client.read_referenced(r4b.Reference(display="Somebody"))
            with self.assertRaisesRegex(errors.ProtocolError, "Refusing"):
                await client.read_referenced("https://elsewhere.example.org/fhir/Patient/1")

    ###########################################################################
    #
    # Auth
    #
    ###########################################################################

    async def test_bearer_auth(self):
        route = self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        async with self.fhir_client(auth=bearer_auth(self.fhir_bearer)) as client:
            await client.read("Patient", "1")
        self.assertEqual(f"Bearer {self.fhir_bearer}", route.calls.last.request.headers["Authorization"])

    async def test_basic_auth(self):
        route = self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        async with self.fhir_client(auth=basic_auth("user", "p4ssw0rd")) as client:
            await client.read("Patient", "1")
        self.assertEqual("Basic dXNlcjpwNHNzdzByZA==", route.calls.last.request.headers["Authorization"])

    async def test_extra_headers(self):
        route = self.mock_get("Patient/1").respond(json={"resourceType": "Patient", "id": "1"})
        async with self.fhir_client(headers={"X-Tenant": "blue", "Accept": "application/json"}) as client:
            await client.read("Patient", "1")
        self.assertEqual("blue", route.calls.last.request.headers["X-Tenant"])
        self.assertEqual("application/json", route.calls.last.request.headers["Accept"])

    ###########################################################################
    #
    # Writing
    #
    ###########################################################################

    async def test_create(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Patient").respond(
            status_code=201,
            headers={"Location": f"{self.fhir_base}/Patient/new1/_history/1", "ETag": 'W/"1"'},
            json={"resourceType": "Patient", "id": "new1", "active": True, "meta": {"versionId": "1"}},
        )

        async with self.fhir_client() as client:
            result = await client.create(r4b.Patient(active=True))

        self.assertEqual("new1", result.id)
        self.assertEqual("1", result.version_id)
        self.assertTrue(result.created)
        self.assertEqual(1, result.attempts)
        self.assertEqual("new1", result.resource.id)

        request = route.calls.last.request
        self.assertEqual({"resourceType": "Patient", "active": True}, json.loads(request.content))
        self.assertEqual("application/fhir+json", request.headers["Content-Type"])
        self.assertEqual("return=representation", request.headers["Prefer"])

    async def test_create_minimal_response(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Patient").respond(
            status_code=201, headers={"Location": "Patient/new2/_history/7"}
        )

        async with self.fhir_client() as client:
            result = await client.create(r4b.Patient(), return_representation=False)

        self.assertEqual(("new2", "7"), (result.id, result.version_id))
        self.assertIsNone(result.resource)
        self.assertEqual("return=minimal", route.calls.last.request.headers["Prefer"])

    async def test_create_is_not_retried(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Patient").respond(status_code=503)
        async with self.fhir_client() as client:
            with self.assertRaises(errors.ProtocolError):
                await client.create(r4b.Patient())
        self.assertEqual(1, route.call_count)

    async def test_create_with_idempotency_key_is_retried(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Patient")
        route.side_effect = [make_response(status_code=503), make_response(status_code=201)]

        async with self.fhir_client() as client:
            result = await client.create(r4b.Patient(id="p"), idempotency_key="key-1")

        self.assertEqual(2, result.attempts)
        self.assertEqual(2, route.call_count)
        self.assertEqual("key-1", route.calls.last.request.headers["Idempotency-Key"])

    async def test_conditional_create(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Patient").respond(
            status_code=200, json={"resourceType": "Patient", "id": "old"}
        )

        async with self.fhir_client() as client:
            result = await client.create(r4b.Patient(), if_none_exist={"identifier": "http://example.com/mrn|123"})

        self.assertFalse(result.created)
        self.assertEqual("old", result.id)
        self.assertEqual(
            "identifier=http://example.com/mrn|123", route.calls.last.request.headers["If-None-Exist"]
        )

    async def test_create_wrong_revision(self):
        async with self.fhir_client() as client:
            with self.assertRaises(errors.UnsupportedVersionError):
                await client.create(r5.Patient())

    async def test_update(self):
        route = self.respx_mock.put(f"{self.fhir_base}/Patient/p1").respond(
            headers={"ETag": 'W/"4"'}, json={"resourceType": "Patient", "id": "p1"}
        )
        patient = r4b.Patient(id="p1", meta=r4b.Meta(version_id="3"), active=False)

        async with self.fhir_client() as client:
            result = await client.update(patient, conditional=True)

        self.assertEqual(("p1", "4"), (result.id, result.version_id))
        self.assertFalse(result.created)
        self.assertEqual('W/"3"', route.calls.last.request.headers["If-Match"])
        self.assertEqual("p1", self.sent_json(route)["id"])

    async def test_update_version_conflict(self):
        outcome = {
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "conflict", "diagnostics": "Version mismatch"}],
        }
        route = self.respx_mock.put(f"{self.fhir_base}/Patient/p1").mock(
            return_value=make_response(status_code=412, json_payload=outcome)
        )
        patient = r4b.Patient(id="p1", meta=r4b.Meta(version_id="3"))

        async with self.fhir_client() as client:
            with self.assertRaisesRegex(errors.FhirError, "Version mismatch") as cm:
                await client.update(patient, conditional=True)

        self.assertEqual(412, cm.exception.status_code)
        self.assertEqual(1, route.call_count)

    async def test_update_needs_ids(self):
        async with self.fhir_client() as client:
            with self.assertRaisesRegex(ValueError, "no id"):
                await client.update(r4b.Patient())
            with self.assertRaisesRegex(ValueError, "no version id"):
                await client.update(r4b.Patient(id="p1"), conditional=True)

    async def test_conditional_update(self):
        route = self.respx_mock.put(host="example.com", path="/fhir/Patient").respond(
            status_code=201, headers={"Location": "Patient/p9/_history/1"}
        )

        async with self.fhir_client() as client:
            result = await client.update(r4b.Patient(), query={"identifier": "mrn|1"})

        self.assertTrue(result.created)
        self.assertEqual("p9", result.id)
        self.assertEqual("mrn|1", route.calls.last.request.url.params["identifier"])

    async def test_json_patch(self):
        route = self.respx_mock.patch(f"{self.fhir_base}/Patient/p1").respond(
            json={"resourceType": "Patient", "id": "p1", "active": False, "meta": {"versionId": "5"}}
        )
        patch = JsonPatch().replace("/active", False).add("/gender", "other")

        async with self.fhir_client() as client:
            result = await client.patch("Patient", "p1", patch, if_match="4")

        self.assertEqual("5", result.version_id)
        request = route.calls.last.request
        self.assertEqual("application/json-patch+json", request.headers["Content-Type"])
        self.assertEqual('W/"4"', request.headers["If-Match"])
        self.assertEqual(
            [{"op": "replace", "path": "/active", "value": False}, {"op": "add", "path": "/gender", "value": "other"}],
            json.loads(request.content),
        )

    async def test_fhirpath_patch(self):
        route = self.respx_mock.patch(f"{self.fhir_base}/Patient/p1").respond(status_code=200)
        patch = FhirPathPatch(r4b.REVISION).delete("Patient.birthDate")

        async with self.fhir_client() as client:
            await client.patch("Patient", "p1", patch)

        request = route.calls.last.request
        self.assertEqual("application/fhir+json", request.headers["Content-Type"])
        body = json.loads(request.content)
        self.assertEqual("Parameters", body["resourceType"])
        self.assertEqual(
            [{"name": "type", "valueCode": "delete"}, {"name": "path", "valueString": "Patient.birthDate"}],
            body["parameter"][0]["part"],
        )

    async def test_delete(self):
        route = self.respx_mock.delete(f"{self.fhir_base}/Patient/p1").respond(status_code=204)
        async with self.fhir_client() as client:
            response = await client.delete("Patient", "p1")
        self.assertEqual(204, response.status)
        self.assertIsNone(response.resource)
        self.assertEqual(1, route.call_count)

    async def test_delete_with_outcome(self):
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "information", "code": "informational"}]}
        self.respx_mock.delete(f"{self.fhir_base}/Patient/p1").respond(json=outcome)
        async with self.fhir_client() as client:
            response = await client.delete("Patient", "p1")
        self.assertIsInstance(response.resource, r4b.OperationOutcome)

    async def test_conditional_delete(self):
        route = self.respx_mock.delete(host="example.com", path="/fhir/Observation").respond(status_code=204)
        async with self.fhir_client() as client:
            await client.delete("Observation", query=SearchQuery().add("status", "cancelled"))
        self.assertEqual(f"{self.fhir_base}/Observation?status=cancelled", str(route.calls.last.request.url))

    async def test_delete_needs_one_target(self):
        async with self.fhir_client() as client:
            with self.assertRaises(ValueError):
                await client.delete("Patient")
            with self.assertRaises(ValueError):
                await client.delete("Patient", "p1", query={"active": "false"})

    ###########################################################################
    #
    # Searching
    #
    ###########################################################################

    async def test_search_encodes_query(self):
        route = self.mock_get("Observation").respond(json=make_bundle([observation_json(1)]))
        query = SearchQuery().add("code", "http://loinc.org|1234-5").add("status", "final", "amended").count(20)

        async with self.fhir_client() as client:
            bundle = await client.search("Observation", query)

        self.assertEqual(["o1"], [obs.id for obs in bundle.resources()])
        url = route.calls.last.request.url
        self.assertEqual("/fhir/Observation", url.path)
        self.assertEqual(
            [("code", "http://loinc.org|1234-5"), ("status", "final,amended"), ("_count", "20")],
            list(url.params.multi_items()),
        )

    async def test_search_with_post(self):
        route = self.respx_mock.post(f"{self.fhir_base}/Observation/_search").respond(json=make_bundle([]))

        async with self.fhir_client() as client:
            bundle = await client.search("Observation", {"subject": "Patient/1"}, use_post=True)

        self.assertEqual([], bundle.resources())
        request = route.calls.last.request
        self.assertEqual("application/x-www-form-urlencoded", request.headers["Content-Type"])
        self.assertEqual(b"subject=Patient/1", request.content)

    async def test_search_all_types(self):
        route = self.respx_mock.get(host="example.com", path="/fhir/").respond(json=make_bundle([]))
        async with self.fhir_client() as client:
            await client.search(query={"_lastUpdated": "gt2024-01-01"})
        self.assertEqual(f"{self.fhir_base}/?_lastUpdated=gt2024-01-01", str(route.calls.last.request.url))

    async def test_search_all_pages(self):
        route = self.mock_get("Observation")
        route.side_effect = [
            make_response(
                json_payload=make_bundle(
                    [observation_json(i) for i in range(10)], next_url=f"{self.fhir_base}/Observation?page=2"
                )
            ),
            make_response(json_payload=make_bundle([observation_json(i) for i in range(10, 15)])),
        ]

        async with self.fhir_client() as client:
            async with client.search_all("Observation", SearchQuery().count(10)) as observations:
                ids = [obs.id async for obs in observations]

        self.assertEqual([f"o{i}" for i in range(15)], ids)
        self.assertEqual(2, route.call_count)
        self.assertEqual(f"{self.fhir_base}/Observation?_count=10", str(route.calls[0].request.url))
        self.assertEqual(f"{self.fhir_base}/Observation?page=2", str(route.calls[1].request.url))

    async def test_search_all_with_prefetch(self):
        route = self.mock_get("Observation")
        route.side_effect = [
            make_response(
                json_payload=make_bundle([observation_json(1)], next_url=f"{self.fhir_base}/Observation?page=2")
            ),
            make_response(
                json_payload=make_bundle([observation_json(2)], next_url=f"{self.fhir_base}/Observation?page=3")
            ),
            make_response(json_payload=make_bundle([observation_json(3)])),
        ]

        async with self.fhir_client() as client:
            resources = await client.search_all("Observation", prefetch=True).collect()

        self.assertEqual(["o1", "o2", "o3"], [obs.id for obs in resources])
        self.assertEqual(3, route.call_count)

    async def test_search_all_is_lazy(self):
        route = self.mock_get("Observation")
        route.side_effect = [
            make_response(
                json_payload=make_bundle(
                    [observation_json(1), observation_json(2)], next_url=f"{self.fhir_base}/Observation?page=2"
                )
            ),
            make_response(json_payload=make_bundle([observation_json(3)])),
        ]

        async with self.fhir_client() as client:
            async with client.search_all("Observation") as observations:
                first = await anext(observations)

        self.assertEqual("o1", first.id)
        self.assertEqual(1, route.call_count)

    async def test_search_all_empty(self):
        route = self.mock_get("Observation").respond(json=make_bundle([]))
        async with self.fhir_client() as client:
            resources = await client.search_all("Observation").collect()
        self.assertEqual([], resources)
        self.assertEqual(1, route.call_count)

    async def test_pages_refuse_foreign_next_link(self):
        self.mock_get("Observation").respond(
            json=make_bundle([observation_json(1)], next_url="https://elsewhere.example.org/fhir/Observation?p=2")
        )

        async with self.fhir_client() as client:
            async with client.pages("Observation") as pages:
                first = await anext(pages)
                self.assertEqual(1, len(first.resources()))
                with self.assertRaisesRegex(errors.ProtocolError, "Refusing to follow"):
                    await anext(pages)

    async def test_pages_error_propagates(self):
        route = self.mock_get("Observation")
        route.side_effect = [
            make_response(
                json_payload=make_bundle([observation_json(1)], next_url=f"{self.fhir_base}/Observation?page=2")
            ),
            make_response(status_code=400, text="bad page"),
        ]

        async with self.fhir_client() as client:
            observations = client.search_all("Observation")
            self.assertEqual("o1", (await anext(observations)).id)
            with self.assertRaisesRegex(errors.ProtocolError, "bad page"):
                await anext(observations)

            # And the stream is finished afterwards
            with self.assertRaises(StopAsyncIteration):
                await anext(observations)

    async def test_history(self):
        route = self.mock_get("Patient/p1/_history").respond(json=make_bundle([], bundle_type="history"))
        async with self.fhir_client() as client:
            bundle = await client.history("Patient", "p1", query={"_count": 5})
        self.assertEqual("history", bundle.type)
        self.assertEqual(f"{self.fhir_base}/Patient/p1/_history?_count=5", str(route.calls.last.request.url))

    async def test_history_needs_type_with_id(self):
        async with self.fhir_client() as client:
            with self.assertRaises(ValueError):
                await client.history(resource_id="p1")

    ###########################################################################
    #
    # Transactions & operations
    #
    ###########################################################################

    async def test_transaction(self):
        response_bundle = {
            "resourceType": "Bundle",
            "type": "transaction-response",
            "entry": [
                {"response": {"status": "201 Created", "location": "Patient/p1/_history/1"}},
                {"response": {"status": "201 Created", "location": "Observation/o1/_history/1"}},
            ],
        }
        route = self.respx_mock.post(f"{self.fhir_base}/").respond(json=response_bundle)

        async with self.fhir_client() as client:
            transaction = client.transaction_builder()
            patient_url = transaction.create(r4b.Patient(active=True))
            transaction.create(
                r4b.Observation(status="final", code=concept("1234-5"), subject=r4b.Reference(reference=patient_url))
            )
            transaction.delete("Patient", "old")
            self.assertEqual(3, len(transaction))
            response = await transaction.send()

        self.assertEqual("transaction-response", response.type)
        self.assertEqual(1, route.call_count)

        sent = self.sent_json(route)
        self.assertEqual("transaction", sent["type"])
        entries = sent["entry"]
        self.assertTrue(patient_url.startswith("urn:uuid:"))
        self.assertEqual(patient_url, entries[0]["fullUrl"])
        self.assertEqual({"method": "POST", "url": "Patient"}, entries[0]["request"])
        self.assertEqual(patient_url, entries[1]["resource"]["subject"]["reference"])
        self.assertEqual({"method": "DELETE", "url": "Patient/old"}, entries[2]["request"])

    async def test_transaction_is_not_retried(self):
        route = self.respx_mock.post(f"{self.fhir_base}/").respond(status_code=503)
        async with self.fhir_client() as client:
            builder = client.transaction_builder()
            builder.delete("Patient", "old")
            with self.assertRaises(errors.ProtocolError):
                await builder.send()
        self.assertEqual(1, route.call_count)

    async def test_batch(self):
        route = self.respx_mock.post(f"{self.fhir_base}/").respond(
            json={"resourceType": "Bundle", "type": "batch-response"}
        )
        async with self.fhir_client() as client:
            batch = client.batch_builder()
            batch.read("Patient", "p1")
            batch.search("Observation", {"subject": "Patient/p1"})
            await batch.send()

        entries = self.sent_json(route)["entry"]
        self.assertEqual("batch", self.sent_json(route)["type"])
        self.assertEqual({"method": "GET", "url": "Observation?subject=Patient/p1"}, entries[1]["request"])

    async def test_send_bundle_checks_type(self):
        async with self.fhir_client() as client:
            with self.assertRaises(ValueError):
                await client.transaction(r4b.Bundle(type="batch"))

    async def test_operation_get(self):
        route = self.respx_mock.get(host="example.com", path="/fhir/Patient/p1/$everything").respond(
            json=make_bundle([{"resourceType": "Patient", "id": "p1"}])
        )
        async with self.fhir_client() as client:
            bundle = await client.operation("everything", resource_type="Patient", resource_id="p1")
        self.assertEqual(["p1"], [resource.id for resource in bundle.resources()])
        self.assertEqual(1, route.call_count)

    async def test_operation_post(self):
        route = self.respx_mock.post(host="example.com", path="/fhir/$validate").respond(
            json={"resourceType": "OperationOutcome", "issue": [{"severity": "information", "code": "informational"}]}
        )
        parameters = r4b.Parameters(parameter=[r4b.ParametersParameter(name="mode", value_code="create")])

        async with self.fhir_client() as client:
            outcome = await client.operation("$validate", parameters=parameters)

        self.assertFalse(outcome.has_errors())
        self.assertEqual("Parameters", self.sent_json(route)["resourceType"])


class TestEtags(AsyncTestCase):
    """Test case for reading version ids out of ETags"""

    def test_parse_etag(self):
        self.assertEqual("3", parse_etag('W/"3"'))
        self.assertEqual("abc", parse_etag('"abc"'))
        self.assertIsNone(parse_etag(None))
        self.assertIsNone(parse_etag("garbage"))
