"""HTTP client that talks to a FHIR server"""

import base64
import dataclasses
import json
import re
import urllib.parse
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from fhir_sdk import codec, errors, search
from fhir_sdk.client import http
from fhir_sdk.client.paging import PageStream, ResourceStream
from fhir_sdk.client.patch import JSON_PATCH_MIME_TYPE, FhirPathPatch, JsonPatch
from fhir_sdk.client.retry import NO_RETRY, RetryPolicy
from fhir_sdk.client.transaction import BundleBuilder
from fhir_sdk.model import Element, Resource, references
from fhir_sdk.model.primitives import FhirDecimal
from fhir_sdk.revisions import FhirVersion, Revision, get_revision

FHIR_JSON = "application/fhir+json"

AuthCallback = Callable[[], Awaitable[dict[str, str]]]

# Matches the tail of a Location header, like .../Patient/123/_history/2
LOCATION_REGEX = re.compile(r"(?P<type>[A-Z][A-Za-z]+)/(?P<id>[A-Za-z0-9\-.]{1,64})(/_history/(?P<vid>[^/]+))?/?$")
ETAG_REGEX = re.compile(r'(W/)?"(?P<vid>[^"]*)"')


@dataclasses.dataclass(frozen=True)
class FhirResponse:
    """The outcome of one (possibly retried) interaction"""

    status: int
    headers: httpx.Headers
    resource: Resource | None
    attempts: int


@dataclasses.dataclass(frozen=True)
class WriteResult:
    """What the server told us about a create, update, or patch"""

    id: str | None
    version_id: str | None
    location: str | None
    created: bool
    resource: Resource | None
    attempts: int = 1


def bearer_auth(token: str) -> AuthCallback:
    """Authentication with a static bearer token"""

    async def callback() -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    return callback


def basic_auth(user: str, password: str) -> AuthCallback:
    """Authentication with a static user and password"""
    encoded = base64.standard_b64encode(f"{user}:{password}".encode()).decode("ascii")

    async def callback() -> dict[str, str]:
        return {"Authorization": f"Basic {encoded}"}

    return callback


def parse_etag(etag: str | None) -> str | None:
    """Returns the version id in an ETag header, like W/"3" -> 3"""
    match = ETAG_REGEX.fullmatch(etag.strip()) if etag else None
    return match["vid"] if match else None


class FhirClient:
    """
    Performs the FHIR REST interactions against one server, for one FHIR revision.

    Use this as a context manager (like you would an httpx.AsyncClient instance):

        async with FhirClient("https://example.com/fhir", r4b.REVISION) as client:
            patient = await client.read("Patient", "123")

    If you pass in your own httpx.AsyncClient session, you own its lifetime and the client will
    not close it. Calls are independent of each other and may be made concurrently.
    """

    def __init__(
        self,
        base_url: str,
        revision: Revision | FhirVersion | str,
        *,
        session: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        headers: dict[str, str] | None = None,
        auth: AuthCallback | None = None,
        timeout: float | None = None,
        max_connections: int = 5,
    ):
        """
        :param base_url: base URL of the FHIR server, like https://example.com/fhir
        :param revision: the FHIR revision to talk in
        :param session: an httpx client to send requests through (default: one is opened in __aenter__)
        :param retry_policy: backoff schedule for retryable interactions (default: RetryPolicy())
        :param headers: extra headers to send with every request
        :param auth: async callback returning auth headers, called before each interaction and after a 401
        :param timeout: seconds to allow each attempt
        :param max_connections: connection limit for the session we open ourselves
        """
        if not base_url:
            raise ValueError("A base FHIR server URL is required")
        self._base_url = base_url.rstrip("/") + "/"
        self.revision = revision if isinstance(revision, Revision) else get_revision(revision)
        self.retry_policy = retry_policy or RetryPolicy()
        self._headers = dict(headers or {})
        self._auth = auth
        self._timeout = timeout
        self._max_connections = max_connections
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self._session is None:
            # Limit the number of connections open at once, because servers tend to be very busy
            limits = httpx.Limits(max_connections=self._max_connections)
            self._session = httpx.AsyncClient(limits=limits, timeout=300)  # five minutes to be generous
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        if self._owns_session and self._session:
            await self._session.aclose()
            self._session = None

    @property
    def base_url(self) -> str:
        return self._base_url

    ###########################################################################
    #
    # Helpers
    #
    ###########################################################################

    def url(self, path: str) -> str:
        """Basically just urllib.parse.urljoin, but keeping the base path and passing absolute URLs through"""
        if urllib.parse.urlsplit(path).netloc:
            return path
        return urllib.parse.urljoin(self._base_url, path.lstrip("/"))

    def _path(self, *parts: str) -> str:
        return "/".join(urllib.parse.quote(part, safe="$") for part in parts)

    def is_same_origin(self, url: str) -> bool:
        ours = urllib.parse.urlsplit(self._base_url)
        theirs = urllib.parse.urlsplit(url)
        return (ours.scheme, ours.netloc) == (theirs.scheme, theirs.netloc)

    def resource_class(self, resource_type: str | type[Resource]) -> type[Resource]:
        """Looks up a resource class by name (or checks a given class), in this client's revision"""
        if isinstance(resource_type, type):
            if not issubclass(resource_type, Resource):
                raise TypeError(f"{resource_type.__name__} is not a resource class")
            if resource_type.revision is not self.revision:
                raise errors.UnsupportedVersionError(
                    f"{resource_type.__name__} belongs to FHIR {resource_type.revision.version.name}, "
                    f"but this client talks FHIR {self.revision.version.name}"
                )
            return resource_type

        cls = self.revision.find_resource_class(resource_type)
        if cls is None:
            raise errors.UnsupportedVersionError(
                f"'{resource_type}' is not a FHIR {self.revision.version.name} resource type"
            )
        return cls

    def check_resource(self, resource: Resource) -> None:
        if not isinstance(resource, Resource):
            raise TypeError(f"Expected a resource, got {type(resource).__name__}")
        self.resource_class(type(resource))

    @staticmethod
    def require_id(resource: Resource) -> str:
        if not resource.id:
            raise ValueError(f"The {resource.resource_type} has no id")
        return resource.id

    @staticmethod
    def _etag(version: str) -> str:
        """Turns a bare version id into a weak ETag, leaving real ETags alone"""
        return version if version.startswith(("W/", '"')) else f'W/"{version}"'

    @classmethod
    def if_match(cls, resource: Resource) -> str:
        if not resource.version_id:
            raise ValueError(f"The {resource.resource_type} has no version id to update against")
        return cls._etag(resource.version_id)

    def _require_session(self) -> httpx.AsyncClient:
        if self._session is None:
            raise RuntimeError("FhirClient must be used as an async context manager (async with ...)")
        return self._session

    ###########################################################################
    #
    # Low level requests
    #
    ###########################################################################

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Element | dict | list | str | bytes | None = None,
        query: Any = None,
        headers: dict[str, str] | None = None,
        content_type: str = FHIR_JSON,
        retry: bool = False,
        expected: type[Resource] | None = None,
    ) -> FhirResponse:
        """
        Issues one interaction, with retries if asked for.

        The default Accept type is application/fhir+json, but can be overridden by a provided header.

        :param method: HTTP method to issue
        :param path: a path relative to the base URL, or an absolute URL on the same server
        :param body: a model value (or raw JSON) to send
        :param query: search parameters to add to the URL
        :param headers: extra headers for this request
        :param content_type: content type of the body
        :param retry: whether the interaction is safe to retry on transient failures
        :param expected: the resource class the response body should hold
        :returns: the response status, headers, decoded resource (if any), and attempt count
        """
        url = self.url(path)
        if not self.is_same_origin(url):
            # Never send our auth headers to some other host
            raise errors.ProtocolError(f'Refusing to send a request to "{url}", which is not on {self._base_url}')
        if query:
            url += ("&" if "?" in url else "?") + search.as_query(query).encode()

        final_headers = {"Accept": FHIR_JSON, **self._headers, **(headers or {})}
        content = None
        if body is not None:
            if isinstance(body, (Element, dict, list)):
                content = codec.dumps(body)
            else:
                content = body
            final_headers["Content-Type"] = content_type

        response, attempts = await http.request(
            self._require_session(),
            method,
            url,
            headers=final_headers,
            content=content,
            retry_policy=self.retry_policy if retry else NO_RETRY,
            timeout=self._timeout,
            revision=self.revision,
            auth_callback=self._auth,
        )
        try:
            resource = self._decode_body(response, url, expected)
        except errors.RequestError as exc:
            exc.attempts = attempts
            raise
        return FhirResponse(response.status_code, response.headers, resource, attempts)

    def _decode_body(self, response: httpx.Response, url: str, expected: type[Resource] | None) -> Resource | None:
        if response.status_code in {204, 304} or not response.content.strip():
            return None

        try:
            data = json.loads(response.content, parse_float=FhirDecimal)
        except ValueError as exc:
            raise errors.ProtocolError(f'The server did not return FHIR JSON for "{url}": {exc}', response) from exc

        # Servers may answer writes with an OperationOutcome (like warnings on a delete).
        # But where a particular resource was asked for, an outcome in its place is a failure.
        if isinstance(data, dict) and data.get("resourceType") == "OperationOutcome":
            outcome_class = self.revision.get_class("OperationOutcome")
            outcome = codec.decode(data, outcome_class)
            if expected and expected is not outcome_class:
                raise errors.FhirError(
                    f'The server returned an OperationOutcome instead of a {expected.resource_type} for "{url}" '
                    f"(HTTP {response.status_code}): {outcome.summary()}",
                    response,
                    outcome,
                )
            return outcome
        return codec.decode(data, expected, revision=self.revision)

    async def _get(self, path: str, expected: type[Resource] | None = None, query: Any = None) -> Resource:
        response = await self.request("GET", path, query=query, retry=True, expected=expected)
        if response.resource is None:
            raise errors.ProtocolError(f'The server returned no resource for "{self.url(path)}"')
        return response.resource

    def _write_result(self, response: FhirResponse) -> WriteResult:
        location = response.headers.get("Content-Location") or response.headers.get("Location")
        resource_id = version_id = None
        if location and (match := LOCATION_REGEX.search(urllib.parse.urlsplit(location).path)):
            resource_id, version_id = match["id"], match["vid"]
        version_id = version_id or parse_etag(response.headers.get("ETag"))

        resource = response.resource
        if isinstance(resource, Resource) and resource.resource_type != "OperationOutcome":
            resource_id = resource_id or resource.id
            version_id = version_id or resource.version_id

        return WriteResult(
            id=resource_id,
            version_id=version_id,
            location=location,
            created=response.status == 201,
            resource=resource,
            attempts=response.attempts,
        )

    @staticmethod
    def _prefer(return_representation: bool) -> dict[str, str]:
        return {"Prefer": "return=representation" if return_representation else "return=minimal"}

    ###########################################################################
    #
    # Reading
    #
    ###########################################################################

    async def capabilities(self) -> Resource:
        """Fetches the server's CapabilityStatement"""
        return await self._get("metadata", self.revision.get_class("CapabilityStatement"))

    async def read(
        self, resource_type: str | type[Resource], resource_id: str, *, if_none_match: str | None = None
    ) -> Resource | None:
        """
        Reads the current version of a resource.

        With if_none_match (a version id or ETag), returns None when the server answers 304 Not Modified.
        """
        response = await self.read_response(resource_type, resource_id, if_none_match=if_none_match)
        return response.resource

    async def read_response(
        self, resource_type: str | type[Resource], resource_id: str, *, if_none_match: str | None = None
    ) -> FhirResponse:
        """Like read(), but gives back the whole response (status, headers, and how many attempts it took)"""
        cls = self.resource_class(resource_type)
        path = self._path(cls.resource_type, resource_id)
        headers = {"If-None-Match": self._etag(if_none_match)} if if_none_match else None

        response = await self.request("GET", path, headers=headers, retry=True, expected=cls)
        if response.resource is None and response.status != 304:
            raise errors.ProtocolError(f'The server returned no resource for "{self.url(path)}"')
        return response

    async def vread(self, resource_type: str | type[Resource], resource_id: str, version_id: str) -> Resource:
        cls = self.resource_class(resource_type)
        return await self._get(self._path(cls.resource_type, resource_id, "_history", version_id), cls)

    async def read_referenced(self, reference: Element | str) -> Resource:
        """
        Reads the resource a Reference points at (relative, or absolute on this same server).

        Raises ValueError for contained (#id) references, which have nothing to fetch.
        """
        expected_type = None
        if isinstance(reference, Element):
            expected_type = reference.type if reference.type_definition.get("type") else None
            reference = reference.reference
        if not reference:
            raise ValueError("The reference has no literal reference to follow")

        parsed = references.parse_reference(reference)
        if isinstance(parsed, references.LocalReference):
            raise ValueError(f'Cannot read contained reference "{reference}" from the server')

        url = str(parsed)
        resource = await self._get(url)
        if resource.resource_type == "OperationOutcome":
            raise errors.ProtocolError(f'Reading "{reference}" gave an OperationOutcome: {resource.summary()}')
        if expected_type and resource.resource_type != expected_type:
            raise errors.ProtocolError(
                f'Expected "{reference}" to be a {expected_type}, but the server returned a {resource.resource_type}'
            )
        return resource

    ###########################################################################
    #
    # Writing
    #
    ###########################################################################

    async def create(
        self,
        resource: Resource,
        *,
        if_none_exist: Any = None,
        idempotency_key: str | None = None,
        return_representation: bool = True,
    ) -> WriteResult:
        """
        Creates a resource (the server assigns the id).

        A create is only retried when it is safe to repeat: when made conditional with if_none_exist,
        or when given an idempotency key that the server can use to spot repeats.
        """
        self.check_resource(resource)
        headers = self._prefer(return_representation)
        if if_none_exist is not None:
            headers["If-None-Exist"] = search.as_query(if_none_exist).encode()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        response = await self.request(
            "POST",
            resource.resource_type,
            body=resource,
            headers=headers,
            retry=bool(if_none_exist is not None or idempotency_key),
        )
        return self._write_result(response)

    async def update(
        self,
        resource: Resource,
        *,
        conditional: bool = False,
        query: Any = None,
        return_representation: bool = True,
    ) -> WriteResult:
        """
        Updates (or creates, if the server allows it) a resource.

        :param conditional: only update if the server's version matches the resource's meta.versionId
        :param query: update whichever resource matches this search instead of going by id
        """
        self.check_resource(resource)
        headers = self._prefer(return_representation)
        if query is not None:
            path = resource.resource_type
        else:
            path = self._path(resource.resource_type, self.require_id(resource))
            if conditional:
                headers["If-Match"] = self.if_match(resource)

        response = await self.request("PUT", path, body=resource, query=query, headers=headers)
        return self._write_result(response)

    async def patch(
        self,
        resource_type: str | type[Resource],
        resource_id: str,
        patch: JsonPatch | FhirPathPatch | Resource | list,
        *,
        if_match: str | None = None,
        return_representation: bool = True,
    ) -> WriteResult:
        """Applies a JSON Patch or FHIRPath Patch to a resource"""
        cls = self.resource_class(resource_type)
        headers = self._prefer(return_representation)
        if if_match:
            headers["If-Match"] = self._etag(if_match)

        if isinstance(patch, JsonPatch):
            body, content_type = patch.to_json(), JSON_PATCH_MIME_TYPE
        elif isinstance(patch, list):
            body, content_type = patch, JSON_PATCH_MIME_TYPE
        elif isinstance(patch, FhirPathPatch):
            body, content_type = patch.build(), FHIR_JSON
        else:
            self.check_resource(patch)
            body, content_type = patch, FHIR_JSON

        path = self._path(cls.resource_type, resource_id)
        response = await self.request("PATCH", path, body=body, headers=headers, content_type=content_type)
        return self._write_result(response)

    async def delete(
        self, resource_type: str | type[Resource], resource_id: str | None = None, *, query: Any = None
    ) -> FhirResponse:
        """Deletes a resource by id, or (conditionally) whatever matches a search query"""
        cls = self.resource_class(resource_type)
        if (resource_id is None) == (query is None):
            raise ValueError("Delete needs exactly one of a resource id or a search query")
        path = cls.resource_type if resource_id is None else self._path(cls.resource_type, resource_id)
        return await self.request("DELETE", path, query=query)

    ###########################################################################
    #
    # Searching
    #
    ###########################################################################

    async def search(
        self, resource_type: str | type[Resource] | None = None, query: Any = None, *, use_post: bool = False
    ) -> Resource:
        """
        Runs a search and returns the first page of results as a Bundle.

        With no resource type, searches across all types. With use_post, the parameters are sent
        as a form body to [type]/_search (handy for long queries or keeping parameters out of logs).
        """
        bundle_class = self.revision.get_class("Bundle")
        path = self.resource_class(resource_type).resource_type if resource_type else ""

        if not use_post:
            return await self._get(path, bundle_class, query=query)

        path = f"{path}/_search" if path else "_search"
        form = search.as_query(query).encode() if query else ""
        response = await self.request(
            "POST",
            path,
            body=form,
            content_type="application/x-www-form-urlencoded",
            retry=True,
            expected=bundle_class,
        )
        return response.resource

    async def fetch_page(self, url: str) -> Resource:
        """Fetches one page of results, given a Bundle link URL"""
        if not self.is_same_origin(self.url(url)):
            raise errors.ProtocolError(f'Refusing to follow a link to "{url}", which is not on {self._base_url}')
        return await self._get(url, self.revision.get_class("Bundle"))

    def pages(
        self,
        resource_type: str | type[Resource] | None = None,
        query: Any = None,
        *,
        use_post: bool = False,
        prefetch: bool = False,
    ) -> PageStream:
        """Lazily iterates over every page (Bundle) of a search"""
        return PageStream(
            lambda: self.search(resource_type, query, use_post=use_post),
            self.fetch_page,
            prefetch=prefetch,
        )

    def search_all(
        self,
        resource_type: str | type[Resource] | None = None,
        query: Any = None,
        *,
        use_post: bool = False,
        prefetch: bool = False,
    ) -> ResourceStream:
        """Lazily iterates over every resource of a search, across all pages, in server order"""
        return ResourceStream(self.pages(resource_type, query, use_post=use_post, prefetch=prefetch))

    async def history(
        self,
        resource_type: str | type[Resource] | None = None,
        resource_id: str | None = None,
        *,
        query: Any = None,
    ) -> Resource:
        """Fetches the history of the whole server, a resource type, or one resource"""
        if resource_id is not None and resource_type is None:
            raise ValueError("A resource id needs a resource type to look up history")

        parts = []
        if resource_type:
            parts.append(self.resource_class(resource_type).resource_type)
        if resource_id is not None:
            parts.append(resource_id)
        parts.append("_history")
        return await self._get(self._path(*parts), self.revision.get_class("Bundle"), query=query)

    ###########################################################################
    #
    # Batches, transactions, and operations
    #
    ###########################################################################

    async def _send_bundle(self, bundle: Resource, bundle_type: str) -> Resource:
        self.check_resource(bundle)
        if bundle.resource_type != "Bundle" or bundle.type != bundle_type:
            raise ValueError(f"Expected a {bundle_type} Bundle")
        response = await self.request("POST", "", body=bundle, expected=self.revision.get_class("Bundle"))
        return response.resource

    async def transaction(self, bundle: Resource) -> Resource:
        """Sends a transaction Bundle (all entries succeed or fail together)"""
        return await self._send_bundle(bundle, "transaction")

    async def batch(self, bundle: Resource) -> Resource:
        """Sends a batch Bundle (each entry succeeds or fails on its own)"""
        return await self._send_bundle(bundle, "batch")

    def transaction_builder(self) -> BundleBuilder:
        return BundleBuilder(self, "transaction")

    def batch_builder(self) -> BundleBuilder:
        return BundleBuilder(self, "batch")

    async def operation(
        self,
        name: str,
        *,
        resource_type: str | type[Resource] | None = None,
        resource_id: str | None = None,
        parameters: Resource | None = None,
        query: Any = None,
        method: str | None = None,
    ) -> Resource | None:
        """
        Invokes an operation, like $everything on a patient.

        Operations with a Parameters body are POSTed, others use GET (and are retried like reads).
        """
        parts = []
        if resource_type:
            parts.append(self.resource_class(resource_type).resource_type)
        if resource_id is not None:
            parts.append(resource_id)
        parts.append(name if name.startswith("$") else f"${name}")

        method = method or ("POST" if parameters is not None else "GET")
        if parameters is not None:
            self.check_resource(parameters)
        response = await self.request(
            method, self._path(*parts), body=parameters, query=query, retry=method == "GET"
        )
        return response.resource
