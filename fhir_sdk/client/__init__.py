"""Async REST client for FHIR servers"""

from .client import FhirClient, FhirResponse, WriteResult, basic_auth, bearer_auth
from .paging import PageStream, ResourceStream
from .patch import FhirPathPatch, JsonPatch
from .retry import NO_RETRY, RetryPolicy
from .transaction import BundleBuilder
