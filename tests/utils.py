"""Various test helper methods"""

import contextlib
import functools
import inspect
import json
import unittest
from unittest import mock

import httpx
import respx

from fhir_sdk.client import FhirClient, RetryPolicy
from fhir_sdk.revisions import r4b


class AsyncTestCase(unittest.IsolatedAsyncioTestCase):
    """
    Test case to hold some common code (suitable for async *OR* sync tests)

    It also works around a particularly annoying async test case bug in Python 3.10.
    """

    def setUp(self):
        super().setUp()

        # It's so common to want to see more than the tiny default fragment.
        # So we just enable this across the board.
        self.maxDiff = None

        # Avoid long delays when testing networking errors
        self.sleep_mock = self.patch("asyncio.sleep")

    def patch(self, *args, **kwargs) -> mock.Mock:
        """Syntactic sugar to ease making a mock over a test's lifecycle, without decorators"""
        patcher = mock.patch(*args, **kwargs)
        self.addCleanup(patcher.stop)
        return patcher.start()

    def patch_object(self, *args, **kwargs) -> mock.Mock:
        """Syntactic sugar for making an object mock over a test's lifecycle, without decorators"""
        patcher = mock.patch.object(*args, **kwargs)
        self.addCleanup(patcher.stop)
        return patcher.start()

    @contextlib.contextmanager
    def assert_fatal_exit(self, code: int | None = None):
        with self.assertRaises(SystemExit) as cm:
            yield
        if code is not None:
            self.assertEqual(cm.exception.code, code)

    async def _catch_system_exit(self, method):
        try:
            ret = method()
            if inspect.isawaitable(ret):
                return await ret
            return ret
        except SystemExit:
            self.fail("Raised unexpected system exit")

    def _callTestMethod(self, method):
        """
        Works around an async test case bug in python 3.10 and below.

        This seems to be some version of https://github.com/python/cpython/issues/83282
        but fixed & never backported.

        This class works around that by wrapping all test methods and translating uncaught
        SystemExits into failures.
        _callTestMethod() can be deleted once we no longer use python 3.10 in our testing suite.
        """
        return super()._callTestMethod(functools.partial(self._catch_system_exit, method))


class FhirClientMixin(unittest.TestCase):
    """Mixin that provides a realistic FhirClient talking to a mocked server"""

    def setUp(self):
        super().setUp()

        self.fhir_base = "https://example.com/fhir"
        self.fhir_bearer = "1234567890"

        self.respx_mock = respx.mock(assert_all_called=False)
        self.addCleanup(self.respx_mock.stop)
        self.respx_mock.start()

    def fhir_client(self, **kwargs) -> FhirClient:
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, jitter=0))
        return FhirClient(self.fhir_base, r4b.REVISION, **kwargs)


def make_response(status_code=200, json_payload=None, text=None, reason=None, headers=None, stream=False):
    """
    Makes a fake respx response for ease of testing.

    Usually you'll want to use respx.get(...) etc directly.
    But if you want to mock out the client <-> server interaction entirely,
    you can use this method to fake a Response object from a method that returns one.

    Example:
        route.side_effect = [make_response(status_code=503), make_response(json_payload=patient)]
    """
    headers = dict(headers or {})
    headers.setdefault("Content-Type", "application/fhir+json" if json_payload else "text/plain; charset=utf-8")
    json_payload = json.dumps(json_payload) if json_payload else None
    body = (json_payload or text or "").encode("utf8")
    stream_contents = None
    if stream:
        stream_contents = httpx.ByteStream(body)
        body = None
    return respx.MockResponse(
        status_code=status_code,
        content=body,
        stream=stream_contents,
        extensions=reason and {"reason_phrase": reason.encode("utf8")},
        headers=headers or {},
        request=httpx.Request("GET", "fake_request_url"),
    )


def make_bundle(resources: list[dict], next_url: str | None = None, bundle_type: str = "searchset") -> dict:
    """Makes a search result bundle JSON payload"""
    bundle = {"resourceType": "Bundle", "type": bundle_type}
    if next_url:
        bundle["link"] = [{"relation": "next", "url": next_url}]
    if resources:
        bundle["entry"] = [{"resource": resource} for resource in resources]
    return bundle
