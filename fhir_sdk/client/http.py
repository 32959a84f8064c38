"""HTTP helper methods"""

import asyncio
import datetime
import email.utils
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import httpx

from fhir_sdk import codec, errors
from fhir_sdk.client.retry import NO_RETRY, RetryPolicy
from fhir_sdk.model.primitives import FhirDecimal

if TYPE_CHECKING:
    from fhir_sdk.revisions import Revision  # pragma: no cover


def get_retry_after(response: httpx.Response, default: float) -> float:
    """
    Returns the value of the Retry-After header, in seconds.

    Parsing can be tricky because the header is also allowed to be in http-date format,
    providing a specific timestamp.

    See https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/Retry-After
    """
    value = response.headers.get("Retry-After")
    if value is None:
        return default

    try:
        return max(0, int(value))
    except ValueError:
        pass

    try:
        retry_time = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_time.tzinfo is None:
        retry_time = retry_time.replace(tzinfo=datetime.timezone.utc)

    delay = retry_time - datetime.datetime.now(datetime.timezone.utc)
    return max(0, delay.total_seconds())


async def request(
    session: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict | None = None,
    retry_policy: RetryPolicy | None = None,
    timeout: float | None = None,
    revision: "Revision | None" = None,
    retry_callback: Callable[[errors.RequestError, float], None] | None = None,
    auth_callback: Callable[[], Awaitable[dict[str, str]]] | None = None,
    **kwargs,  # passed on to AsyncClient
) -> tuple[httpx.Response, int]:
    """
    Issues an HTTP request with retries.

    May raise a RequestError, with its `attempts` set to how many tries were made.

    :param session: client to use
    :param method: HTTP method to issue
    :param url: URL to hit
    :param headers: optional header dictionary
    :param retry_policy: how many attempts to make and how long to wait between them (default: no retries)
    :param timeout: seconds to allow each attempt, a timeout counts as a transient failure
    :param revision: FHIR revision used to read OperationOutcome error bodies
    :param retry_callback: called right before sleeping
    :param auth_callback: called to get auth headers, before the first attempt and after any 401
    :returns: the response object and the number of attempts it took
    """
    policy = retry_policy or NO_RETRY
    headers = dict(headers or {})  # make copy, because we may modify it for auth
    if timeout is not None:
        kwargs["timeout"] = timeout

    if auth_callback:
        headers.update(await auth_callback())

    attempt = 0
    while True:
        attempt += 1
        try:
            return await _request_once(session, method, url, headers=headers, revision=revision, **kwargs), attempt
        except errors.RequestError as exc:
            error = exc

        # If we hit an authentication error, get new headers and try once more (without
        # counting against the retry count - this is not a "real" error but just an expected
        # expiration of auth)
        if error.status_code == 401 and auth_callback:
            headers.update(await auth_callback())
            try:
                return await _request_once(session, method, url, headers=headers, revision=revision, **kwargs), attempt
            except errors.RequestError as exc:
                error = exc

        error.attempts = attempt
        if not error.is_transient or attempt >= policy.max_attempts:
            raise error

        # Respect Retry-After, but only if it lets us request faster than we would have otherwise.
        # That way, the caller can reliably predict the longest we will wait from their policy.
        delay = policy.delay(attempt)
        if error.response is not None:
            delay = min(get_retry_after(error.response, delay), delay)

        logging.warning("Attempt %d of %s %s failed, retrying in %.1fs: %s", attempt, method, url, delay, error)
        if retry_callback:
            retry_callback(error, delay)

        # And actually do the waiting
        await asyncio.sleep(delay)


async def _request_once(
    session: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict | None = None,
    revision: "Revision | None" = None,
    **kwargs,  # passed on to AsyncClient
) -> httpx.Response:
    """
    Issues a single HTTP request.

    Will raise a TransportError for connection problems, and a FhirError or ProtocolError for
    error statuses (depending on whether the server explained itself with an OperationOutcome).
    """
    request = session.build_request(method, url, headers=headers, **kwargs)
    try:
        response = await session.send(request)
    except httpx.TimeoutException as exc:
        raise errors.TransportError(f'Timed out connecting to "{url}": {exc}') from exc
    except httpx.HTTPError as exc:
        raise errors.TransportError(f'An error occurred when connecting to "{url}": {exc}') from exc

    if response.is_success or response.status_code == 304:  # 304 answers a conditional read
        return response

    raise error_for_response(response, url, revision)


def error_for_response(
    response: httpx.Response, url: str, revision: "Revision | None" = None
) -> errors.FhirError | errors.ProtocolError:
    """Builds the right exception for an error status, reading an OperationOutcome body when present"""
    prefix = f'An error occurred when connecting to "{url}" (HTTP {response.status_code})'

    try:
        body = json.loads(response.content, parse_float=FhirDecimal)
    except ValueError:  # includes JSONDecodeError and UnicodeDecodeError
        body = None

    # Find a nice message to show user, if possible
    message = None
    if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome" and revision:
        try:
            outcome = codec.decode(body, revision.get_class("OperationOutcome"))
        except errors.DecodeError as exc:
            logging.debug("Could not read OperationOutcome from %s: %s", url, exc)
        else:
            return errors.FhirError(f"{prefix}: {outcome.summary()}", response, outcome)
    elif isinstance(body, dict) and "error_description" in body:  # standard oauth2 error field
        message = body["error_description"]
    elif isinstance(body, dict) and "error_uri" in body:  # another standard oauth2 error field
        message = f'visit "{body["error_uri"]}" for more details'

    message = message or response.text or response.reason_phrase
    return errors.ProtocolError(f"{prefix}: {message}", response)
