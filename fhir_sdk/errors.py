"""Exception classes and error handling"""

import sys
from typing import TYPE_CHECKING, NoReturn

import httpx
import rich.console
import rich.padding

if TYPE_CHECKING:
    from fhir_sdk.model import Resource  # pragma: no cover

# CLI return codes, mostly just distinguished for the benefit of tests.
# These start at 10 just to leave some room for future use.
ARGS_CONFLICT = 10
ARGS_INVALID = 11
FHIR_URL_MISSING = 12
FILE_NOT_FOUND = 13
DECODE_FAILED = 14
REQUEST_FAILED = 15


class FhirSdkError(Exception):
    """Base class for every error raised by this package"""


###############################################################################
#
# Decoding & building
#
###############################################################################


class DecodeError(FhirSdkError):
    """The wire shape could not be turned into a model value"""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path
        self.message = message


class BuildError(FhirSdkError):
    """A model value could not be constructed"""


class MissingRequiredField(DecodeError, BuildError):
    """A required field was not set (raised by both decoding and building)"""

    def __init__(self, path: str, field: str):
        super().__init__(path, f"missing required field '{field}'")
        self.field = field


class UnknownField(DecodeError):
    """An unrecognized field was found while decoding in strict mode"""


class InvalidChoiceVariant(DecodeError):
    """A choice field had an unknown type suffix, or more than one variant"""


class TypeMismatch(DecodeError):
    """A JSON node had the wrong JSON type for its declared FHIR type"""


class InvalidPrimitiveFormat(DecodeError):
    """A primitive's lexical form was malformed (bad date, bad base64, etc)"""


class UnsupportedResourceType(DecodeError):
    """The resourceType tag is not known to the active revision"""


class UnsupportedVersionError(FhirSdkError):
    """A type or feature is not present in the active revision"""


###############################################################################
#
# Network errors
#
###############################################################################


class RequestError(FhirSdkError):
    """A REST interaction failed, possibly after several attempts"""

    def __init__(self, message: str, response: httpx.Response | None = None):
        super().__init__(message)
        self.response = response
        self.attempts = 1

    @property
    def status_code(self) -> int | None:
        return self.response.status_code if self.response is not None else None

    @property
    def is_transient(self) -> bool:
        """Whether retrying might help (throttling and server side errors)"""
        status = self.status_code
        return status is not None and (status == 429 or 500 <= status <= 599)


class TransportError(RequestError):
    """Connection-level failure, including timeouts"""

    @property
    def is_transient(self) -> bool:
        return True


class FhirError(RequestError):
    """The server answered with an OperationOutcome: an error status, or one in place of the resource asked for"""

    def __init__(self, message: str, response: httpx.Response, outcome: "Resource"):
        super().__init__(message, response)
        self.outcome = outcome


class ProtocolError(RequestError):
    """The server answered in a way we could not understand"""


###############################################################################
#
# CLI helpers
#
###############################################################################


def fatal(message: str, status: int, extra: str = "") -> NoReturn:
    """Convenience method to exit the program with a user-friendly error message a test-friendly status code"""
    stderr = rich.console.Console(stderr=True)
    stderr.print(message, style="bold red", highlight=False)
    if extra:
        stderr.print(rich.padding.Padding.indent(extra, 2), highlight=False)
    sys.exit(status)  # raises a SystemExit exception
