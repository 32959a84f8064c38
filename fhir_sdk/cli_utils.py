"""Helper methods for CLI parsing."""

import argparse
import sys

from fhir_sdk import errors
from fhir_sdk.client import FhirClient, RetryPolicy, basic_auth, bearer_auth
from fhir_sdk.revisions import FhirVersion


def add_auth(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("authentication")
    group.add_argument("--basic-user", metavar="USER", help="username for Basic authentication")
    group.add_argument("--basic-passwd", metavar="PATH", help="password file for Basic authentication")
    group.add_argument("--bearer-token", metavar="PATH", help="token file for Bearer authentication")


def add_fhir_version(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--fhir-version",
        metavar="VERSION",
        default=FhirVersion.R4B.name.lower(),
        help="FHIR revision to talk in: stu3, r4b, or r5 (default is r4b)",
    )


def add_server(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("server")
    group.add_argument("--fhir-url", metavar="URL", help="FHIR server base URL")
    group.add_argument(
        "--max-attempts",
        metavar="NUM",
        type=int,
        default=RetryPolicy.max_attempts,
        help=f"how many times to try a read or search before giving up (default is {RetryPolicy.max_attempts})",
    )
    group.add_argument("--timeout", metavar="SECONDS", type=float, help="time to allow each request attempt")
    add_auth(parser)


def read_text(path: str) -> str:
    with open(path, encoding="utf8") as f:
        return f.read()


def create_client_for_cli(args: argparse.Namespace) -> FhirClient:
    """
    Create a FhirClient instance, based on user input from the CLI.

    The usual FHIR server authentication options should be represented in args.
    """
    if not args.fhir_url:
        errors.fatal("You must provide a base FHIR server URL with --fhir-url", errors.FHIR_URL_MISSING)

    if args.bearer_token and (args.basic_user or args.basic_passwd):
        errors.fatal(
            "Multiple authentication methods have been specified. Double check your arguments.",
            errors.ARGS_CONFLICT,
        )
    if bool(args.basic_user) != bool(args.basic_passwd):
        errors.fatal(
            "You must provide both --basic-user and --basic-passwd to connect to a Basic auth server.",
            errors.ARGS_INVALID,
        )

    try:
        basic_password = read_text(args.basic_passwd).strip() if args.basic_passwd else None
        bearer_token = read_text(args.bearer_token).strip() if args.bearer_token else None
    except OSError as exc:
        print(exc, file=sys.stderr)
        raise SystemExit(errors.ARGS_INVALID) from exc

    auth = None
    if bearer_token:
        auth = bearer_auth(bearer_token)
    elif basic_password:
        auth = basic_auth(args.basic_user, basic_password)

    try:
        retry_policy = RetryPolicy(max_attempts=args.max_attempts)
    except ValueError as exc:
        errors.fatal(str(exc), errors.ARGS_INVALID)

    return FhirClient(
        args.fhir_url,
        get_version(args),
        retry_policy=retry_policy,
        auth=auth,
        timeout=args.timeout,
    )


def get_version(args: argparse.Namespace) -> FhirVersion:
    try:
        return FhirVersion.parse(args.fhir_version)
    except errors.UnsupportedVersionError as exc:
        errors.fatal(str(exc), errors.ARGS_INVALID)
