"""The command line interface to fhir-sdk"""

import argparse
import asyncio
import enum
import logging
import sys

import rich.logging

from fhir_sdk import cli_utils, codec, errors
from fhir_sdk.revisions import get_revision
from fhir_sdk.search import SearchQuery


class Command(enum.Enum):
    """Subcommand strings"""

    READ = "read"
    SEARCH = "search"
    VALIDATE = "validate"

    # Why isn't this part of Enum directly...?
    @classmethod
    def values(cls):
        return [e.value for e in cls]


def get_subcommand(argv: list[str]) -> str | None:
    """
    Determines which subcommand was requested by the given command line.

    This inspects the first positional argument. If it's a recognized command, we return it. Else None.
    """
    for i, arg in enumerate(argv):
        if arg in Command.values():
            return argv.pop(i)  # remove it to make later parsers' jobs easier
        elif not arg.startswith("-"):
            return None
    return None


def _print_resource(resource, indent: int | None) -> None:
    print(codec.dumps(resource, indent=indent))


###############################################################################
#
# read
#
###############################################################################


def define_read_parser(parser: argparse.ArgumentParser) -> None:
    parser.usage = "%(prog)s [OPTION]... TYPE ID"
    parser.description = "Read one resource from a FHIR server and print it as JSON."
    parser.add_argument("resource_type", metavar="TYPE", help="resource type, like Patient")
    parser.add_argument("id", metavar="ID", help="resource id")
    parser.add_argument("--version-id", metavar="VID", help="read this specific version of the resource")
    parser.add_argument("--indent", type=int, default=2, help="JSON indentation (default is 2)")
    cli_utils.add_fhir_version(parser)
    cli_utils.add_server(parser)


async def read_main(args: argparse.Namespace) -> None:
    async with cli_utils.create_client_for_cli(args) as client:
        if args.version_id:
            resource = await client.vread(args.resource_type, args.id, args.version_id)
        else:
            resource = await client.read(args.resource_type, args.id)
    _print_resource(resource, args.indent)


###############################################################################
#
# search
#
###############################################################################


def define_search_parser(parser: argparse.ArgumentParser) -> None:
    parser.usage = "%(prog)s [OPTION]... TYPE [NAME=VALUE]..."
    parser.description = "Search a FHIR server and print every matching resource as NDJSON, one per line."
    parser.add_argument("resource_type", metavar="TYPE", help="resource type, like Observation")
    parser.add_argument(
        "params",
        metavar="NAME=VALUE",
        nargs="*",
        help="search parameters, already in FHIR search syntax (like code=http://loinc.org|1234-5)",
    )
    parser.add_argument("--limit", type=int, help="stop after this many resources")
    parser.add_argument("--post", action="store_true", help="send the search as a POST form")
    cli_utils.add_fhir_version(parser)
    cli_utils.add_server(parser)


def parse_search_params(params: list[str]) -> SearchQuery:
    query = SearchQuery()
    for param in params:
        name, sep, value = param.partition("=")
        if not sep or not name:
            errors.fatal(f"Search parameter '{param}' is not in NAME=VALUE form.", errors.ARGS_INVALID)
        query.with_raw(name, value)
    return query


async def search_main(args: argparse.Namespace) -> None:
    query = parse_search_params(args.params)
    count = 0
    async with cli_utils.create_client_for_cli(args) as client:
        async with client.search_all(args.resource_type, query, use_post=args.post) as resources:
            async for resource in resources:
                if args.limit is not None and count >= args.limit:
                    break
                _print_resource(resource, None)
                count += 1
    logging.info("Found %d resources", count)


###############################################################################
#
# validate
#
###############################################################################


def define_validate_parser(parser: argparse.ArgumentParser) -> None:
    parser.usage = "%(prog)s [OPTION]... FILE..."
    parser.description = "Check that JSON files hold valid FHIR resources (use - for stdin)."
    parser.add_argument("files", metavar="FILE", nargs="+", help="resource JSON files")
    parser.add_argument("--strict", action="store_true", help="reject fields that are not part of the FHIR revision")
    cli_utils.add_fhir_version(parser)


def validate_main(args: argparse.Namespace) -> None:
    revision = get_revision(cli_utils.get_version(args))
    failures = []
    for path in args.files:
        try:
            text = sys.stdin.read() if path == "-" else cli_utils.read_text(path)
        except FileNotFoundError:
            errors.fatal(f"Could not find file '{path}'.", errors.FILE_NOT_FOUND)

        try:
            resource = codec.loads(text, revision=revision, strict=args.strict)
        except errors.DecodeError as exc:
            logging.error("%s: %s", path, exc)
            failures.append(path)
        else:
            label = resource.relative_reference() if resource.id else resource.resource_type
            print(f"{path}: valid {label}")

    if failures:
        errors.fatal(f"{len(failures)} of {len(args.files)} files are invalid.", errors.DECODE_FAILED)


###############################################################################
#
# Main
#
###############################################################################


async def main(argv: list[str]) -> None:
    # Use RichHandler for logging because it works better when interacting with other rich components.
    # But also turn off all the complex bits - we just want the message.
    logging.basicConfig(
        format="%(message)s",
        level=logging.INFO,
        handlers=[rich.logging.RichHandler(show_time=False, show_level=False, show_path=False)],
    )

    subcommand = get_subcommand(argv)

    prog = "fhir-sdk"
    if subcommand:
        prog += f" {subcommand}"  # to make --help look nicer
    parser = argparse.ArgumentParser(prog=prog)

    if subcommand == Command.READ.value:
        define_read_parser(parser)
        run_method = read_main
    elif subcommand == Command.SEARCH.value:
        define_search_parser(parser)
        run_method = search_main
    elif subcommand == Command.VALIDATE.value:
        define_validate_parser(parser)
        run_method = validate_main
    else:
        parser.formatter_class = argparse.RawDescriptionHelpFormatter
        parser.description = "Work with FHIR resources and servers.\n\ncommands available:\n"
        parser.description += "  read\n  search\n  validate"
        parser.parse_args(argv)
        parser.print_usage(sys.stderr)
        raise SystemExit(errors.ARGS_INVALID)

    args = parser.parse_args(argv)
    try:
        if asyncio.iscoroutinefunction(run_method):
            await run_method(args)
        else:
            run_method(args)
    except errors.RequestError as exc:
        errors.fatal(str(exc), errors.REQUEST_FAILED)
    except errors.UnsupportedVersionError as exc:
        errors.fatal(str(exc), errors.ARGS_INVALID)


def main_cli():
    asyncio.run(main(sys.argv[1:]))  # pragma: no cover


if __name__ == "__main__":
    main_cli()  # pragma: no cover
