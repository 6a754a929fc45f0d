# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
The Alma API Toolkit: bulk operations on the members of an Alma set.

Usage:
  uv run ./alma_toolkit.py --key "$KEY" items-scan-in --setname "Returns to scan" --library MAIN
  uv run ./alma_toolkit.py --key "$KEY" items-cancel-requests --setid 1234 --type WORK_ORDER --dryrun
  uv run ./alma_toolkit.py --key "$KEY" bibs-clean-up-call-numbers --setname "Cleanup" --dryrun > report.csv
  uv run ./alma_toolkit.py --key "$KEY" conf-dump

Subcommands:
  items-scan-in               scan in the items of a set
  items-requests              list the user requests on the items of a set
  items-cancel-requests       cancel item requests of a type and/or subtype
  bibs-clean-up-call-numbers  clean up holdings call numbers for a set of bibs
  conf-dump                   print libraries, departments, and code tables

Flags left unset are read from environment variables:
  global flags:     ALMAAPITOOLKIT_<FLAG>               (eg ALMAAPITOOLKIT_KEY)
  subcommand flags: ALMAAPITOOLKIT_<SUBCOMMAND>_<FLAG>  (eg ALMAAPITOOLKIT_ITEMSSCANIN_SETNAME)

CSV reports go to stdout; progress and log lines go to stderr.
Exit code is 0 on full success, 1 if anything failed (the report is still written).
"""

import argparse
import logging
import os
import sys
import time
from collections.abc import Callable, Mapping
from typing import TextIO

import httpx
import humanize

from alma_cancel import CancelScope, RunMonitor
from alma_client import DEFAULT_SERVER, DEFAULT_THRESHOLD, AlmaClient
from alma_dispatch import ItemError, OperationResult, default_workers
from alma_errors import AlmaToolkitError, ConfigurationError, RequestCancelledError, SetResolutionError
from alma_models import AlmaSet, Member
from alma_operations import (
    DEFAULT_CIRC_DESK,
    cancel_matching_requests,
    clean_up_holdings_call_numbers,
    fetch_code_tables,
    fetch_departments,
    fetch_item_requests,
    fetch_items,
    fetch_libraries,
    scan_in_items,
)
from alma_reports import (
    log_errors,
    write_cancel_report,
    write_cleanup_report,
    write_conf_dump,
    write_requests_report,
    write_scan_in_report,
)
from alma_sets import fetch_all_members, require_content, resolve_set
from call_numbers import RULES

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False  # don't bubble up to root
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
PROJECT_NAME: str = 'The Alma API Toolkit'
VERSION: str = 'devel'
ENV_PREFIX: str = 'ALMAAPITOOLKIT_'
USER_AGENT: str = f'alma-api-toolkit/{VERSION}'
CONF_ENDPOINT: str = '/almaws/v1/conf'
BIBS_ENDPOINT: str = '/almaws/v1/bibs'
TRUE_STRINGS: tuple[str, ...] = ('1', 't', 'true', 'y', 'yes', 'on')


class Flag:
    """
    A flag whose value can come from the command line, an environment variable, or a default (in that order).
    """

    def __init__(self, name: str, default: object = None, boolean: bool = False, type_: Callable = str) -> None:
        self.name: str = name
        self.dest: str = name.replace('-', '_')
        self.default: object = default
        self.boolean: bool = boolean
        self.type_: Callable = type_

    def env_name(self, prefix: str) -> str:
        return f'{prefix}{self.name.replace("-", "").upper()}'

    def add_to(self, parser: argparse.ArgumentParser, help_text: str, prefix: str) -> None:
        help_text = f'{help_text} (env: {self.env_name(prefix)})'
        if self.boolean:
            parser.add_argument(f'--{self.name}', dest=self.dest, action='store_true', default=None, help=help_text)
        else:
            parser.add_argument(f'--{self.name}', dest=self.dest, default=None, metavar=self.name.upper(), help=help_text)

    def resolve(self, args: argparse.Namespace, prefix: str, environ: Mapping[str, str]) -> None:
        if getattr(args, self.dest) is not None:
            value: object = getattr(args, self.dest)
            if not self.boolean:
                value = self._convert(value, f'--{self.name}')
            setattr(args, self.dest, value)
            return
        raw: str | None = environ.get(self.env_name(prefix))
        if raw is None:
            setattr(args, self.dest, self.default)
        elif self.boolean:
            setattr(args, self.dest, raw.strip().lower() in TRUE_STRINGS)
        else:
            setattr(args, self.dest, self._convert(raw, self.env_name(prefix)))

    def _convert(self, raw: object, source: str) -> object:
        try:
            return self.type_(raw)
        except ValueError as exc:
            raise ConfigurationError(f'invalid value {raw!r} for {source}') from exc


def subcommand_env_prefix(prefix: str, name: str) -> str:
    """
    Returns the prefix for environment variables for the subcommand, like ALMAAPITOOLKIT_ITEMSSCANIN_.
    """
    return f'{prefix}{name.replace("-", "").upper()}_'


class RunContext:
    """
    Everything a subcommand needs to talk to Alma for one run.
    """

    def __init__(self, client: AlmaClient, scope: CancelScope, out: TextIO, workers: int, progress: bool) -> None:
        self.client: AlmaClient = client
        self.scope: CancelScope = scope
        self.out: TextIO = out
        self.workers: int = workers
        self.progress: bool = progress


class Subcommand:
    """
    One subcommand: its flags, the API areas its key must be able to read/write, and what it runs.
    `run` returns the per-item errors; an empty list means full success.
    """

    def __init__(
        self,
        name: str,
        description: str,
        read_access: list[str],
        write_access: list[str],
        flags: list[tuple[Flag, str]],
        run: Callable[[RunContext, argparse.Namespace], list[ItemError]],
        validate: Callable[[argparse.Namespace], None] | None = None,
    ) -> None:
        self.name: str = name
        self.description: str = description
        self.read_access: list[str] = read_access
        self.write_access: list[str] = write_access
        self.flags: list[tuple[Flag, str]] = flags
        self.run: Callable[[RunContext, argparse.Namespace], list[ItemError]] = run
        self.validate: Callable[[argparse.Namespace], None] | None = validate

    @property
    def env_prefix(self) -> str:
        return subcommand_env_prefix(ENV_PREFIX, self.name)


## shared subcommand helpers ----------------------------------------


def set_flags() -> list[tuple[Flag, str]]:
    return [
        (Flag('setid'), 'The ID of the set we are processing. This flag or setname are required.'),
        (Flag('setname'), 'The name of the set we are processing. This flag or setid are required.'),
    ]


def dryrun_flag() -> tuple[Flag, str]:
    return (Flag('dryrun', default=False, boolean=True), 'Do not perform any updates. Report on what changes would have been made.')


def validate_set_flags(args: argparse.Namespace) -> None:
    """
    Ensures set name XOR set ID.
    """
    if not args.setname and not args.setid:
        raise ConfigurationError('a set name or a set ID are required')
    if args.setname and args.setid:
        raise ConfigurationError('a set name OR a set ID can be provided, not both')


def log_dryrun(dry_run: bool) -> None:
    if dry_run:
        log.info('Running in dry run mode, no changes will be made in Alma.')
    else:
        log.warning('Not running in dry run mode, changes will be made in Alma!')


def set_members(ctx: RunContext, args: argparse.Namespace, content: str) -> tuple[AlmaSet, list[Member]]:
    """
    Resolves the set named on the command line and fetches all its members.
    Any member-fetch error is fatal: bulk work never starts on a partial member list.
    """
    alma_set: AlmaSet = resolve_set(ctx.client, ctx.scope, name=args.setname or '', set_id=args.setid or '')
    require_content(alma_set, content)
    fetched: OperationResult[Member] = fetch_all_members(
        ctx.client, ctx.scope, alma_set, workers=ctx.workers, progress=ctx.progress
    )
    if fetched.fatal is not None:
        raise fetched.fatal
    if fetched.errors:
        log_errors(fetched.errors)
        raise SetResolutionError(
            f"{len(fetched.errors)} error(s) occurred when retrieving the members of '{alma_set.name}' (ID {alma_set.id})"
        )
    log.info(f"{humanize.intcomma(len(fetched.results))} members found in set '{alma_set.name}' (ID {alma_set.id}).")
    return alma_set, fetched.results


## subcommands ------------------------------------------------------


def run_items_scan_in(ctx: RunContext, args: argparse.Namespace) -> list[ItemError]:
    log_dryrun(args.dryrun)
    _alma_set, members = set_members(ctx, args, 'ITEM')
    if args.dryrun:
        result = fetch_items(ctx.client, ctx.scope, members, ctx.workers, ctx.progress)
    else:
        result = scan_in_items(ctx.client, ctx.scope, members, args.circdesk, args.library, ctx.workers, ctx.progress)
    write_scan_in_report(ctx.out, members, result.results)
    log.info(f'{sum(1 for row in result.results if row.scanned_in)} successful scan in operations.')
    return result.errors


def validate_items_scan_in(args: argparse.Namespace) -> None:
    validate_set_flags(args)
    if not args.circdesk:
        raise ConfigurationError('a circ desk code is required')
    if not args.library:
        raise ConfigurationError('a library code is required')


def run_items_requests(ctx: RunContext, args: argparse.Namespace) -> list[ItemError]:
    _alma_set, members = set_members(ctx, args, 'ITEM')
    result = fetch_item_requests(ctx.client, ctx.scope, members, ctx.workers, ctx.progress)
    write_requests_report(ctx.out, result.results)
    log.info(f'{len(result.results)} requests found.')
    return result.errors


def run_items_cancel_requests(ctx: RunContext, args: argparse.Namespace) -> list[ItemError]:
    log_dryrun(args.dryrun)
    _alma_set, members = set_members(ctx, args, 'ITEM')
    result = cancel_matching_requests(
        ctx.client, ctx.scope, members, args.type, args.subtype, args.dryrun, ctx.workers, ctx.progress
    )
    write_cancel_report(ctx.out, result.results)
    log.info(f'{sum(1 for row in result.results if row.cancelled)} requests cancelled.')
    return result.errors


def validate_items_cancel_requests(args: argparse.Namespace) -> None:
    validate_set_flags(args)
    if not args.type and not args.subtype:
        raise ConfigurationError('a request type or a request sub type are required')


def run_bibs_clean_up_call_numbers(ctx: RunContext, args: argparse.Namespace) -> list[ItemError]:
    log_dryrun(args.dryrun)
    _alma_set, members = set_members(ctx, args, 'BIB_MMS')
    result = clean_up_holdings_call_numbers(ctx.client, ctx.scope, members, args.dryrun, ctx.workers, ctx.progress)
    write_cleanup_report(ctx.out, result.results)
    log.info(f'{sum(1 for row in result.results if row.updated)} successful updates to call numbers.')
    return result.errors


def run_conf_dump(ctx: RunContext, args: argparse.Namespace) -> list[ItemError]:
    libraries = fetch_libraries(ctx.client, ctx.scope)
    departments = fetch_departments(ctx.client, ctx.scope)
    tables = fetch_code_tables(ctx.client, ctx.scope, workers=ctx.workers, progress=ctx.progress)
    write_conf_dump(ctx.out, libraries, departments, tables.results)
    return tables.errors


def build_registry() -> dict[str, Subcommand]:
    subcommands: list[Subcommand] = [
        Subcommand(
            'items-scan-in',
            'Scan the members of a set of items in.',
            read_access=[CONF_ENDPOINT],
            write_access=[BIBS_ENDPOINT],
            flags=[
                *set_flags(),
                (Flag('circdesk', default=DEFAULT_CIRC_DESK), 'The circ desk code.'),
                (Flag('library'), 'The library code. Use the conf-dump subcommand to see the possible values.'),
                dryrun_flag(),
            ],
            run=run_items_scan_in,
            validate=validate_items_scan_in,
        ),
        Subcommand(
            'items-requests',
            'View requests on items in the given set.',
            read_access=[CONF_ENDPOINT, BIBS_ENDPOINT],
            write_access=[],
            flags=set_flags(),
            run=run_items_requests,
            validate=validate_set_flags,
        ),
        Subcommand(
            'items-cancel-requests',
            'Cancel item requests of type and/or subtype on items in the given set.',
            read_access=[CONF_ENDPOINT],
            write_access=[BIBS_ENDPOINT],
            flags=[
                *set_flags(),
                (Flag('type', default=''), 'The request type to cancel. ex: WORK_ORDER'),
                (Flag('subtype', default=''), 'The request subtype to cancel.'),
                dryrun_flag(),
            ],
            run=run_items_cancel_requests,
            validate=validate_items_cancel_requests,
        ),
        Subcommand(
            'bibs-clean-up-call-numbers',
            'Clean up the call numbers in the holdings records for a set of bib records.\n'
            'A CSV report of the changes made is printed to stdout. Rules:\n- ' + '\n- '.join(RULES),
            read_access=[CONF_ENDPOINT],
            write_access=[BIBS_ENDPOINT],
            flags=[*set_flags(), dryrun_flag()],
            run=run_bibs_clean_up_call_numbers,
            validate=validate_set_flags,
        ),
        Subcommand(
            'conf-dump',
            'Print the libraries, departments, and known code tables.\n'
            'Meant to help run other subcommands which need a code from a code table, a library, or a department.',
            read_access=[CONF_ENDPOINT],
            write_access=[],
            flags=[],
            run=run_conf_dump,
        ),
    ]
    return {sub.name: sub for sub in subcommands}


## cli --------------------------------------------------------------

GLOBAL_FLAGS: list[tuple[Flag, str]] = [
    (Flag('key'), 'The Alma API key. Required.'),
    (Flag('server', default=DEFAULT_SERVER), 'The Alma API server to use.'),
    (
        Flag('threshold', default=DEFAULT_THRESHOLD, type_=int),
        'The minimum number of API calls remaining before the tool automatically stops working.',
    ),
    (Flag('workers', default=default_workers(), type_=int), 'How many API calls to run at once.'),
]


def build_parser(registry: dict[str, Subcommand]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='alma_toolkit', description=PROJECT_NAME, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'{PROJECT_NAME} - Version {VERSION}.')
    for flag, help_text in GLOBAL_FLAGS:
        flag.add_to(parser, help_text, ENV_PREFIX)
    subparsers = parser.add_subparsers(dest='subcommand', metavar='SUBCOMMAND', required=True)
    for sub in registry.values():
        sub_parser = subparsers.add_parser(
            sub.name, help=sub.description.splitlines()[0], description=sub.description,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        for flag, help_text in sub.flags:
            flag.add_to(sub_parser, help_text, sub.env_prefix)
    return parser


def parse_args(
    argv: list[str] | None, environ: Mapping[str, str], registry: dict[str, Subcommand]
) -> argparse.Namespace:
    """
    Parses the command line, then fills unset flags from the environment and defaults, then validates.
    Raises ConfigurationError for invalid or missing values.
    """
    args: argparse.Namespace = build_parser(registry).parse_args(argv)
    for flag, _help in GLOBAL_FLAGS:
        flag.resolve(args, ENV_PREFIX, environ)
    sub: Subcommand = registry[args.subcommand]
    for flag, _help in sub.flags:
        flag.resolve(args, sub.env_prefix, environ)
    if not args.key:
        raise ConfigurationError('An Alma API key is required.')
    if args.workers < 1:
        raise ConfigurationError('--workers must be at least 1')
    if sub.validate is not None:
        sub.validate(args)
    return args


def run_subcommand(
    sub: Subcommand,
    args: argparse.Namespace,
    out: TextIO,
    transport: httpx.BaseTransport | None = None,
    handle_signals: bool = True,
    progress: bool = True,
) -> int:
    """
    Runs one subcommand inside a RunMonitor and maps the outcome to an exit code.
    Called by: main()
    """
    start: float = time.monotonic()
    errors: list[ItemError] = []
    headers: dict[str, str] = {'user-agent': USER_AGENT}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=30.0, write=30.0, pool=30.0)
    ## one connection per worker; the key-check and single lookups share them
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=args.workers, max_connections=args.workers)
    with httpx.Client(
        headers=headers, timeout=timeout, limits=limits, transport=transport
    ) as http_client, RunMonitor(
        args.threshold, handle_signals=handle_signals
    ) as monitor:
        client = AlmaClient(http_client, server=args.server, key=args.key, budget=monitor.budget)
        ctx = RunContext(client, monitor.scope, out, args.workers, progress)
        try:
            client.check_api_and_key(monitor.scope, sub.read_access, sub.write_access)
            errors = sub.run(ctx, args)
        except RequestCancelledError as exc:
            log.error(f'FATAL: {sub.name} was cancelled, {exc}.')
            return 1
        except AlmaToolkitError as exc:
            log.error(f'FATAL: {exc}')
            return 1
        finally:
            remaining: int | None = monitor.budget.remaining
            if remaining is not None:
                log.info(f'{humanize.intcomma(remaining)} API calls remaining.')
            log.info(f'{sub.name} finished in {humanize.naturaldelta(time.monotonic() - start)}.')
    log_errors(errors)
    fatal: list[ItemError] = [e for e in errors if isinstance(e.error, RequestCancelledError)]
    if fatal:
        log.error(f'FATAL: {sub.name} was cancelled, {fatal[0].error}.')
    if errors:
        log.error(f'{len(errors)} error(s) occurred during {sub.name}.')
        return 1
    return 0


def main(
    argv: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
    out: TextIO | None = None,
    transport: httpx.BaseTransport | None = None,
    handle_signals: bool = True,
    progress: bool = True,
) -> int:
    """
    Parses flags (falling back to environment variables), checks the API key, and runs the subcommand.
    Returns the process exit code.
    Called by: dundermain
    """
    registry: dict[str, Subcommand] = build_registry()
    try:
        args: argparse.Namespace = parse_args(argv, os.environ if environ is None else environ, registry)
    except ConfigurationError as exc:
        log.error(f'FATAL: {exc}')
        return 1
    return run_subcommand(
        registry[args.subcommand],
        args,
        sys.stdout if out is None else out,
        transport=transport,
        handle_signals=handle_signals,
        progress=progress,
    )


if __name__ == '__main__':
    raise SystemExit(main())
