"""
Report writers for the toolkit's subcommands.

CSV reports go to the given stream (stdout from the CLI), one row per processed record,
including whether the change was actually made in Alma. Summaries and errors are logged
(stderr), so stdout stays parseable.
"""

import csv
import logging
from collections import Counter
from typing import TextIO

from alma_dispatch import ItemError
from alma_models import CodeTable, Department, Library, Member, UserRequest
from alma_operations import HoldingCleanup, RequestCancellation, ScanIn

log = logging.getLogger(__name__)


def _yes_no(value: bool) -> str:
    return 'yes' if value else 'no'


def write_scan_in_report(out: TextIO, members: list[Member], scanned: list[ScanIn]) -> None:
    """
    One row per set member; a member with no scan-in result (the call failed) gets only its ID and 'no'.
    """
    by_id: dict[str, ScanIn] = {row.member.id: row for row in scanned}
    writer = csv.writer(out)
    writer.writerow(['Member ID', 'MMS ID', 'Title', 'Author', 'Call Number', 'Barcode', 'Scanned in in Alma'])
    for member in sorted(members, key=lambda m: m.id):
        row: ScanIn | None = by_id.get(member.id)
        if row is None:
            writer.writerow([member.id, '', '', '', '', '', _yes_no(False)])
            continue
        item = row.item
        writer.writerow(
            [member.id, item.mms_id, item.title, item.author, item.call_number, item.barcode, _yes_no(row.scanned_in)]
        )


def write_requests_report(out: TextIO, requests: list[UserRequest]) -> None:
    counts: Counter[tuple[str, str]] = Counter((req.type, req.sub_type) for req in requests)
    for (req_type, sub_type), count in sorted(counts.items()):
        log.info(f'Type: {req_type} Subtype: {sub_type} Count: {count}')
    writer = csv.writer(out)
    writer.writerow(['Item Link', 'Request ID', 'Request Type', 'Request Subtype'])
    for req in sorted(requests, key=lambda r: (r.member.link, r.id)):
        writer.writerow([req.member.link, req.id, req.type, req.sub_type])


def write_cancel_report(out: TextIO, cancellations: list[RequestCancellation]) -> None:
    writer = csv.writer(out)
    writer.writerow(
        ['Item Link', 'Request ID', 'Request Type', 'Request Subtype', 'Matched type and subtype', 'Cancelled in Alma']
    )
    for row in sorted(cancellations, key=lambda c: (c.request.member.link, c.request.id)):
        req = row.request
        writer.writerow([req.member.link, req.id, req.type, req.sub_type, _yes_no(row.matched), _yes_no(row.cancelled)])


def write_cleanup_report(out: TextIO, cleanups: list[HoldingCleanup]) -> None:
    """
    One row per holding; the updated call number is blank when no rule changed it.
    """
    writer = csv.writer(out)
    writer.writerow(['Bib Link', 'Holding Link', 'Original call number', 'Updated call number', 'Changed in Alma'])
    for row in sorted(cleanups, key=lambda c: c.link):
        writer.writerow([row.bib.link, row.link, row.original, row.cleaned if row.changed else '', _yes_no(row.updated)])
        for change in row.changes:
            log.debug(f'{row.link} {change.tag} ${change.code}: ``{change.before}`` -> ``{change.after}``')


def write_conf_dump(out: TextIO, libraries: list[Library], departments: list[Department], tables: list[CodeTable]) -> None:
    """
    Human-readable dump of libraries, departments, and code tables, for looking up codes other subcommands need.
    """
    print('Libraries:', file=out)
    for library in sorted(libraries, key=lambda lib: lib.code):
        print(f'{library.code} ({library.name})', file=out)
        print(f'Description: {library.description}', file=out)
        print(f'Resource Sharing: {library.resource_sharing}', file=out)
        print(f'Campus: {library.campus}', file=out)
        print(f'Proxy: {library.proxy}', file=out)
        print(f'Default Location: {library.default_location}', file=out)
        print(file=out)
    print('Departments:', file=out)
    for department in sorted(departments, key=lambda dep: dep.code):
        print(f'{department.code} ({department.name})', file=out)
        print(f'Type: {department.type}', file=out)
        print(f'Work Days: {department.work_days}', file=out)
        print(f'Printer: {department.printer}', file=out)
        print(f'Owner: {department.owner}', file=out)
        print('Served Libraries:', file=out)
        for served in department.served_libraries:
            print(f'  {served}', file=out)
        print('Operators:', file=out)
        for operator in department.operators:
            print(f'  {operator.primary_id} ({operator.full_name})', file=out)
        print(file=out)
    print('Code Tables:', file=out)
    for table in sorted(tables, key=lambda t: t.name.lower()):
        print(f'{table.name} ({table.description})', file=out)
        print(f'Subsystem: {table.sub_system}', file=out)
        print(f'Patron Facing: {table.patron_facing}', file=out)
        print(f'Language: {table.language}', file=out)
        print('Scope:', file=out)
        print(f'  Institution : {table.scope_institution}', file=out)
        print(f'  Library : {table.scope_library}', file=out)
        print('Rows:', file=out)
        for row in table.rows:
            print(f'{row.code} ({row.description}) Default: {row.default} Enabled: {row.enabled}', file=out)
        print(file=out)


def log_errors(errors: list[ItemError]) -> None:
    if not errors:
        return
    log.error(f'{len(errors)} error(s):')
    for item_error in errors:
        log.error(str(item_error))
