"""
Set lookup and member retrieval.

Members are fetched one page (offset+limit) per job, all pages concurrently, then
merged by member ID. A set whose unique member count does not match its declared
size is reported as failed; a partial member list is never returned as a success.
"""

import logging
import math

from alma_cancel import CancelScope
from alma_client import AlmaClient
from alma_dispatch import ItemError, OperationResult, run_jobs
from alma_errors import MemberCountMismatchError, SetResolutionError
from alma_models import AlmaSet, Member, parse_xml

log = logging.getLogger(__name__)

PAGE_SIZE: int = 100  # the limit parameter for offset+limit calls
SETS_PATH: str = '/almaws/v1/conf/sets'


def set_id_from_name(client: AlmaClient, scope: CancelScope, name: str) -> str:
    """
    Returns the ID of the set whose trimmed name is exactly `name`.
    The API search is a contains-match, so candidates are filtered here; there is no fuzzy fallback.
    """
    wanted: str = name.strip()
    body: bytes = client.get(scope, SETS_PATH, params={'q': f'name~{wanted}', 'limit': str(PAGE_SIZE)})
    root = parse_xml(body, 'sets', root_tag='sets')
    ids: list[str] = []
    for element in root.iterfind('set'):
        candidate: AlmaSet = AlmaSet.from_xml(element)
        if candidate.name.strip() == wanted and candidate.id not in ids:
            ids.append(candidate.id)
    if not ids:
        raise SetResolutionError(f"no set with name '{wanted}' found")
    if len(ids) > 1:
        raise SetResolutionError(f"set name '{wanted}' is ambiguous, matching IDs {', '.join(ids)}")
    return ids[0]


def set_from_id(client: AlmaClient, scope: CancelScope, set_id: str) -> AlmaSet:
    body: bytes = client.get(scope, f'{SETS_PATH}/{set_id.strip()}')
    return AlmaSet.from_xml(parse_xml(body, 'set', root_tag='set'))


def resolve_set(client: AlmaClient, scope: CancelScope, name: str = '', set_id: str = '') -> AlmaSet:
    """
    Returns the set for a name OR an ID (exactly one must be given).
    Called by: alma_toolkit subcommands
    """
    if bool(name) == bool(set_id):
        raise SetResolutionError('a set name OR a set ID is required, not both')
    if name:
        set_id = set_id_from_name(client, scope, name)
        log.info(f"ID '{set_id}' found for set name '{name}'.")
    alma_set: AlmaSet = set_from_id(client, scope, set_id)
    log.debug(
        f'set ``{alma_set.name}`` ({alma_set.id}): {alma_set.number_of_members} members, '
        f'content {alma_set.content}, type {alma_set.type}'
    )
    return alma_set


def require_content(alma_set: AlmaSet, content: str) -> None:
    """
    Ensures the set holds the kind of record an operation works on (eg ITEM, BIB_MMS).
    """
    if alma_set.content != content:
        raise SetResolutionError(
            f"the set '{alma_set.name}' (ID {alma_set.id}) must be a set of {content}, not {alma_set.content or 'unknown'}"
        )


def count_pages(declared: int, page_size: int = PAGE_SIZE) -> int:
    return math.ceil(declared / page_size) if declared > 0 else 0


def fetch_member_page(
    client: AlmaClient, scope: CancelScope, alma_set: AlmaSet, offset: int, limit: int = PAGE_SIZE
) -> list[Member]:
    body: bytes = client.get(scope, f'{alma_set.link}/members', params={'limit': str(limit), 'offset': str(offset)})
    root = parse_xml(body, 'members', root_tag='members')
    return [Member.from_xml(element) for element in root.iterfind('member')]


def fetch_all_members(
    client: AlmaClient,
    scope: CancelScope,
    alma_set: AlmaSet,
    page_size: int = PAGE_SIZE,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[Member]:
    """
    Fetches every member of the set, one concurrent job per page.

    Page failures are collected and the other pages continue. The result holds members only
    when the merged, de-duplicated count equals the declared count; otherwise it holds no
    members and a MemberCountMismatchError (found vs expected).
    """
    offsets: list[int] = [page * page_size for page in range(count_pages(alma_set.number_of_members, page_size))]
    pages: OperationResult[list[Member]] = run_jobs(
        scope,
        offsets,
        lambda job_scope, offset: fetch_member_page(client, job_scope, alma_set, offset, page_size),
        'Getting set members',
        key=lambda offset: f'{alma_set.link}/members?offset={offset}',
        workers=workers,
        progress=progress,
    )
    ## a dict keyed by ID collapses members returned by overlapping pages
    by_id: dict[str, Member] = {}
    for page in pages.results:
        for member in page:
            by_id[member.id] = member
    result: OperationResult[Member] = OperationResult(errors=list(pages.errors))
    if len(by_id) != alma_set.number_of_members:
        result.errors.append(
            ItemError(alma_set.id, MemberCountMismatchError(len(by_id), alma_set.number_of_members))
        )
        return result
    result.results = list(by_id.values())
    return result
