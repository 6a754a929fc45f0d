"""
An in-memory stand-in for the Alma API, served through `httpx.MockTransport`.

Routes are keyed by (method, path). A route is either a fixed (status, body) or a callable
taking the `httpx.Request` and returning (status, body). Unrouted requests get a 404.
Every request is recorded, under a lock since the toolkit sends from worker threads.
"""

import threading
from collections.abc import Callable
from pathlib import Path

import httpx

from alma_cancel import RemainingCallBudget
from alma_client import REMAINING_HEADER, AlmaClient

SERVER: str = 'api-ca.hosted.exlibrisgroup.com'
BASE: str = f'https://{SERVER}'
TEST_DATA: Path = Path(__file__).parent / 'test_data'

Route = tuple[int, str] | Callable[[httpx.Request], tuple[int, str]]


def fixture(name: str) -> str:
    return (TEST_DATA / name).read_text(encoding='utf-8')


class FakeAlma:
    def __init__(self, remaining: int | None = 100000) -> None:
        self.routes: dict[tuple[str, str], Route] = {}
        self.requests: list[httpx.Request] = []
        self.remaining: int | None = remaining
        self._lock: threading.Lock = threading.Lock()

    def route(self, method: str, path: str, body: str = '', status: int | None = None) -> None:
        if status is None:
            status = 204 if method == 'DELETE' else 200
        self.routes[(method, path)] = (status, body)

    def route_with(self, method: str, path: str, handler: Callable[[httpx.Request], tuple[int, str]]) -> None:
        self.routes[(method, path)] = handler

    def allow_api_test(self) -> None:
        """
        Answers the key-permission checks every subcommand starts with.
        """
        self.route('GET', '/almaws/v1/conf/test')
        self.route('GET', '/almaws/v1/bibs/test')
        self.route('POST', '/almaws/v1/bibs/test')

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        entry: Route | None = self.routes.get((request.method, request.url.path))
        if entry is None:
            status, body = 404, '<web_service_result><errorsExist>true</errorsExist></web_service_result>'
        elif callable(entry):
            status, body = entry(request)
        else:
            status, body = entry
        headers: dict[str, str] = {}
        if self.remaining is not None:
            headers[REMAINING_HEADER] = str(self.remaining)
        return httpx.Response(status, content=body.encode('utf-8'), headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, budget: RemainingCallBudget | None = None) -> AlmaClient:
        return AlmaClient(httpx.Client(transport=self.transport()), server=SERVER, key='test-key', budget=budget)

    def calls(self, method: str, path: str | None = None) -> list[httpx.Request]:
        with self._lock:
            return [
                req for req in self.requests if req.method == method and (path is None or req.url.path == path)
            ]


## xml builders -----------------------------------------------------


def set_xml(set_id: str, name: str, members: int, content: str = 'ITEM', set_type: str = 'ITEMIZED') -> str:
    return (
        f'<set link="{BASE}/almaws/v1/conf/sets/{set_id}">'
        f'<id>{set_id}</id><name>{name}</name>'
        f'<type desc="Itemized">{set_type}</type><content desc="Physical items">{content}</content>'
        f'<number_of_members link="{BASE}/almaws/v1/conf/sets/{set_id}/members">{members}</number_of_members>'
        '</set>'
    )


def sets_xml(*sets: str) -> str:
    return f'<sets total_record_count="{len(sets)}">{"".join(sets)}</sets>'


def item_link(item_id: str) -> str:
    return f'{BASE}/almaws/v1/bibs/99{item_id}/holdings/22{item_id}/items/23{item_id}'


def item_path(item_id: str) -> str:
    return item_link(item_id).removeprefix(BASE)


def members_xml(member_ids: list[str], total: int, link: Callable[[str], str] = item_link) -> str:
    members: str = ''.join(f'<member link="{link(mid)}"><id>{mid}</id></member>' for mid in member_ids)
    return f'<members total_record_count="{total}">{members}</members>'


def user_requests_xml(*requests: tuple[str, str, str]) -> str:
    body: str = ''.join(
        f'<user_request><request_id>{rid}</request_id><request_type>{rtype}</request_type>'
        f'<request_sub_type desc="{sub}">{sub}</request_sub_type></user_request>'
        for rid, rtype, sub in requests
    )
    return f'<user_requests total_record_count="{len(requests)}">{body}</user_requests>'


def holdings_xml(bib_id: str, holding_ids: list[str]) -> str:
    body: str = ''.join(
        f'<holding link="{BASE}/almaws/v1/bibs/{bib_id}/holdings/{hid}"><holding_id>{hid}</holding_id>'
        f'<library desc="Main Library">MAIN</library><location desc="Stacks">STACKS</location>'
        f'<call_number>placeholder</call_number></holding>'
        for hid in holding_ids
    )
    return f'<holdings total_record_count="{len(holding_ids)}">{body}</holdings>'


def holding_xml(holding_id: str, h: str, i: str | None = None) -> str:
    subfield_i: str = f'<subfield code="i">{i}</subfield>' if i is not None else ''
    return (
        f'<holding><holding_id>{holding_id}</holding_id><created_by>import</created_by>'
        '<record><leader>#####nx##a22#####1n#4500</leader>'
        f'<controlfield tag="001">{holding_id}</controlfield>'
        '<datafield ind1="0" ind2=" " tag="852"><subfield code="b">MAIN</subfield>'
        f'<subfield code="c">STACKS</subfield><subfield code="h">{h}</subfield>{subfield_i}</datafield>'
        '</record></holding>'
    )
