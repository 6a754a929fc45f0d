"""
HTTP client for the Alma API.

Every outbound request goes through `AlmaClient.send()`, which:
- forces the scheme and host to the configured API server and adds the apikey header,
- retries connection failures with linear backoff inside a 30 second window per call,
- reads and closes each response body once, still inside that window,
- reports the `X-Exl-Api-Remaining` header to the shared budget,
- applies the Alma success convention (204 for DELETE, 200 for everything else).
"""

import logging
import time

import httpx

from alma_cancel import CancelScope, RemainingCallBudget
from alma_errors import APIStatusError, RequestTimeoutError

log = logging.getLogger(__name__)


## constants --------------------------------------------------------
DEFAULT_SERVER: str = 'api-ca.hosted.exlibrisgroup.com'
DEFAULT_THRESHOLD: int = 50000  # stop when the API reports this many calls (or fewer) remaining
REQUEST_TIMEOUT_S: float = 30.0  # per call, retries included
REMAINING_HEADER: str = 'X-Exl-Api-Remaining'


class AlmaClient:
    """
    Sends requests to one Alma API server with one API key.
    - Wraps a shared `httpx.Client`, which is safe to use from every worker thread.
    - Holds no cross-call state except the injected `RemainingCallBudget`.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        server: str = DEFAULT_SERVER,
        key: str = '',
        budget: RemainingCallBudget | None = None,
        request_timeout_s: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self.http_client: httpx.Client = http_client
        self.server: str = server
        self.key: str = key
        self.budget: RemainingCallBudget | None = budget
        self.request_timeout_s: float = request_timeout_s
        server_url: httpx.URL = httpx.URL(f'https://{server}')
        self.host: str = server_url.host
        self.port: int | None = server_url.port

    def build_url(self, url: str, params: dict[str, str] | None = None) -> httpx.URL:
        """
        Points `url` (a path, or a full link returned by the API) at the configured server over https.
        """
        target: httpx.URL = httpx.URL(url).copy_with(scheme='https', host=self.host, port=self.port)
        if params:
            target = target.copy_merge_params(params)
        return target

    def send(
        self,
        scope: CancelScope,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        """
        Sends one request and returns the response body.

        Raises the scope's cancellation error if the run is cancelled, RequestTimeoutError when the
        per-call window runs out, and APIStatusError for a non-success status (never retried).
        """
        method = method.upper()
        target: httpx.URL = self.build_url(url, params)
        request_headers: dict[str, str] = {
            'Authorization': f'apikey {self.key}',
            'Accept': 'application/xml',
        }
        if headers:
            request_headers.update(headers)
        deadline: float = time.monotonic() + self.request_timeout_s
        backoff: int = 0
        while True:
            scope.raise_if_cancelled()
            if backoff:
                _sleep(scope, min(backoff, max(0.0, deadline - time.monotonic())))
                scope.raise_if_cancelled()
            left: float = deadline - time.monotonic()
            if left <= 0:
                raise RequestTimeoutError(method, str(target), self.request_timeout_s)
            log.debug(f'{method} ``{target}``')
            try:
                with self.http_client.stream(
                    method, target, headers=request_headers, content=content, timeout=left
                ) as resp:
                    body: bytes = self._read_body(scope, resp, method, target, deadline)
            except httpx.TimeoutException as exc:
                log.debug(f'{method} {target} timed out, ``{exc!r}``')
                raise RequestTimeoutError(method, str(target), self.request_timeout_s) from exc
            except httpx.TransportError as exc:
                ## most likely a failure to reach the server; retry with linear backoff
                log.warning(f'ERROR: Call to API failed, {exc!r}.')
                backoff += 1
                log.warning(f'Retrying in {backoff} seconds...')
                continue
            self._report_remaining(resp)
            if not _is_success(method, resp.status_code):
                raise APIStatusError(method, str(target), resp.status_code, body.decode('utf-8', errors='replace'))
            return body

    def _read_body(
        self, scope: CancelScope, resp: httpx.Response, method: str, target: httpx.URL, deadline: float
    ) -> bytes:
        """
        Reads the streamed body chunk by chunk, so the call window and cancellation also bound a slow body.
        httpx timeouts only apply per socket operation.
        """
        chunks: list[bytes] = []
        for chunk in resp.iter_bytes():
            chunks.append(chunk)
            scope.raise_if_cancelled()
            if time.monotonic() > deadline:
                raise RequestTimeoutError(method, str(target), self.request_timeout_s)
        return b''.join(chunks)

    def _report_remaining(self, resp: httpx.Response) -> None:
        if self.budget is None:
            return
        raw: str | None = resp.headers.get(REMAINING_HEADER)
        if raw is None:
            return
        try:
            remaining: int = int(raw.strip())
        except ValueError:
            log.debug(f'ignoring unparseable {REMAINING_HEADER} header, ``{raw}``')
            return
        self.budget.report(remaining)

    def get(self, scope: CancelScope, url: str, params: dict[str, str] | None = None) -> bytes:
        return self.send(scope, 'GET', url, params=params)

    def post(self, scope: CancelScope, url: str, params: dict[str, str] | None = None) -> bytes:
        return self.send(scope, 'POST', url, params=params)

    def put_xml(self, scope: CancelScope, url: str, content: bytes) -> bytes:
        return self.send(scope, 'PUT', url, content=content, headers={'Content-Type': 'application/xml'})

    def delete(self, scope: CancelScope, url: str) -> bytes:
        return self.send(scope, 'DELETE', url)

    def check_api_and_key(self, scope: CancelScope, read_access: list[str], write_access: list[str]) -> None:
        """
        Ensures the API is reachable and the key has the permissions a subcommand needs.
        Alma exposes a `/test` resource under each area; GET checks read access, POST checks write access.
        Called by: alma_toolkit.run_subcommand()
        """
        for endpoint in read_access:
            self.get(scope, f'{endpoint}/test')
        for endpoint in write_access:
            self.post(scope, f'{endpoint}/test')


def _is_success(method: str, status_code: int) -> bool:
    """
    The Alma API returns 200 on success, except for a successful DELETE, which returns 204.
    """
    if method == 'DELETE':
        return status_code == 204
    return status_code == 200


def _sleep(scope: CancelScope, backoff_s: float) -> None:
    """
    Sleeps for given seconds, waking early on cancellation; centralizes sleep for easier tweaking.
    """
    scope.wait(backoff_s)
