import time
import unittest
from collections.abc import Iterator
from unittest import mock

import httpx

import alma_client
from alma_cancel import CancelScope, RemainingCallBudget, RunMonitor
from alma_client import AlmaClient, _is_success
from alma_errors import APIStatusError, RequestCancelledError, RequestTimeoutError, ThresholdReachedError
from fake_alma import SERVER, FakeAlma


class TestSuccessConvention(unittest.TestCase):
    """
    Tests the status codes that count as success per method.
    """

    def test_status_grid(self) -> None:
        """
        Checks that DELETE succeeds only on 204, and every other method only on 200.
        """
        cases: list[tuple[str, int, bool]] = [
            ('GET', 200, True),
            ('GET', 204, False),
            ('POST', 200, True),
            ('POST', 201, False),
            ('PUT', 200, True),
            ('PUT', 400, False),
            ('DELETE', 204, True),
            ('DELETE', 200, False),
            ('DELETE', 404, False),
        ]
        for method, status, expected in cases:
            with self.subTest(method=method, status=status):
                self.assertEqual(_is_success(method, status), expected)

    def test_non_success_raises_with_body(self) -> None:
        """
        Checks that a non-success status raises APIStatusError carrying the status and body, without a retry.
        """
        fake = FakeAlma()
        fake.route('GET', '/almaws/v1/conf/sets/1', '<web_service_result>bad</web_service_result>', status=400)
        client: AlmaClient = fake.client()
        with self.assertRaises(APIStatusError) as ctx:
            client.get(CancelScope(), '/almaws/v1/conf/sets/1')
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn('bad', ctx.exception.body)
        self.assertEqual(len(fake.requests), 1)


class TestAlmaClient(unittest.TestCase):
    """
    Tests request building, retries, and cancellation in AlmaClient.send().
    """

    def test_auth_header_and_forced_host(self) -> None:
        """
        Checks that links from other hosts are sent to the configured server over https with the apikey header.
        """
        fake = FakeAlma()
        fake.route('GET', '/almaws/v1/bibs/99/holdings', '<holdings/>')
        client: AlmaClient = fake.client()
        body: bytes = client.get(CancelScope(), 'http://elsewhere.example.org/almaws/v1/bibs/99/holdings', {'limit': '5'})
        self.assertEqual(body, b'<holdings/>')
        sent: httpx.Request = fake.requests[0]
        self.assertEqual(sent.url.scheme, 'https')
        self.assertEqual(sent.url.host, SERVER)
        self.assertEqual(sent.url.params['limit'], '5')
        self.assertEqual(sent.headers['Authorization'], 'apikey test-key')
        self.assertEqual(sent.headers['Accept'], 'application/xml')

    def test_cancelled_scope_sends_nothing(self) -> None:
        """
        Checks that a call on a cancelled scope raises the cancellation cause and never reaches the server.
        """
        fake = FakeAlma()
        fake.route('GET', '/almaws/v1/conf/test')
        scope = CancelScope()
        scope.cancel(RequestCancelledError('stop'))
        with self.assertRaises(RequestCancelledError):
            fake.client().get(scope, '/almaws/v1/conf/test')
        self.assertEqual(fake.requests, [])

    def test_retries_with_linear_backoff(self) -> None:
        """
        Checks that K connection failures lead to waits of 1..K seconds and K+1 attempts.
        """
        failures: int = 3
        attempts: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) <= failures:
                raise httpx.ConnectError('connection refused', request=request)
            return httpx.Response(200, content=b'<ok/>')

        client = AlmaClient(httpx.Client(transport=httpx.MockTransport(handler)), server=SERVER, key='k')
        with mock.patch.object(alma_client, '_sleep') as sleep, self.assertLogs('alma_client', level='WARNING'):
            body: bytes = client.get(CancelScope(), '/almaws/v1/conf/test')
        self.assertEqual(body, b'<ok/>')
        self.assertEqual(len(attempts), failures + 1)
        self.assertEqual([c.args[1] for c in sleep.call_args_list], [1, 2, 3])

    def test_retry_window_runs_out(self) -> None:
        """
        Checks that a server that never answers ends in RequestTimeoutError once the call window is spent.
        """

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        client = AlmaClient(
            httpx.Client(transport=httpx.MockTransport(handler)), server=SERVER, key='k', request_timeout_s=0.05
        )
        with mock.patch.object(alma_client, '_sleep', lambda scope, s: scope.wait(s)), self.assertLogs(
            'alma_client', level='WARNING'
        ):
            with self.assertRaises(RequestTimeoutError):
                client.get(CancelScope(), '/almaws/v1/conf/test')

    def test_slow_body_bounded_by_window(self) -> None:
        """
        Checks that a body trickling in past the call window ends in RequestTimeoutError, not a late success.
        """
        sent: list[int] = []

        def trickle() -> Iterator[bytes]:
            for _ in range(10):
                sent.append(1)
                time.sleep(0.1)
                yield b'x'

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=trickle())

        client = AlmaClient(
            httpx.Client(transport=httpx.MockTransport(handler)), server=SERVER, key='k', request_timeout_s=0.25
        )
        start: float = time.monotonic()
        with self.assertRaises(RequestTimeoutError):
            client.get(CancelScope(), '/almaws/v1/conf/test')
        self.assertLess(time.monotonic() - start, 0.8)
        self.assertLess(len(sent), 10)

    def test_cancel_stops_body_read(self) -> None:
        """
        Checks that cancelling the scope while a body is still arriving stops the read with the cancellation cause.
        """
        scope = CancelScope()
        sent: list[int] = []

        def chunks() -> Iterator[bytes]:
            for n in range(5):
                sent.append(n)
                if n == 1:
                    scope.cancel(RequestCancelledError('stop'))
                yield b'x'

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=chunks())

        client = AlmaClient(httpx.Client(transport=httpx.MockTransport(handler)), server=SERVER, key='k')
        with self.assertRaises(RequestCancelledError) as ctx:
            client.get(scope, '/almaws/v1/conf/test')
        self.assertEqual(str(ctx.exception), 'stop')
        self.assertEqual(sent, [0, 1])

    def test_malformed_remaining_header_ignored(self) -> None:
        """
        Checks that an unparseable remaining-calls header leaves the budget untouched.
        """

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b'<ok/>', headers={alma_client.REMAINING_HEADER: 'lots'})

        budget = RemainingCallBudget(50)
        client = AlmaClient(httpx.Client(transport=httpx.MockTransport(handler)), server=SERVER, budget=budget)
        self.assertEqual(client.get(CancelScope(), '/almaws/v1/conf/test'), b'<ok/>')
        self.assertIsNone(budget.remaining)

    def test_threshold_cancels_once(self) -> None:
        """
        Checks that the call crossing the threshold still returns, and the next call raises ThresholdReachedError.
        """
        fake = FakeAlma(remaining=10)
        fake.route('GET', '/almaws/v1/conf/test', '<ok/>')
        with RunMonitor(50, handle_signals=False) as monitor, self.assertLogs('alma_cancel', level='ERROR') as logs:
            client: AlmaClient = fake.client(budget=monitor.budget)
            self.assertEqual(client.get(monitor.scope, '/almaws/v1/conf/test'), b'<ok/>')
            self.assertFalse(monitor.active)
            with self.assertRaises(ThresholdReachedError):
                client.get(monitor.scope, '/almaws/v1/conf/test')
        self.assertEqual(len(fake.requests), 1)
        self.assertEqual(len(logs.records), 1)
        self.assertIsInstance(monitor.scope.cause, ThresholdReachedError)

    def test_check_api_and_key(self) -> None:
        """
        Checks that read access is tested with GET and write access with POST.
        """
        fake = FakeAlma()
        fake.allow_api_test()
        fake.client().check_api_and_key(CancelScope(), ['/almaws/v1/conf'], ['/almaws/v1/bibs'])
        self.assertEqual(len(fake.calls('GET', '/almaws/v1/conf/test')), 1)
        self.assertEqual(len(fake.calls('POST', '/almaws/v1/bibs/test')), 1)

    def test_check_api_and_key_without_write_access(self) -> None:
        """
        Checks that a key without write access fails the check.
        """
        fake = FakeAlma()
        fake.route('GET', '/almaws/v1/conf/test')
        fake.route('POST', '/almaws/v1/bibs/test', status=401)
        with self.assertRaises(APIStatusError):
            fake.client().check_api_and_key(CancelScope(), ['/almaws/v1/conf'], ['/almaws/v1/bibs'])


class TestCancelScope(unittest.TestCase):
    """
    Tests CancelScope and RemainingCallBudget.
    """

    def test_cancel_flows_down_not_up(self) -> None:
        """
        Checks that cancelling a child leaves the parent active, and cancelling the parent reaches the child.
        """
        parent = CancelScope()
        first = parent.child()
        first.cancel(RequestCancelledError('first'))
        self.assertTrue(first.cancelled)
        self.assertFalse(parent.cancelled)
        second = parent.child()
        parent.cancel(RequestCancelledError('parent'))
        self.assertTrue(second.cancelled)
        self.assertEqual(str(first.cause), 'first')

    def test_first_cause_wins(self) -> None:
        """
        Checks that cancel() is idempotent and keeps the first cause.
        """
        scope = CancelScope()
        self.assertTrue(scope.cancel(RequestCancelledError('one')))
        self.assertFalse(scope.cancel(RequestCancelledError('two')))
        self.assertEqual(str(scope.cause), 'one')

    def test_budget_trips_once(self) -> None:
        """
        Checks that the threshold callback runs once, even when later reports stay below the threshold.
        """
        callback = mock.Mock()
        budget = RemainingCallBudget(100, on_threshold=callback)
        self.assertIsNone(budget.report(500))
        self.assertIsInstance(budget.report(100), ThresholdReachedError)
        self.assertIsNone(budget.report(20))
        callback.assert_called_once()
        self.assertEqual(budget.remaining, 20)


if __name__ == '__main__':
    unittest.main()
