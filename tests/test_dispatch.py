import threading
import unittest

from alma_cancel import CancelScope
from alma_dispatch import Dispatcher, ItemError, OperationResult, run_jobs
from alma_errors import ThresholdReachedError


class TestRunJobs(unittest.TestCase):
    """
    Tests run_jobs() result and error aggregation.
    """

    def test_every_job_runs_once(self) -> None:
        """
        Checks that N items produce N job calls and N results, across several workers.
        """
        seen: list[int] = []
        lock = threading.Lock()

        def job(scope: CancelScope, item: int) -> int:
            with lock:
                seen.append(item)
            return item * 2

        result: OperationResult[int] = run_jobs(CancelScope(), range(50), job, 'doubling', workers=4, progress=False)
        self.assertEqual(sorted(seen), list(range(50)))
        self.assertEqual(sorted(result.results), [n * 2 for n in range(50)])
        self.assertTrue(result.ok)

    def test_failures_are_collected(self) -> None:
        """
        Checks that failing items are recorded by key while their siblings still succeed.
        """

        def job(scope: CancelScope, item: int) -> int:
            if item % 3 == 0:
                raise ValueError(f'bad item {item}')
            return item

        result: OperationResult[int] = run_jobs(
            CancelScope(), range(9), job, 'checking', key=lambda n: f'item-{n}', workers=3, progress=False
        )
        self.assertEqual(sorted(result.results), [1, 2, 4, 5, 7, 8])
        self.assertEqual(sorted(e.key for e in result.errors), ['item-0', 'item-3', 'item-6'])
        self.assertIsNone(result.fatal)

    def test_threshold_stops_remaining_items(self) -> None:
        """
        Checks that a threshold error fails the later items fast with the same error, leaving the parent scope active.
        """
        calls: list[int] = []
        breach = ThresholdReachedError(40, 50)

        def job(scope: CancelScope, item: int) -> int:
            calls.append(item)
            if item == 3:
                raise breach
            return item

        parent = CancelScope()
        result: OperationResult[int] = run_jobs(parent, range(10), job, 'stopping', workers=1, progress=False)
        self.assertEqual(calls, [0, 1, 2, 3])
        self.assertEqual(sorted(result.results), [0, 1, 2])
        self.assertEqual(len(result.errors), 7)
        self.assertTrue(all(e.error is breach for e in result.errors))
        self.assertIs(result.fatal, breach)
        self.assertFalse(parent.cancelled)

    def test_item_error_str(self) -> None:
        """
        Checks the operator-facing form of an item error.
        """
        self.assertEqual(str(ItemError('1234', ValueError('nope'))), '1234: nope')


class TestDispatcher(unittest.TestCase):
    """
    Tests the Dispatcher worker pool.
    """

    def test_close_waits_for_jobs(self) -> None:
        """
        Checks that every submitted job has finished once the with-block exits.
        """
        done: list[int] = []
        lock = threading.Lock()
        with Dispatcher(CancelScope(), 20, 'waiting', workers=3, progress=False) as dispatcher:
            for n in range(20):

                def job(n: int = n) -> None:
                    with lock:
                        done.append(n)

                dispatcher.submit(job)
        self.assertEqual(sorted(done), list(range(20)))

    def test_raw_job_crash_raised_on_close(self) -> None:
        """
        Checks that an exception escaping a raw job is logged and re-raised by close().
        """

        def boom() -> None:
            raise KeyError('boom')

        with self.assertLogs('alma_dispatch', level='ERROR'), self.assertRaises(KeyError):
            with Dispatcher(CancelScope(), 1, 'crashing', workers=2, progress=False) as dispatcher:
                dispatcher.submit(boom)

    def test_submit_after_close(self) -> None:
        """
        Checks that a closed dispatcher refuses new jobs.
        """
        dispatcher = Dispatcher(CancelScope(), 0, 'closed', workers=1, progress=False)
        dispatcher.close()
        with self.assertRaises(RuntimeError):
            dispatcher.submit(lambda: None)


if __name__ == '__main__':
    unittest.main()
