import os
import unittest
from functools import partial

from copyrighter.errors import InvalidTraitValue
from copyrighter.workers import WorkerPool


def square(item):
    return item * item


def with_pid(item):
    return item, os.getpid()


def fail_on(bad, item):
    if item == bad:
        raise RuntimeError("bad item")
    return item


def reject_trait(item):
    raise InvalidTraitValue(str(item), -1.0)


class TestWorkerPool(unittest.TestCase):

    def test_processes_every_item_once(self):
        results = {}
        pool = WorkerPool(square, results.__setitem__, workers=3)
        n = pool.run([1, 2, 2, 3, 4, 4, 4])
        self.assertEqual(n, 4)
        self.assertEqual(results, {1: 1, 2: 4, 3: 9, 4: 16})
        self.assertEqual(pool.n_duplicates, 3)

    def test_single_worker_runs_inline(self):
        results = {}
        pool = WorkerPool(lambda item: item + 1, results.__setitem__)
        self.assertEqual(pool.run([1, 1, 5]), 2)
        self.assertEqual(results, {1: 2, 5: 6})
        self.assertEqual(pool.n_duplicates, 1)

    def test_items_are_handled_in_worker_processes(self):
        results = {}
        WorkerPool(with_pid, results.__setitem__, workers=2).run(range(20))
        self.assertEqual(sorted(results), list(range(20)))
        pids = {pid for _, pid in results.values()}
        self.assertNotIn(os.getpid(), pids)

    def test_sink_writes_do_not_interleave(self):
        out = []

        def sink(item, result):
            # two appends per record must stay adjacent
            out.append(("start", item))
            out.append(("end", item))

        done = []
        pool = WorkerPool(square, sink, workers=4, on_done=lambda: done.append(1))
        pool.run(range(50))
        self.assertEqual(len(out), 100)
        self.assertEqual(len(done), 50)
        for i in range(0, len(out), 2):
            self.assertEqual(out[i][1], out[i + 1][1])

    def test_error_is_raised_after_join(self):
        for workers in (1, 2):
            pool = WorkerPool(partial(fail_on, 3), lambda item, result: None, workers=workers)
            with self.assertLogs("copyrighter.workers", level="ERROR"):
                with self.assertRaises(RuntimeError):
                    pool.run(range(10))

    def test_pipeline_errors_keep_their_type(self):
        pool = WorkerPool(reject_trait, lambda item, result: None, workers=2)
        with self.assertLogs("copyrighter.workers", level="ERROR"):
            with self.assertRaises(InvalidTraitValue) as ctx:
                pool.run([7])
        self.assertEqual(ctx.exception.taxon, "7")
        self.assertEqual(ctx.exception.value, -1.0)

    def test_invalid_worker_count(self):
        with self.assertRaises(ValueError):
            WorkerPool(square, lambda item, result: None, workers=0)


if __name__ == "__main__":
    unittest.main()
