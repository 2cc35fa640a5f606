"""
Bounded pool of worker processes over a shared work queue.

Workers are processes pulling items from one multiprocessing.Queue until
they consume their sentinel. Duplicate items are filtered through a seen
set shared by all workers and guarded by a multiprocessing.Lock. Results
travel back on a second queue and only the parent process hands them to
the sink, under the sink lock, so records from different workers never
interleave. The first error raised by a handler stops the other workers
from taking new items and is re-raised by run() once every worker has
been joined.

The handler is pickled to the workers, so it must be a module-level
function (or a functools.partial of one) whose bound arguments pickle.
With a single worker everything runs in the calling process.
"""
from __future__ import annotations

import logging
import multiprocessing as mp
import pickle
import queue
import threading
from typing import Callable, Generic, Hashable, Iterable, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)
R = TypeVar("R")

POLL_SECONDS = 0.5


class _Sentinel:
    pass


def _portable(error: BaseException) -> BaseException:
    """The error itself if it survives pickling, else a RuntimeError carrying its message."""
    try:
        pickle.loads(pickle.dumps(error))
    except Exception:
        return RuntimeError(f"{type(error).__name__}: {error}")
    return error


def _work(handler, tasks, results, seen, seen_lock, abort) -> None:
    while True:
        item = tasks.get()
        if isinstance(item, _Sentinel):
            break
        if abort.is_set():
            continue
        with seen_lock:
            duplicate = item in seen
            if not duplicate:
                seen[item] = True
        if duplicate:
            results.put(("duplicate", item, None))
            continue
        try:
            results.put(("done", item, handler(item)))
        except Exception as e:
            abort.set()
            results.put(("error", item, _portable(e)))
    results.put(("exit", None, None))


class WorkerPool(Generic[T, R]):

    def __init__(self, handler: Callable[[T], R], sink: Callable[[T, R], None],
                 workers: int = 1, on_done: Optional[Callable[[], None]] = None):
        if workers < 1:
            raise ValueError("Number of workers must be at least 1")
        self.handler = handler
        self.sink = sink
        self.workers = workers
        self.on_done = on_done
        self._sink_lock = threading.Lock()
        self._errors: List[BaseException] = []
        self.n_processed = 0
        self.n_duplicates = 0

    def _deliver(self, item: T, result: R) -> None:
        with self._sink_lock:
            self.sink(item, result)
            self.n_processed += 1
            if self.on_done is not None:
                self.on_done()

    def _fail(self, item, error: BaseException) -> None:
        self._errors.append(error)
        logger.error(f"Worker failed on {item}: {error}")

    def _run_inline(self, items: Iterable[T]) -> None:
        seen: Set[T] = set()
        for item in items:
            if item in seen:
                self.n_duplicates += 1
                continue
            seen.add(item)
            try:
                result = self.handler(item)
            except Exception as e:
                self._fail(item, e)
                return
            self._deliver(item, result)

    def _run_processes(self, items: Iterable[T]) -> None:
        ctx = mp.get_context()
        tasks = ctx.Queue()
        results = ctx.Queue()
        abort = ctx.Event()
        seen_lock = ctx.Lock()
        with ctx.Manager() as manager:
            seen = manager.dict()
            procs = [ctx.Process(target=_work, args=(self.handler, tasks, results, seen, seen_lock, abort),
                                 name=f"copyrighter-worker-{i}", daemon=True)
                     for i in range(self.workers)]
            for p in procs:
                p.start()
            for item in items:
                tasks.put(item)
            for _ in procs:
                tasks.put(_Sentinel())

            running = len(procs)
            while running:
                try:
                    kind, item, payload = results.get(timeout=POLL_SECONDS)
                except queue.Empty:
                    crashed = [p for p in procs if p.exitcode not in (None, 0)]
                    if crashed:
                        # its items and sentinel are never read
                        tasks.cancel_join_thread()
                        abort.set()
                        self._fail(None, RuntimeError(
                            f"{crashed[0].name} exited with code {crashed[0].exitcode}"))
                        break
                    continue
                if kind == "exit":
                    running -= 1
                elif kind == "duplicate":
                    self.n_duplicates += 1
                elif kind == "done":
                    self._deliver(item, payload)
                else:
                    abort.set()
                    self._fail(item, payload)
            for p in procs:
                p.join()

    def run(self, items: Iterable[T]) -> int:
        """Process all items, return how many were handled."""
        if self.workers == 1:
            self._run_inline(items)
        else:
            self._run_processes(items)
        if self._errors:
            raise self._errors[0]
        if self.n_duplicates:
            logger.debug(f"Ignored {self.n_duplicates} duplicate work items")
        return self.n_processed
