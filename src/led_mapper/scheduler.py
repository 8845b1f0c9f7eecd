"""
Scheduling primitives shared by the photographer.

SchedulerContext owns everything that used to be process-global state:
the two worker pools, the ledger of in-flight shared tasks, and the set of
outstanding background work the run has to wait for before it finishes.
It is created once per run and passed down explicitly.
"""
import os
import signal
import asyncio
import logging
from concurrent.futures import ProcessPoolExecutor


def _ignore_interrupts():
    """Workers leave Ctrl-C handling to the main process."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)


class TaskLedger:
    """
    Single-flight table of in-flight tasks keyed by name.

    The first caller for a key starts the work; every caller that arrives
    while it is still running awaits the same future instead of redoing it.
    Keys are dropped as soon as the work finishes, so a later call after a
    failure starts over.
    """

    def __init__(self):
        self._inflight = {}

    def __contains__(self, key):
        return key in self._inflight

    def __len__(self):
        return len(self._inflight)

    async def run(self, key, factory):
        """
        Await the shared result for key.

        Args:
            key: Hashable task name, e.g. ("pgm", 3).
            factory: Zero-argument callable returning a coroutine. Only called
                if no task for key is in flight.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        else:
            logging.debug("Joining in-flight task %s", key)
        # One waiter being cancelled must not cancel the shared work
        return await asyncio.shield(task)


class PendingWork:
    """
    Join barrier for fire-and-forget background work.

    The first failure is kept so that the caller can stop scheduling new
    work and re-raise it from the main sequence.
    """

    def __init__(self):
        self._tasks = set()
        self.error = None

    def __len__(self):
        return len(self._tasks)

    def spawn(self, coro, name=None):
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self.error is None:
            logging.error("Background task %s failed: %s", task.get_name(), exc)
            self.error = exc

    def raise_if_failed(self):
        if self.error is not None:
            raise self.error

    async def join(self):
        """Wait until every spawned task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.raise_if_failed()

    async def cancel(self):
        """Cancel everything still outstanding and wait for it to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class SchedulerContext:
    """
    Worker pools plus in-flight bookkeeping for one run.

    The fast pool handles small images whose results unblock scheduling
    decisions (thumbnails, peak differences, moments). The slow pool handles
    full-resolution raw processing (dark frame extraction and background
    subtraction), so that it can't starve the fast tier.
    """

    def __init__(self, concurrency=None, fast_pool=None, slow_pool=None):
        concurrency = concurrency or os.cpu_count() or 1
        self.fast_pool = fast_pool or ProcessPoolExecutor(
            max_workers=concurrency, initializer=_ignore_interrupts)
        self.slow_pool = slow_pool or ProcessPoolExecutor(
            max_workers=concurrency, initializer=_ignore_interrupts)
        self.ledger = TaskLedger()
        self.pending = PendingWork()

    async def run_fast(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.fast_pool, fn, *args)

    async def run_slow(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.slow_pool, fn, *args)

    def shutdown(self, wait=True):
        self.fast_pool.shutdown(wait=wait, cancel_futures=not wait)
        self.slow_pool.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=exc_type is None)
