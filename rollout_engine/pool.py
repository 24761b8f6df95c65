import asyncio

from .logger import get_logger


class WorkerPool:
    """Runs coroutines with at most `limit` in flight.

    With cancel_on_error the first failure cancels every sibling, queued or
    running, and wait() re-raises that first failure.
    """

    def __init__(self, limit, cancel_on_error=True, name="pool"):
        self.limit = max(1, int(limit))
        self.cancel_on_error = cancel_on_error
        self.name = name
        self.logger = get_logger("pool")
        self._semaphore = asyncio.Semaphore(self.limit)
        self._tasks = []
        self._errors = []
        self._cancelled = False

    def go(self, func, *args, **kwargs):
        task = asyncio.create_task(self._run(func, *args, **kwargs))
        self._tasks.append(task)
        return task

    async def _run(self, func, *args, **kwargs):
        async with self._semaphore:
            if self._cancelled:
                return None
            try:
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._errors.append(e)
                if self.cancel_on_error:
                    self.cancel(current=asyncio.current_task())
                raise

    def cancel(self, current=None):
        if self._cancelled:
            return
        self._cancelled = True
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if pending:
            self.logger.debug(f"{self.name}: cancelling {len(pending)} sibling tasks")
        for task in pending:
            task.cancel()

    @property
    def errors(self):
        return list(self._errors)

    async def wait(self):
        """Wait for every task, then raise the first error if there was one"""
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self.cancel()
            raise
        if self._errors:
            raise self._errors[0]
        return results
