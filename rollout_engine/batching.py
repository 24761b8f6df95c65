from .logger import get_logger


class BatchAllocator:
    """Splits an ordered job list into sequential batches of near-equal size.

    With solo_first the first job gets a batch of its own. The remaining jobs
    are spread over group_count batches, earlier batches taking one extra job
    each until the remainder is used up. Empty batches are never produced.
    """

    def __init__(self, total, group_count, solo_first=False):
        if total < 0:
            raise ValueError("total must be >= 0")
        if group_count < 1:
            raise ValueError("group_count must be > 0")

        self.total = total
        self.group_count = group_count
        self.solo_first = solo_first
        self._sizes = self._plan_sizes()
        self._current = []
        self._index = 0
        self._added = 0

    def _plan_sizes(self):
        sizes = []
        remaining = self.total
        if self.solo_first and remaining > 0:
            sizes.append(1)
            remaining -= 1
        groups = min(self.group_count, remaining)
        if groups:
            base, extra = divmod(remaining, groups)
            sizes.extend(base + 1 if i < extra else base for i in range(groups))
        return sizes

    def batch_sizes(self):
        return list(self._sizes)

    def add(self, job):
        """Add the next job; returns (ready, batch) where batch is set once ready"""
        if self._added >= self.total:
            raise ValueError(f"more jobs added than the {self.total} allocated")
        self._added += 1
        self._current.append(job)
        if len(self._current) < self._sizes[self._index]:
            return False, None
        batch, self._current = self._current, []
        self._index += 1
        return True, batch


def allocate(jobs, group_count, solo_first=False):
    """All batches for jobs, in order"""
    jobs = list(jobs)
    allocator = BatchAllocator(len(jobs), group_count, solo_first)
    batches = []
    for job in jobs:
        ready, batch = allocator.add(job)
        if ready:
            batches.append(batch)
    get_logger("batching").debug(f"allocated {len(jobs)} jobs into batches {allocator.batch_sizes()}")
    return batches
