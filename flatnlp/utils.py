import os
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator


@contextmanager
def profiled(enabled: bool, identifier: str, directory: str = "profiling") -> Iterator[None]:
    """Profile the enclosed block with cProfile when ``enabled``.

    Stats are dumped to ``<directory>/<timestamp>_<identifier>.prof`` so they
    can be visualized with snakeviz.
    """
    if not enabled:
        yield
        return

    import cProfile

    pr = cProfile.Profile()
    pr.enable()
    try:
        yield
    finally:
        pr.disable()
        os.makedirs(directory, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        pr.dump_stats(os.path.join(directory, f"{timestamp}_{identifier}.prof"))


class StageTimer:
    """Wall-clock time per pipeline stage, in seconds."""

    def __init__(self):
        self.times: Dict[str, float] = {}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.times[name] = time.perf_counter() - start

    @property
    def total(self) -> float:
        return sum(self.times.values())
