import threading
import time
from dataclasses import dataclass
from dataclasses import field

from vexgraph.models.statement import IngestionReport


@dataclass
class IngestStats:
    """Counters shared by the worker threads of one ingestion run."""
    documents: int = 0
    unchanged: int = 0
    statements: int = 0
    edges: int = 0
    packages: int = 0
    item_failures: int = 0
    failed: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record(self, report: IngestionReport):
        with self._lock:
            self.documents += 1
            if not report.changed:
                self.unchanged += 1
            self.statements += report.statements
            self.edges += report.edges
            self.packages += report.packages
            self.item_failures += len(report.failures)

    def inc_failed(self, count: int = 1):
        with self._lock:
            self.failed += count

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time
