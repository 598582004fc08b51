"""Helper functions for test cases."""

import tempfile
import unittest
from pathlib import Path
from sta.config import AnalyzerConfig
from sta.follower import TraceFollower
from sta.report import Report
from sta.sta_types import TraceEvent


def event(
    syscall: str,
    *args: str,
    ret: int | None = 0,
    pid: int = 1,
    errno: str = None,
    timestamp: float = None,
    decorations: tuple = None,
) -> TraceEvent:
    """Build an event as if the parser produced it."""
    return TraceEvent(
        pid=pid,
        syscall=syscall,
        args=args,
        ret=ret,
        errno=errno,
        timestamp=timestamp,
        decorations=(
            decorations if decorations is not None else (None,) * len(args)
        ),
    )


class TraceDirTestCase(unittest.TestCase):
    """Test case with a temporary directory for trace files."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def write_trace(self, name: str, text: str) -> Path:
        path = self.dir / name
        path.write_text(text.lstrip('\n'))
        return path

    def follower(self, name: str, **config) -> TraceFollower:
        return TraceFollower(self.dir / name, AnalyzerConfig(**config))

    def analyze(self, name: str, **config) -> Report:
        return self.follower(name, **config).run()

    def stats_by_path(self, report: Report) -> dict:
        return {d.path: d for d in report.directories}
