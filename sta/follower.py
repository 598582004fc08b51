#  Copyright (C) 2023 Roderik Ploszek
#
#  This program is free software: you can redistribute it and/or modify
#  it under the terms of the GNU General Public License as published by
#  the Free Software Foundation, either version 3 of the License, or
#  (at your option) any later version.
#
#  This program is distributed in the hope that it will be useful,
#  but WITHOUT ANY WARRANTY; without even the implied warranty of
#  MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#  GNU General Public License for more details.
#
#  You should have received a copy of the GNU General Public License
#  along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Ingestion of the trace files of a whole process tree.

`strace -ff -o NAME` writes the syscalls of process PID to `NAME.PID`. The
follower starts with the primary file and reads the files of children named
by clone syscalls, breadth-first in the order the clones were seen.
"""

import logging
import re
from collections import deque
from pathlib import Path
from sta.classifier import AccessClassifier
from sta.config import AnalyzerConfig
from sta.errors import MissingChildTrace, TraceFileError
from sta.parser import RecordParser
from sta.process import ProcessTable
from sta.report import Diagnostics, Report
from sta.sta_types import Malformed, Parsed, Pending, Skipped, TraceEvent
from sta.tree import DirectoryTree


logger = logging.getLogger(__name__)

PID_SUFFIX = re.compile(r'^(?P<stem>.+)\.(?P<pid>\d+)$')

ROOT_PID = 0
"""Pid of lines without a pid prefix in a primary file whose name doesn't
contain one."""

MALFORMED_WARNINGS = 5
"""How many malformed lines of a single file are logged as warnings. The rest
is logged on debug level."""


def split_trace_name(path: Path) -> tuple[Path, int | None]:
    """Split `cmd.strace.1234` into `(cmd.strace, 1234)`.

    :returns: Path without the pid suffix and the pid, or the unchanged path
    and `None` if the name has no pid suffix.
    """
    if (m := PID_SUFFIX.match(path.name)) is None:
        return path, None
    return path.with_name(m['stem']), int(m['pid'])


def child_trace_path(primary: Path, pid: int) -> Path:
    stem, _ = split_trace_name(Path(primary))
    return stem.with_name(f'{stem.name}.{pid}')


class TraceFollower:
    """Runs the whole analysis of one process tree.

    All trace files share one process table, one classifier and one directory
    tree. Files are read one at a time, so there's always a single writer.
    """

    def __init__(self, primary, config: AnalyzerConfig = None):
        self.config = config if config is not None else AnalyzerConfig()
        self.primary = Path(primary)
        _, suffix_pid = split_trace_name(self.primary)
        # Without a pid in the name the first process seen in the trace is
        # the root, e.g. `100` of `strace -f` lines prefixed with pids
        self.root_pid = suffix_pid if suffix_pid is not None else ROOT_PID
        self.processes = ProcessTable(suffix_pid, self.config.initial_cwd)
        self.classifier = AccessClassifier()
        self.tree = DirectoryTree(
            self.config.rollup,
            self.config.rollup_boundary,
            self.config.age_policy,
        )
        self.diagnostics = Diagnostics()
        self.ingested: set[Path] = set()
        self.discovered: set[int] = {self.root_pid}
        # Processes whose syscalls were seen in some file, e.g. when the
        # trace was written with `-f` instead of `-ff`
        self.traced: set[int] = set()
        self.queue: deque[int] = deque()
        # child pid -> timestamp of its clone, start of its relative clock
        self.clone_times: dict[int, float] = {}
        self._cancelled = False

    def trace_path(self, pid: int) -> Path:
        return child_trace_path(self.primary, pid)

    def cancel(self):
        """Stop the run before the next trace file."""
        self._cancelled = True

    def run(self) -> Report:
        """Ingest the primary file and the files of all discovered children.

        :raises TraceFileError: The primary file can't be read.
        """
        try:
            self.diagnostics.merge(self.ingest(self.primary, self.root_pid))
        except OSError as e:
            raise TraceFileError(self.primary, e) from e

        while self.queue:
            if self._cancelled:
                logger.warning(
                    'Cancelled with %d trace files left', len(self.queue)
                )
                break
            pid = self.queue.popleft()
            if pid in self.traced:
                continue
            path = self.trace_path(pid)
            try:
                self.diagnostics.merge(self.ingest(path, pid))
            except OSError as e:
                error = MissingChildTrace(pid, path)
                logger.warning('%s (%s)', error, e.strerror)
                self.diagnostics.processes_missing_trace += 1

        return self.report()

    def report(self) -> Report:
        return Report(
            directories=self.tree.report(),
            diagnostics=self.diagnostics,
            tree=self.tree,
            cancelled=self._cancelled and bool(self.queue),
        )

    def ingest(self, path, pid: int) -> Diagnostics:
        """Read one trace file.

        Reading the same file again does nothing.

        :param pid: Process of lines that don't carry a pid.
        :returns: Diagnostics of this file only.
        :raises OSError: The file can't be opened.
        """
        path = Path(path)
        key = path.resolve()
        diagnostics = Diagnostics()
        if key in self.ingested:
            logger.info('Skipping already ingested %s', path)
            return diagnostics

        parser = RecordParser(
            pid,
            self.config.timestamp_format,
            self.clone_times.get(pid, 0.0),
        )
        with open(path, encoding='utf-8', errors='surrogateescape') as f:
            self.ingested.add(key)
            logger.info('Ingesting %s (process %d)', path, pid)
            for line in f:
                diagnostics.lines_total += 1
                match parser.parse_line(line):
                    case Parsed(event=event):
                        self._handle(event, diagnostics)
                    case Skipped():
                        diagnostics.lines_skipped += 1
                    case Malformed(line=text, reason=reason):
                        diagnostics.lines_malformed += 1
                        log = (
                            logger.warning
                            if diagnostics.lines_malformed
                            <= MALFORMED_WARNINGS
                            else logger.debug
                        )
                        log(
                            '%s:%d: malformed line (%s): %s',
                            path,
                            diagnostics.lines_total,
                            reason,
                            text,
                        )
                    case Pending():
                        pass

        for pending_pid, syscall in parser.pending:
            logger.debug(
                '%s of process %d never resumed in %s',
                syscall,
                pending_pid,
                path,
            )
        diagnostics.files_ingested += 1
        logger.info(
            'Finished %s: %d lines, %d skipped, %d malformed',
            path,
            diagnostics.lines_total,
            diagnostics.lines_skipped,
            diagnostics.lines_malformed,
        )
        return diagnostics

    def _handle(self, event: TraceEvent, diagnostics: Diagnostics):
        self.traced.add(event.pid)
        self.tree.observe(event.timestamp)
        effects = self.processes.apply(event)
        if effects.unresolved:
            diagnostics.paths_unresolved += 1
        if effects.child is not None:
            if event.timestamp is not None:
                self.clone_times.setdefault(effects.child, event.timestamp)
            self.discover(effects.child, diagnostics)
        self.tree.load(self.classifier.classify(event, effects))

    def discover(self, pid: int, diagnostics: Diagnostics):
        """Schedule trace file of a new child process. Discovering the same
        process again does nothing."""
        if pid in self.discovered:
            return
        self.discovered.add(pid)
        diagnostics.processes_discovered += 1
        if self.config.follow_children:
            self.queue.append(pid)


def analyze(primary, config: AnalyzerConfig = None) -> Report:
    """Analyze the process tree traced into `primary` and its siblings."""
    return TraceFollower(primary, config).run()
