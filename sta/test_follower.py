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

import unittest
from pathlib import Path
from sta.config import AgePolicy, AnalyzerConfig, Rollup
from sta.errors import TraceFileError
from sta.follower import analyze, child_trace_path, split_trace_name
from sta.report import Diagnostics
from sta.test_cases import CORPUS
from sta.test_cases.helpers import TraceDirTestCase


PARENT = """
open("/tmp/a", O_RDWR) = 3
write(3, "0123456789", 10) = 10
clone(child_stack=NULL, flags=CLONE_CHILD_CLEARTID|SIGCHLD) = 42
wait4(-1, NULL, 0, NULL) = 42
+++ exited with 0 +++
"""

CHILD = """
read(3, "0123", 4) = 4
close(3) = 0
+++ exited with 0 +++
"""


class TestTraceNames(unittest.TestCase):
    def test_split(self):
        self.assertEqual(
            split_trace_name(Path('/t/cmd.strace.1234')),
            (Path('/t/cmd.strace'), 1234),
        )
        self.assertEqual(
            split_trace_name(Path('/t/cmd.strace')), (Path('/t/cmd.strace'), None)
        )

    def test_child(self):
        self.assertEqual(child_trace_path(Path('/t/cmd.7'), 8), Path('/t/cmd.8'))
        self.assertEqual(child_trace_path(Path('/t/cmd'), 8), Path('/t/cmd.8'))


class TestTwoProcesses(TraceDirTestCase):
    def setUp(self):
        super().setUp()
        self.write_trace('trace', PARENT)
        self.write_trace('trace.42', CHILD)

    def test_round_trip(self):
        report = self.analyze('trace')
        tmp = self.stats_by_path(report)['/tmp']
        self.assertEqual(tmp.modified_size_bytes, 10)
        self.assertEqual(tmp.accessed_size_bytes, 4)
        self.assertEqual(tmp.total_size_bytes, 10)
        d = report.diagnostics
        self.assertEqual(d.files_ingested, 2)
        self.assertEqual(d.processes_discovered, 1)
        self.assertEqual(d.processes_missing_trace, 0)
        self.assertEqual(d.lines_total, 8)
        self.assertEqual(d.lines_skipped, 2)
        self.assertTrue(report.complete)

    def test_parent_linkage(self):
        follower = self.follower('trace')
        follower.run()
        self.assertEqual(follower.processes.parent_of(42), 0)
        self.assertEqual(follower.processes[42].fds, {})

    def test_idempotent(self):
        follower = self.follower('trace')
        before = [
            (d.path, d.total_size_bytes, d.accessed_size_bytes)
            for d in follower.run().directories
        ]
        self.assertEqual(follower.ingest(self.dir / 'trace', 0), Diagnostics())
        self.assertEqual(
            follower.ingest(self.dir / '.' / 'trace.42', 42), Diagnostics()
        )
        after = [
            (d.path, d.total_size_bytes, d.accessed_size_bytes)
            for d in follower.report().directories
        ]
        self.assertEqual(before, after)

    def test_deterministic(self):
        first = self.analyze('trace', rollup=Rollup.ANCESTORS)
        second = self.analyze('trace', rollup=Rollup.ANCESTORS)
        self.assertEqual(
            [d.path for d in first.directories], ['/', '/tmp']
        )
        self.assertEqual(
            [(d.path, d.total_size_bytes) for d in first.directories],
            [(d.path, d.total_size_bytes) for d in second.directories],
        )

    def test_no_follow(self):
        report = self.analyze('trace', follow_children=False)
        tmp = self.stats_by_path(report)['/tmp']
        self.assertEqual(tmp.accessed_size_bytes, 0)
        self.assertEqual(report.diagnostics.files_ingested, 1)
        self.assertEqual(report.diagnostics.processes_discovered, 1)
        self.assertTrue(report.complete)

    def test_cancel(self):
        follower = self.follower('trace')
        follower.cancel()
        report = follower.run()
        self.assertTrue(report.cancelled)
        self.assertFalse(report.complete)
        self.assertEqual(report.diagnostics.files_ingested, 1)

    def test_analyze(self):
        report = analyze(self.dir / 'trace')
        self.assertEqual(len(report.directories), 1)


class TestTolerance(TraceDirTestCase):
    def test_malformed_line(self):
        self.write_trace(
            'trace',
            """
open("/tmp/a", O_WRONLY|O_CREAT, 0644) = 3
this is not a syscall
write(3, "abc", 3) = 3
""",
        )
        report = self.analyze('trace')
        self.assertEqual(report.diagnostics.lines_malformed, 1)
        self.assertEqual(self.stats_by_path(report)['/tmp'].total_size_bytes, 3)
        self.assertFalse(report.complete)

    def test_missing_child(self):
        self.write_trace('trace', PARENT)
        report = self.analyze('trace')
        self.assertGreaterEqual(report.diagnostics.processes_missing_trace, 1)
        self.assertEqual(
            self.stats_by_path(report)['/tmp'].modified_size_bytes, 10
        )
        self.assertFalse(report.complete)

    def test_missing_primary(self):
        with self.assertRaises(TraceFileError):
            self.analyze('nope')

    def test_unresolved(self):
        self.write_trace('trace', 'open("rel", O_RDONLY) = 3\n')
        report = self.analyze('trace')
        self.assertEqual(report.diagnostics.paths_unresolved, 1)
        self.assertEqual(report.directories, [])
        report = self.analyze('trace', initial_cwd='/w')
        self.assertEqual(report.diagnostics.paths_unresolved, 0)
        self.assertEqual([d.path for d in report.directories], ['/w'])

    def test_single_file(self):
        # strace -f writes all processes into one file
        self.write_trace(
            'trace',
            """
100 open("/tmp/a", O_RDWR) = 3
100 clone(child_stack=NULL, flags=SIGCHLD) = 101
101 read(3, "abcd", 4) = 4
100 write(3, "0123456789", 10) = 10
101 +++ exited with 0 +++
""",
        )
        report = self.analyze('trace')
        tmp = self.stats_by_path(report)['/tmp']
        self.assertEqual(tmp.accessed_size_bytes, 4)
        self.assertEqual(tmp.modified_size_bytes, 10)
        self.assertEqual(report.diagnostics.processes_missing_trace, 0)
        self.assertTrue(report.complete)

    def test_single_file_relative_paths(self):
        self.write_trace(
            'trace',
            """
100 open("out", O_WRONLY|O_CREAT, 0644) = 3
100 write(3, "ab", 2) = 2
100 clone(child_stack=NULL, flags=SIGCHLD) = 101
101 open("in", O_RDONLY) = 4
""",
        )
        follower = self.follower('trace', initial_cwd='/w')
        report = follower.run()
        self.assertEqual(report.diagnostics.paths_unresolved, 0)
        self.assertEqual([d.path for d in report.directories], ['/w'])
        self.assertEqual(follower.processes.root_pid, 100)
        self.assertEqual(follower.processes[101].cwd, '/w')

    def test_unknown_syscall_keeps_report_complete(self):
        self.write_trace(
            'trace',
            """
open("/tmp/a", O_RDONLY) = 3
ioctl(1, TCGETS
exit_group(0) = ? <unavailable>
""",
        )
        report = self.analyze('trace')
        self.assertEqual(report.diagnostics.lines_malformed, 0)
        self.assertEqual(report.diagnostics.lines_skipped, 1)
        self.assertTrue(report.complete)

    def test_relative_timestamps_of_children(self):
        self.write_trace(
            'trace',
            """
     0.100000 open("/tmp/a", O_RDWR) = 3
     0.200000 clone(child_stack=NULL, flags=SIGCHLD) = 42
""",
        )
        self.write_trace('trace.42', '     0.500000 write(3, "ab", 2) = 2\n')
        report = self.analyze('trace', age_policy=AgePolicy.RUN_START)
        tmp = self.stats_by_path(report)['/tmp']
        self.assertAlmostEqual(tmp.last_timestamp, 0.8)
        self.assertAlmostEqual(tmp.age.total_seconds(), 0.7)

    def test_pid_suffixed_primary(self):
        self.write_trace(
            'cmd.7',
            """
open("out", O_WRONLY|O_CREAT, 0644) = 3
clone(child_stack=NULL, flags=SIGCHLD) = 8
""",
        )
        self.write_trace('cmd.8', 'write(3, "ab", 2) = 2\n')
        follower = self.follower('cmd.7', initial_cwd='/w')
        report = follower.run()
        self.assertEqual(follower.root_pid, 7)
        self.assertEqual(self.stats_by_path(report)['/w'].modified_size_bytes, 2)
        self.assertEqual(report.diagnostics.files_ingested, 2)


class TestCorpus(unittest.TestCase):
    def analyze(self, **config):
        report = analyze(CORPUS / 'make.strace.2000', AnalyzerConfig(**config))
        return report, {d.path: d for d in report.directories}

    def test_sizes(self):
        report, stats = self.analyze()
        self.assertEqual(
            sorted(stats), ['/home/user/project', '/home/user/project/build']
        )
        project = stats['/home/user/project']
        self.assertEqual(project.total_size_bytes, 3492)
        self.assertEqual(project.accessed_size_bytes, 1444)
        self.assertEqual(project.modified_size_bytes, 3072)
        build = stats['/home/user/project/build']
        self.assertEqual(build.total_size_bytes, 25)
        self.assertEqual(build.accessed_size_bytes, 0)
        self.assertEqual(build.modified_size_bytes, 25)

    def test_diagnostics(self):
        report, _ = self.analyze()
        d = report.diagnostics
        self.assertEqual(d.lines_total, 39)
        self.assertEqual(d.lines_skipped, 4)
        self.assertEqual(d.lines_malformed, 0)
        self.assertEqual(d.processes_discovered, 2)
        self.assertEqual(d.processes_missing_trace, 0)
        self.assertEqual(d.paths_unresolved, 0)
        self.assertEqual(d.files_ingested, 3)
        self.assertTrue(report.complete)

    def test_first_event_age(self):
        _, stats = self.analyze()
        self.assertAlmostEqual(
            stats['/home/user/project'].age.total_seconds(), 0.7999, places=5
        )
        self.assertAlmostEqual(
            stats['/home/user/project/build'].age.total_seconds(),
            0.4996,
            places=5,
        )

    def test_run_start_age(self):
        _, stats = self.analyze(age_policy=AgePolicy.RUN_START)
        self.assertAlmostEqual(
            stats['/home/user/project'].age.total_seconds(), 0.8, places=5
        )
        self.assertAlmostEqual(
            stats['/home/user/project/build'].age.total_seconds(),
            0.5001,
            places=5,
        )

    def test_ancestors(self):
        _, stats = self.analyze(
            rollup=Rollup.ANCESTORS, rollup_boundary='/home/user'
        )
        self.assertEqual(
            sorted(stats),
            ['/home/user', '/home/user/project', '/home/user/project/build'],
        )
        self.assertEqual(stats['/home/user'].total_size_bytes, 3492 + 25)
        self.assertEqual(stats['/home/user/project'].total_size_bytes, 3517)


if __name__ == '__main__':
    unittest.main()
