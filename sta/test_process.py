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
from sta.process import ProcessTable, parse_flags
from sta.sta_types import ResolvedPath
from sta.test_cases.helpers import event


class TestDescriptors(unittest.TestCase):
    def setUp(self):
        self.table = ProcessTable(1, '/home/user')

    def test_open_close(self):
        effects = self.table.apply(event('open', '"/tmp/a"', 'O_RDWR', ret=3))
        self.assertEqual(effects.paths, (ResolvedPath('/tmp/a'),))
        self.assertEqual(self.table[1].fds, {3: ResolvedPath('/tmp/a')})
        self.table.apply(event('close', '3'))
        self.assertEqual(self.table[1].fds, {})
        # Duplicate close and close of unknown descriptors are fine
        self.table.apply(event('close', '3'))
        self.table.apply(event('close', '42'))
        self.assertEqual(self.table[1].fds, {})

    def test_failed_open(self):
        effects = self.table.apply(
            event('open', '"/tmp/a"', 'O_RDONLY', ret=-1, errno='ENOENT')
        )
        self.assertEqual(effects.paths, ())
        self.assertEqual(self.table[1].fds, {})

    def test_relative_paths(self):
        self.table.apply(event('open', '"a/../b"', 'O_RDONLY', ret=3))
        self.assertEqual(self.table[1].fds[3].path, '/home/user/b')
        self.table.apply(event('chdir', '"/srv"'))
        self.table.apply(
            event('openat', 'AT_FDCWD', '"c"', 'O_RDONLY|O_DIRECTORY', ret=4)
        )
        self.assertEqual(self.table[1].fds[4], ResolvedPath('/srv/c', True))
        self.table.apply(event('openat', '4', '"d"', 'O_RDONLY', ret=5))
        self.assertEqual(self.table[1].fds[5].path, '/srv/c/d')
        self.table.apply(event('fchdir', '4'))
        self.assertEqual(self.table[1].cwd, '/srv/c')

    def test_unresolved(self):
        table = ProcessTable(1)
        effects = table.apply(event('open', '"a"', 'O_RDONLY', ret=3))
        self.assertTrue(effects.unresolved)
        self.assertEqual(table[1].fds, {})
        effects = table.apply(event('openat', '7', '"a"', 'O_RDONLY', ret=3))
        self.assertTrue(effects.unresolved)
        self.assertIsNone(table[1].cwd)

    def test_annotations(self):
        table = ProcessTable(1)
        table.apply(
            event(
                'openat',
                'AT_FDCWD',
                '"a"',
                'O_RDONLY',
                ret=3,
                decorations=('/home/u', None, None),
            )
        )
        self.assertEqual(table[1].cwd, '/home/u')
        self.assertEqual(table[1].fds[3].path, '/home/u/a')
        effects = table.apply(
            event('read', '9', '""', '4', ret=4, decorations=('/x/y', None, None))
        )
        self.assertEqual(effects.paths, (ResolvedPath('/x/y'),))
        self.assertEqual(table[1].fds[9].path, '/x/y')

    def test_dup(self):
        self.table.apply(event('open', '"/tmp/a"', 'O_RDONLY', ret=3))
        self.table.apply(event('dup', '3', ret=4))
        self.table.apply(event('dup2', '3', '7', ret=7))
        self.table.apply(event('fcntl', '3', 'F_DUPFD', '10', ret=10))
        fds = self.table[1].fds
        self.assertEqual(fds[4], fds[3])
        self.assertEqual(fds[7], fds[3])
        self.assertEqual(fds[10], fds[3])
        # Duplicating an unknown descriptor forgets the target
        self.table.apply(event('dup2', '42', '7', ret=7))
        self.assertNotIn(7, fds)

    def test_cloexec(self):
        self.table.apply(event('open', '"/a"', 'O_RDONLY|O_CLOEXEC', ret=3))
        self.table.apply(event('open', '"/b"', 'O_RDONLY', ret=4))
        self.table.apply(event('fcntl', '4', 'F_DUPFD_CLOEXEC', '0', ret=5))
        self.table.apply(event('dup3', '4', '6', 'O_CLOEXEC', ret=6))
        self.table.apply(event('open', '"/c"', 'O_RDONLY', ret=7))
        self.table.apply(event('fcntl', '7', 'F_SETFD', 'FD_CLOEXEC'))
        self.table.apply(
            event('execve', '"/bin/true"', '["true"]', '0x1 /* 1 var */')
        )
        self.assertEqual(self.table[1].fds, {4: ResolvedPath('/b')})

    def test_failed_exec_keeps_descriptors(self):
        self.table.apply(event('open', '"/a"', 'O_RDONLY|O_CLOEXEC', ret=3))
        self.table.apply(
            event('execve', '"/nope"', '[]', '0x1', ret=-1, errno='ENOENT')
        )
        self.assertIn(3, self.table[1].fds)

    def test_rename_moves_descriptors(self):
        self.table.apply(event('open', '"/d/f"', 'O_WRONLY', ret=3))
        effects = self.table.apply(event('rename', '"/d"', '"/e"'))
        self.assertEqual(
            effects.paths, (ResolvedPath('/d'), ResolvedPath('/e'))
        )
        self.assertEqual(self.table[1].fds[3].path, '/e/f')

    def test_unlinkat(self):
        effects = self.table.apply(
            event('unlinkat', 'AT_FDCWD', '"tmp"', 'AT_REMOVEDIR')
        )
        self.assertEqual(effects.paths, (ResolvedPath('/home/user/tmp', True),))

    def test_parse_flags(self):
        self.assertEqual(
            parse_flags('O_RDONLY|O_CLOEXEC'), {'O_RDONLY', 'O_CLOEXEC'}
        )
        self.assertEqual(
            parse_flags('{flags=O_WRONLY|O_CREAT, mode=0644, resolve=0}'),
            {'O_WRONLY', 'O_CREAT'},
        )


class TestProcesses(unittest.TestCase):
    def setUp(self):
        self.table = ProcessTable(1, '/work')
        self.table.apply(event('open', '"/tmp/a"', 'O_RDONLY', ret=3))
        self.table.apply(event('open', '"/tmp/b"', 'O_RDONLY', ret=4))

    def test_fork_copies_state(self):
        effects = self.table.apply(event('clone', 'child_stack=NULL', ret=2))
        self.assertEqual(effects.child, 2)
        parent, child = self.table[1], self.table[2]
        self.assertEqual(child.fds, parent.fds)
        self.assertEqual(child.cwd, '/work')
        self.assertEqual(self.table.parent_of(2), 1)
        self.assertEqual(child.parent, 1)

        snapshot = dict(parent.fds)
        self.table.apply(event('close', '3', pid=2))
        self.table.apply(event('open', '"/tmp/c"', 'O_RDONLY', ret=5, pid=2))
        self.table.apply(event('chdir', '"/elsewhere"', pid=2))
        self.assertEqual(parent.fds, snapshot)
        self.assertEqual(parent.cwd, '/work')

        self.table.apply(event('close', '4'))
        self.table.apply(event('open', '"/tmp/d"', 'O_RDONLY', ret=3))
        self.assertEqual(
            child.fds, {4: ResolvedPath('/tmp/b'), 5: ResolvedPath('/tmp/c')}
        )

    def test_child_side_of_clone(self):
        effects = self.table.apply(event('fork', ret=0))
        self.assertIsNone(effects.child)
        self.assertEqual(list(self.table.processes), [1])

    def test_unknown_process(self):
        process = self.table.get(77)
        self.assertEqual(process.fds, {})
        self.assertIsNone(process.cwd)
        self.assertIsNone(self.table.parent_of(77))

    def test_first_process_is_root(self):
        table = ProcessTable(initial_cwd='/r')
        self.assertEqual(table.get(5).cwd, '/r')
        self.assertIsNone(table.get(6).cwd)

    def test_child_seen_before_clone(self):
        self.table.apply(event('open', '"/tmp/x"', 'O_RDONLY', ret=4, pid=2))
        self.table.apply(event('vfork', ret=2))
        child = self.table[2]
        self.assertEqual(child.fds[3].path, '/tmp/a')
        self.assertEqual(child.fds[4].path, '/tmp/x')
        self.assertEqual(child.cwd, '/work')
        self.assertEqual(self.table.parent_of(2), 1)


if __name__ == '__main__':
    unittest.main()
