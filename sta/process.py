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

"""File descriptor tables and working directories of traced processes"""

import logging
import posixpath
import re
from sta.errors import UnresolvedPath
from sta.sta_types import Effects, ResolvedPath, TraceEvent
from sta.utils import is_under, normalize, unquote


logger = logging.getLogger(__name__)

AT_FDCWD = 'AT_FDCWD'

OPEN_SYSCALLS = {'open', 'openat', 'openat2', 'creat'}
READ_SYSCALLS = {'read', 'pread64', 'readv', 'preadv', 'preadv2'}
WRITE_SYSCALLS = {'write', 'pwrite64', 'writev', 'pwritev', 'pwritev2'}
RENAME_SYSCALLS = {'rename', 'renameat', 'renameat2'}
UNLINK_SYSCALLS = {'unlink', 'unlinkat'}
CLONE_SYSCALLS = {'clone', 'clone3', 'fork', 'vfork'}
EXEC_SYSCALLS = {'execve', 'execveat'}
DUP_SYSCALLS = {'dup', 'dup2', 'dup3'}

CREAT_FLAGS = frozenset({'O_CREAT', 'O_WRONLY', 'O_TRUNC'})


def succeeded(event: TraceEvent) -> bool:
    return event.ret is not None and event.ret >= 0 and event.errno is None


def parse_flags(arg: str) -> frozenset[str]:
    """Return symbolic flags of an argument such as `O_RDONLY|O_CLOEXEC`.

    `openat2` passes a structure, flags are taken from its `flags` member.
    """
    if arg.startswith('{'):
        if (m := re.search(r'flags=([^,}]*)', arg)) is None:
            return frozenset()
        arg = m[1]
    return frozenset(f.strip() for f in arg.split('|'))


def open_flags(event: TraceEvent) -> frozenset[str]:
    match event.syscall:
        case 'open':
            return parse_flags(event.args[1])
        case 'openat' | 'openat2':
            return parse_flags(event.args[2])
        case 'creat':
            return CREAT_FLAGS
    return frozenset()


class ProcessContext:
    """State of one traced process"""

    def __init__(self, pid: int, parent: int = None, cwd: str = None):
        self.pid = pid
        # Parent is only a pid, use `ProcessTable` to look it up
        self.parent = parent
        self.cwd = cwd
        self.fds: dict[int, ResolvedPath] = {}
        # Descriptors closed by a successful exec
        self.cloexec: set[int] = set()

    def fork(self, child_pid: int) -> 'ProcessContext':
        """Return a new process with a snapshot of this process' state."""
        child = ProcessContext(child_pid, parent=self.pid, cwd=self.cwd)
        # `ResolvedPath` is immutable, shallow copies are independent
        child.fds = dict(self.fds)
        child.cloexec = set(self.cloexec)
        return child

    def set_fd(self, fd: int, path: ResolvedPath, cloexec: bool = False):
        self.fds[fd] = path
        if cloexec:
            self.cloexec.add(fd)
        else:
            self.cloexec.discard(fd)

    def close_fd(self, fd: int):
        self.fds.pop(fd, None)
        self.cloexec.discard(fd)

    def __repr__(self):
        return f'<{self.pid} ({self.parent}) {self.cwd}: {self.fds}>'


class ProcessTable:
    """All processes seen in the traces of one run.

    Processes are never removed. File descriptors are overwritten when a
    process reuses them.
    """

    def __init__(self, root_pid: int = None, initial_cwd: str = None):
        """
        :param root_pid: Process that gets `initial_cwd`. If `None`, the first
        process that appears is the root.
        :param initial_cwd: Working directory of the root process, `None` if
        unknown.
        """
        self.processes: dict[int, ProcessContext] = {}
        # child pid -> parent pid
        self.parents: dict[int, int] = {}
        self.root_pid = root_pid
        self.initial_cwd = normalize(initial_cwd) if initial_cwd else None

    def __contains__(self, pid: int) -> bool:
        return pid in self.processes

    def __getitem__(self, pid: int) -> ProcessContext:
        return self.processes[pid]

    def get(self, pid: int) -> ProcessContext:
        """Return context of `pid`, create an empty one if it's not known."""
        if (process := self.processes.get(pid)) is not None:
            return process
        if self.root_pid is None:
            self.root_pid = pid
        cwd = self.initial_cwd if pid == self.root_pid else None
        if pid != self.root_pid:
            logger.debug('Process %d appeared without a clone', pid)
        process = self.processes[pid] = ProcessContext(pid, cwd=cwd)
        return process

    def parent_of(self, pid: int) -> int | None:
        return self.parents.get(pid)

    def register_child(self, parent_pid: int, child_pid: int) -> ProcessContext:
        """Create the child of a clone with a copy of the parent's state.

        A child that already exists (its lines were seen before the clone
        returned) keeps its own state and only inherits what it doesn't have.
        """
        parent = self.get(parent_pid)
        self.parents[child_pid] = parent_pid
        if (child := self.processes.get(child_pid)) is None:
            child = self.processes[child_pid] = parent.fork(child_pid)
            return child
        child.parent = parent_pid
        if child.cwd is None:
            child.cwd = parent.cwd
        for fd, path in parent.fds.items():
            if fd not in child.fds:
                child.set_fd(fd, path, fd in parent.cloexec)
        return child

    def apply(self, event: TraceEvent) -> Effects:
        """Update the state of `event.pid` according to `event`.

        :returns: `Effects` containing resolved paths the event refers to and
        pid of a new child. Paths that can't be resolved are `None`.
        """
        process = self.get(event.pid)
        if not succeeded(event):
            return Effects()
        syscall = event.syscall
        try:
            if syscall in OPEN_SYSCALLS:
                return self._open(process, event)
            if syscall in READ_SYSCALLS or syscall in WRITE_SYSCALLS:
                return Effects(paths=(self._fd_path(process, event, 0),))
            if syscall in RENAME_SYSCALLS:
                return self._rename(process, event)
            if syscall in UNLINK_SYSCALLS:
                return self._unlink(process, event)
            if syscall in CLONE_SYSCALLS:
                return self._clone(process, event)
            if syscall in EXEC_SYSCALLS:
                for fd in list(process.cloexec):
                    process.close_fd(fd)
                return Effects()
            if syscall in DUP_SYSCALLS or syscall == 'fcntl':
                return self._dup(process, event)
        except UnresolvedPath as e:
            logger.debug('%s: %s', syscall, e)
            if syscall in OPEN_SYSCALLS:
                # Forget whatever the descriptor pointed to before
                process.close_fd(event.ret)
            return Effects(unresolved=True)

        match syscall:
            case 'close':
                process.close_fd(int(event.args[0]))
            case 'chdir':
                try:
                    process.cwd = self.resolve(process, event.args[0]).path
                except UnresolvedPath as e:
                    logger.debug('chdir: %s', e)
                    process.cwd = None
                    return Effects(unresolved=True)
            case 'fchdir':
                path = self._fd_path(process, event, 0)
                process.cwd = path.path if path is not None else None
        return Effects()

    def resolve(
        self,
        process: ProcessContext,
        path_arg: str,
        dirfd_arg: str = AT_FDCWD,
        dirfd_annotation: str = None,
        is_directory: bool = False,
    ) -> ResolvedPath:
        """Resolve a path argument of a syscall to an absolute path.

        :param path_arg: Quoted path argument as written by strace.
        :param dirfd_arg: Directory file descriptor of `*at` syscalls.
        :param dirfd_annotation: `strace -y` annotation of `dirfd_arg`.
        :raises UnresolvedPath: The path is relative and the base directory
        is not known.
        """
        try:
            path = unquote(path_arg)
        except ValueError:
            raise UnresolvedPath(process.pid, path_arg) from None
        if path.startswith('/'):
            return ResolvedPath(normalize(path), is_directory)
        base = self._base(process, dirfd_arg, dirfd_annotation)
        if base is None:
            raise UnresolvedPath(process.pid, path)
        return ResolvedPath(normalize(posixpath.join(base, path)), is_directory)

    @staticmethod
    def _base(
        process: ProcessContext, dirfd_arg: str, annotation: str | None
    ) -> str | None:
        if annotation is not None and not annotation.startswith('/'):
            annotation = None
        if dirfd_arg == AT_FDCWD:
            if process.cwd is None and annotation is not None:
                process.cwd = normalize(annotation)
            return process.cwd
        try:
            fd = int(dirfd_arg)
        except ValueError:
            return None
        if (path := process.fds.get(fd)) is not None:
            return path.path
        return normalize(annotation) if annotation is not None else None

    @staticmethod
    def _fd_path(
        process: ProcessContext, event: TraceEvent, index: int
    ) -> ResolvedPath | None:
        """Return path of the file descriptor argument `index`.

        Descriptors missing in the table are learned from `strace -y`
        annotations.
        """
        fd = int(event.args[index])
        if (path := process.fds.get(fd)) is not None:
            return path
        annotation = event.decorations[index] if event.decorations else None
        if annotation is None or not annotation.startswith('/'):
            return None
        path = ResolvedPath(normalize(annotation))
        process.set_fd(fd, path)
        return path

    def _open(self, process: ProcessContext, event: TraceEvent) -> Effects:
        flags = open_flags(event)
        if event.syscall in ('open', 'creat'):
            dirfd, annotation, path_arg = AT_FDCWD, None, event.args[0]
        else:
            dirfd, path_arg = event.args[0], event.args[1]
            annotation = event.decorations[0] if event.decorations else None
        path = self.resolve(
            process, path_arg, dirfd, annotation, 'O_DIRECTORY' in flags
        )
        process.set_fd(event.ret, path, 'O_CLOEXEC' in flags)
        return Effects(paths=(path,))

    def _dirfd_path(
        self,
        process: ProcessContext,
        event: TraceEvent,
        dirfd_index: int,
        is_directory: bool = False,
    ) -> ResolvedPath | None:
        try:
            return self.resolve(
                process,
                event.args[dirfd_index + 1],
                event.args[dirfd_index],
                event.decorations[dirfd_index] if event.decorations else None,
                is_directory,
            )
        except UnresolvedPath as e:
            logger.debug('%s: %s', event.syscall, e)
            return None

    def _rename(self, process: ProcessContext, event: TraceEvent) -> Effects:
        if event.syscall == 'rename':
            try:
                old = self.resolve(process, event.args[0])
            except UnresolvedPath:
                old = None
            try:
                new = self.resolve(process, event.args[1])
            except UnresolvedPath:
                new = None
        else:
            old = self._dirfd_path(process, event, 0)
            new = self._dirfd_path(process, event, 2)
        if old is not None and new is not None:
            self._move_descriptors(old.path, new.path)
        return Effects(paths=(old, new), unresolved=None in (old, new))

    def _move_descriptors(self, old: str, new: str):
        """Descriptors follow renamed files (and files in renamed
        directories) in every process."""
        for process in self.processes.values():
            for fd, path in list(process.fds.items()):
                if is_under(path.path, old):
                    moved = new + path.path[len(old) :]
                    process.fds[fd] = path._replace(path=moved)

    def _unlink(self, process: ProcessContext, event: TraceEvent) -> Effects:
        if event.syscall == 'unlink':
            path = self.resolve(process, event.args[0])
        else:
            is_directory = len(event.args) > 2 and (
                'AT_REMOVEDIR' in parse_flags(event.args[2])
            )
            path = self._dirfd_path(process, event, 0, is_directory)
            if path is None:
                return Effects(unresolved=True)
        return Effects(paths=(path,))

    def _clone(self, process: ProcessContext, event: TraceEvent) -> Effects:
        # The child's side of clone returns 0 (visible without -ff)
        if event.ret == 0:
            return Effects()
        self.register_child(process.pid, event.ret)
        logger.debug('Process %d cloned %d', process.pid, event.ret)
        return Effects(child=event.ret)

    def _dup(self, process: ProcessContext, event: TraceEvent) -> Effects:
        new_fd = event.ret
        cloexec = False
        match event.syscall:
            case 'dup3':
                cloexec = len(event.args) > 2 and (
                    'O_CLOEXEC' in parse_flags(event.args[2])
                )
            case 'fcntl':
                command = event.args[1]
                if command == 'F_SETFD':
                    fd = int(event.args[0])
                    if len(event.args) > 2 and 'FD_CLOEXEC' in event.args[2]:
                        process.cloexec.add(fd)
                    else:
                        process.cloexec.discard(fd)
                    return Effects()
                if command not in ('F_DUPFD', 'F_DUPFD_CLOEXEC'):
                    return Effects()
                cloexec = command == 'F_DUPFD_CLOEXEC'

        if (path := self._fd_path(process, event, 0)) is None:
            # New descriptor refers to something we don't know
            process.close_fd(new_fd)
            return Effects()
        process.set_fd(new_fd, path, cloexec)
        return Effects()
