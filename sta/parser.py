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

""" Parser for strace output format (see GRAMMAR.md) """

import logging
import re
from collections import namedtuple
from sta.config import TimestampFormat
from sta.errors import Unparseable
from sta.sta_types import Malformed, Parsed, Pending, Skipped, TraceEvent


logger = logging.getLogger(__name__)

SyscallSpec = namedtuple('SyscallSpec', ['min_args', 'int_args'])

# Syscalls the engine cares about. Lines of these syscalls that don't have
# enough arguments or have garbage instead of a file descriptor are malformed.
# Every other syscall is parsed, but nobody looks at it.
SYSCALLS: dict[str, SyscallSpec] = {
    'open': SyscallSpec(2, ()),
    'openat': SyscallSpec(3, ()),
    'openat2': SyscallSpec(3, ()),
    'creat': SyscallSpec(2, ()),
    'read': SyscallSpec(3, (0,)),
    'pread64': SyscallSpec(4, (0,)),
    'readv': SyscallSpec(3, (0,)),
    'preadv': SyscallSpec(4, (0,)),
    'preadv2': SyscallSpec(5, (0,)),
    'write': SyscallSpec(3, (0,)),
    'pwrite64': SyscallSpec(4, (0,)),
    'writev': SyscallSpec(3, (0,)),
    'pwritev': SyscallSpec(4, (0,)),
    'pwritev2': SyscallSpec(5, (0,)),
    'close': SyscallSpec(1, (0,)),
    'chdir': SyscallSpec(1, ()),
    'fchdir': SyscallSpec(1, (0,)),
    'rename': SyscallSpec(2, ()),
    'renameat': SyscallSpec(4, ()),
    'renameat2': SyscallSpec(4, ()),
    'unlink': SyscallSpec(1, ()),
    'unlinkat': SyscallSpec(2, ()),
    'clone': SyscallSpec(0, ()),
    'clone3': SyscallSpec(0, ()),
    'fork': SyscallSpec(0, ()),
    'vfork': SyscallSpec(0, ()),
    'execve': SyscallSpec(1, ()),
    'execveat': SyscallSpec(2, ()),
    'dup': SyscallSpec(1, (0,)),
    'dup2': SyscallSpec(2, (0, 1)),
    'dup3': SyscallSpec(2, (0, 1)),
    'fcntl': SyscallSpec(2, (0,)),
}

LINE_PATTERN = re.compile(
    r'^(?:\[pid\s+(?P<bracket_pid>\d+)\]\s+|(?P<pid>\d+)\s+)?'
    r'(?:(?P<timestamp>\d{1,2}:\d{2}:\d{2}(?:\.\d+)?|\d+\.\d+)\s+)?'
    r'(?P<body>.*)$'
)

CALL_START = re.compile(r'(?P<syscall>[A-Za-z_][A-Za-z0-9_]*)\(')

RESUMED_PATTERN = re.compile(
    r'<\.\.\.\s+(?P<syscall>[A-Za-z_][A-Za-z0-9_]*)\s+resumed>\s*(?P<rest>.*)$'
)

UNFINISHED = '<unfinished ...>'

RESULT_PATTERN = re.compile(
    r'\s*=\s*(?P<ret>-?\d+|0x[0-9a-fA-F]+|\?)'
    r'(?:<(?P<ret_path>.*?)>)?'
    r'(?:\s+<unavailable>)?'
    r'(?:\s+(?P<errno>E[A-Z0-9_]+))?'
    r'(?:\s+\(.*?\))?'
    r'(?:\s+<\d+\.\d+>)?\s*$'
)

# `3</tmp/file>` and `AT_FDCWD</home/user>` as written by `strace -y`
ANNOTATED_PATTERN = re.compile(
    r'^(?P<value>-?\d+|AT_FDCWD)<(?P<annotation>.*)>$', re.DOTALL
)

# Seconds from which an undotted `-ttt` timestamp is assumed instead of `-r`
EPOCH_THRESHOLD = 10**8

DAY = 24 * 60 * 60


def _skip_string(text: str, i: int) -> int:
    """Return index just after the string literal starting at `text[i]`."""
    j = i + 1
    while j < len(text):
        if text[j] == '\\':
            j += 2
            continue
        if text[j] == '"':
            return j + 1
        j += 1
    raise Unparseable('unterminated string')


def _skip_annotation(text: str, i: int) -> int:
    """Return index just after the `<...>` annotation starting at `text[i]`.

    Annotated paths may contain `>`, the annotation ends at the `>` that is
    followed by something that can end an argument.
    """
    j = i + 1
    while (j := text.find('>', j)) != -1:
        rest = text[j + 1 :].lstrip()
        if not rest or rest[0] in ',)]}':
            return j + 1
        j += 1
    raise Unparseable('unterminated annotation')


def split_arguments(text: str, start: int) -> tuple[list[str], int]:
    """Split the argument list of a syscall into top-level arguments.

    :param text: Whole syscall text, e.g. `read(3, "..."..., 4) = 4`
    :param start: Index just after the opening parenthesis.
    :returns: Tuple of stripped arguments and the index just after the
    closing parenthesis.
    """
    args = []
    current = ''
    depth = 0
    i = start
    while i < len(text):
        c = text[i]
        if c == '"':
            j = _skip_string(text, i)
            current += text[i:j]
            i = j
            continue
        if text.startswith('/*', i):
            j = text.find('*/', i + 2)
            if j == -1:
                raise Unparseable('unterminated comment')
            current += text[i : j + 2]
            i = j + 2
            continue
        if c == '<' and re.fullmatch(r'-?\d+|AT_FDCWD', current.strip()):
            j = _skip_annotation(text, i)
            current += text[i:j]
            i = j
            continue
        if c in '([{':
            depth += 1
        elif c in ')]}':
            if depth == 0:
                if c != ')':
                    raise Unparseable(f'unbalanced {c!r}')
                args.append(current.strip())
                if args == ['']:
                    args = []
                return args, i + 1
            depth -= 1
        elif c == ',' and depth == 0:
            args.append(current.strip())
            current = ''
            i += 1
            continue
        current += c
        i += 1
    raise Unparseable('unterminated argument list')


def split_annotation(arg: str) -> tuple[str, str | None]:
    """Split `3</tmp/a>` into `('3', '/tmp/a')`."""
    if (m := ANNOTATED_PATTERN.match(arg)) is None:
        return arg, None
    return m['value'], m['annotation']


def parse_return(ret: str) -> int | None:
    if ret == '?':
        return None
    return int(ret, 0) if ret.startswith('0x') else int(ret)


class RecordParser:
    """Turns lines of a single trace file into `TraceEvent`s.

    The parser is stateful: it keeps unfinished syscalls until they are
    resumed and it keeps the clock for relative timestamps.
    """

    def __init__(
        self,
        pid: int,
        timestamp_format: TimestampFormat = TimestampFormat.AUTO,
        relative_start: float = 0.0,
    ):
        """
        :param pid: Process id of lines that don't carry it, i.e. the process
        of a `strace -ff` output file.
        :param relative_start: Time the deltas of `strace -r` are added to.
        Child files start at the timestamp of the clone in their parent.
        """
        self.pid = pid
        self.timestamp_format = timestamp_format
        # (pid, syscall) -> text of the call up to `<unfinished ...>`
        self._pending: dict[tuple[int, str], str] = {}
        self._relative_clock = relative_start
        self._clock_offset = 0.0
        self._last_clock = None

    @property
    def pending(self) -> list[tuple[int, str]]:
        """Syscalls that were interrupted and never resumed."""
        return list(self._pending)

    def parse_line(self, line: str) -> Parsed | Skipped | Malformed | Pending:
        line = line.strip()
        if not line:
            return Skipped('empty')

        m = LINE_PATTERN.match(line)
        pid = m['bracket_pid'] or m['pid']
        pid = int(pid) if pid is not None else self.pid
        body = m['body']

        if body.startswith('---'):
            return Skipped('signal')
        if body.startswith('+++'):
            return Skipped('exit')
        if body.startswith('strace:'):
            # e.g. "strace: Process 1234 attached" when stderr was captured
            return Skipped('message')

        try:
            timestamp = self._timestamp(m['timestamp'])
            return self._parse_body(pid, body, timestamp)
        except (Unparseable, ValueError) as e:
            logger.debug('Malformed line %r: %s', line, e)
            return Malformed(line, str(e))

    def _parse_body(self, pid: int, body: str, timestamp: float | None):
        if (m := RESUMED_PATTERN.match(body)) is not None:
            syscall = m['syscall']
            prefix = self._pending.pop((pid, syscall), None)
            if prefix is None:
                raise Unparseable(f'{syscall} resumed, but never started')
            body = prefix + ' ' + m['rest']
        elif body.endswith(UNFINISHED):
            if (m := CALL_START.match(body)) is None:
                raise Unparseable('unfinished line without a syscall')
            syscall = m['syscall']
            self._pending[(pid, syscall)] = body[: -len(UNFINISHED)].rstrip()
            return Pending(pid, syscall)

        if (m := CALL_START.match(body)) is None:
            raise Unparseable('no syscall')
        syscall = m['syscall']
        try:
            args, end = split_arguments(body, m.end())
            if (result := RESULT_PATTERN.match(body, end)) is None:
                raise Unparseable(f'no return value of {syscall}')
        except Unparseable as e:
            if syscall not in SYSCALLS:
                # Ignored downstream, so it counts as skipped
                logger.debug('Unknown syscall %s skipped: %s', syscall, e)
                return Skipped('unknown syscall')
            raise

        values = []
        decorations = []
        for arg in args:
            value, annotation = split_annotation(arg)
            values.append(value)
            decorations.append(annotation)

        if (spec := SYSCALLS.get(syscall)) is not None:
            if len(values) < spec.min_args:
                raise Unparseable(
                    f'{syscall} needs {spec.min_args} arguments, '
                    f'got {len(values)}'
                )
            for i in spec.int_args:
                int(values[i])

        return Parsed(
            TraceEvent(
                pid=pid,
                syscall=syscall,
                args=tuple(values),
                ret=parse_return(result['ret']),
                errno=result['errno'],
                timestamp=timestamp,
                decorations=tuple(decorations),
                ret_path=result['ret_path'],
            )
        )

    def _timestamp(self, value: str | None) -> float | None:
        """Convert the timestamp field to seconds.

        Clock timestamps are seconds since midnight, a jump backwards by more
        than half a day is taken as passing midnight.
        """
        if value is None or self.timestamp_format == TimestampFormat.NONE:
            return None

        fmt = self.timestamp_format
        if fmt == TimestampFormat.AUTO:
            if ':' in value:
                fmt = TimestampFormat.CLOCK
            elif float(value) >= EPOCH_THRESHOLD:
                fmt = TimestampFormat.EPOCH
            else:
                fmt = TimestampFormat.RELATIVE

        match fmt:
            case TimestampFormat.CLOCK:
                hours, minutes, seconds = value.split(':')
                clock = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
                if self._last_clock is not None and (
                    clock + self._clock_offset < self._last_clock - DAY / 2
                ):
                    self._clock_offset += DAY
                clock += self._clock_offset
                self._last_clock = clock
                return clock
            case TimestampFormat.EPOCH:
                return float(value)
            case TimestampFormat.RELATIVE:
                self._relative_clock += float(value)
                return self._relative_clock
