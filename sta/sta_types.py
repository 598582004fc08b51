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

"""Types used in the project"""
from collections import namedtuple
from enum import Enum, auto


# One syscall from the trace. `args` contains raw argument strings,
# `decorations` contains `strace -y` annotations of the arguments (or `None`)
TraceEvent = namedtuple(
    'TraceEvent',
    [
        'pid',
        'syscall',
        'args',
        'ret',
        'errno',
        'timestamp',
        'decorations',
        'ret_path',
    ],
    defaults=[None, None, (), None],
)

# Results of parsing one line
Parsed = namedtuple('Parsed', ['event'])
Skipped = namedtuple('Skipped', ['reason'])
Malformed = namedtuple('Malformed', ['line', 'reason'])
# First half of an interrupted syscall, waiting for its `resumed` line
Pending = namedtuple('Pending', ['pid', 'syscall'])

ResolvedPath = namedtuple(
    'ResolvedPath', ['path', 'is_directory'], defaults=[False]
)

# Side effects of a single event on the process table, consumed by the
# classifier
Effects = namedtuple(
    'Effects',
    ['paths', 'child', 'unresolved'],
    defaults=[(), None, False],
)


class Classification(Enum):
    ACCESSED = auto()
    MODIFIED = auto()
    CREATED = auto()
    DELETED = auto()
    UNKNOWN = auto()


AccessRecord = namedtuple(
    'AccessRecord',
    [
        'path',
        'classification',
        'timestamp',
        'sequence',
        'size_delta',
        'is_directory',
    ],
    defaults=[None, False],
)
