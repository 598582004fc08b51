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

from dataclasses import dataclass
from enum import Enum, auto


class AgePolicy(Enum):
    """How the age of a directory is computed."""

    FIRST_EVENT = auto()
    """Age is the time between the first and the last event that touched the
    directory."""
    RUN_START = auto()
    """Age is the time between the start of the whole run (earliest timestamp
    in any trace file) and the last event that touched the directory."""


class Rollup(Enum):
    """Which directories receive the statistics of a file."""

    PARENT = auto()
    """Only the directory that directly contains the file."""
    ANCESTORS = auto()
    """Every directory on the way from the file up to `ROLLUP_BOUNDARY`."""


class TimestampFormat(Enum):
    """Format of the timestamp field that precedes each syscall."""

    AUTO = auto()
    """Detect any of the formats below on each line."""
    NONE = auto()
    """Traces carry no timestamps, events are ordered by sequence only."""
    CLOCK = auto()
    """Wall clock as written by `strace -t` or `strace -tt`."""
    EPOCH = auto()
    """Seconds since the epoch as written by `strace -ttt`."""
    RELATIVE = auto()
    """Delta to the previous syscall as written by `strace -r`."""


AGE_POLICY = AgePolicy.FIRST_EVENT
"""Default age policy. Both readings are defensible, the activity window of
a directory is the one that doesn't depend on unrelated processes."""

ROLLUP = Rollup.PARENT
"""Default roll-up depth. Deep roll-up counts a byte in every ancestor, so it
has to be requested explicitly."""

ROLLUP_BOUNDARY = '/'
"""Topmost directory that receives statistics with `Rollup.ANCESTORS`."""

TIMESTAMP_FORMAT = TimestampFormat.AUTO

FOLLOW_CHILDREN = True
"""`True` if trace files of forked children should be ingested."""


@dataclass(frozen=True)
class AnalyzerConfig:
    age_policy: AgePolicy = AGE_POLICY
    rollup: Rollup = ROLLUP
    rollup_boundary: str = ROLLUP_BOUNDARY
    timestamp_format: TimestampFormat = TIMESTAMP_FORMAT
    initial_cwd: str | None = None
    """Working directory of the root process. Relative paths of the root
    process are unresolved until it calls `chdir` if this is `None`."""
    follow_children: bool = FOLLOW_CHILDREN
