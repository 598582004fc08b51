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

"""Errors raised while analyzing traces.

Only `TraceFileError` ends a run. Everything else is counted in
`Diagnostics` and the analysis continues with the remaining data.
"""


class TraceError(Exception):
    pass


class Unparseable(TraceError):
    """A line (or a part of it) doesn't match the trace grammar."""


class UnresolvedPath(TraceError):
    """A relative path has no known base directory."""

    def __init__(self, pid: int, path: str):
        super().__init__(f'{path!r} of process {pid} can not be resolved')
        self.pid = pid
        self.path = path


class MissingChildTrace(TraceError):
    """A clone named a process whose trace file doesn't exist."""

    def __init__(self, pid: int, path):
        super().__init__(f'no trace file {path} for process {pid}')
        self.pid = pid
        self.path = path


class TraceFileError(TraceError):
    """The primary trace file can't be read."""

    def __init__(self, path, reason: OSError):
        super().__init__(f"can't read trace file {path}: {reason}")
        self.path = path
        self.reason = reason
