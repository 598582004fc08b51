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

from itertools import count
from more_itertools import first
from sta.process import (
    OPEN_SYSCALLS,
    READ_SYSCALLS,
    RENAME_SYSCALLS,
    UNLINK_SYSCALLS,
    WRITE_SYSCALLS,
    open_flags,
    succeeded,
)
from sta.sta_types import (
    AccessRecord,
    Classification,
    Effects,
    ResolvedPath,
    TraceEvent,
)


WRITE_FLAGS = frozenset({'O_WRONLY', 'O_RDWR', 'O_CREAT', 'O_TRUNC', 'O_APPEND'})


class AccessClassifier:
    """Classify file events of a run.

    The classifier remembers every path it has seen during the run to tell
    newly created files from modified ones. One classifier must be used for
    all trace files of a run, its sequence numbers order the records.
    """

    def __init__(self):
        self.seen: set[str] = set()
        self._sequence = count()

    def classify(
        self, event: TraceEvent, effects: Effects
    ) -> list[AccessRecord]:
        """Return access records of an event already applied to the process
        table. Failed syscalls don't produce any records."""
        if not succeeded(event):
            return []
        syscall = event.syscall

        if syscall in RENAME_SYSCALLS and len(effects.paths) == 2:
            old, new = effects.paths
            records = []
            if old is not None:
                self.seen.discard(old.path)
                records.append(
                    self._record(event, old, Classification.DELETED)
                )
            if new is not None:
                records.append(self._record(event, new, self._written(new)))
            return records

        if (path := first(effects.paths, None)) is None:
            return []

        if syscall in OPEN_SYSCALLS:
            if open_flags(event) & WRITE_FLAGS:
                return [self._record(event, path, self._written(path))]
            self.seen.add(path.path)
            return [self._record(event, path, Classification.ACCESSED)]

        if syscall in READ_SYSCALLS:
            self.seen.add(path.path)
            return [
                self._record(
                    event, path, Classification.ACCESSED, max(event.ret, 0)
                )
            ]

        if syscall in WRITE_SYSCALLS:
            self.seen.add(path.path)
            return [
                self._record(
                    event, path, Classification.MODIFIED, max(event.ret, 0)
                )
            ]

        if syscall in UNLINK_SYSCALLS:
            self.seen.discard(path.path)
            return [self._record(event, path, Classification.DELETED)]

        return []

    def _written(self, path: ResolvedPath) -> Classification:
        if path.path in self.seen:
            return Classification.MODIFIED
        self.seen.add(path.path)
        return Classification.CREATED

    def _record(
        self,
        event: TraceEvent,
        path: ResolvedPath,
        classification: Classification,
        size_delta: int = None,
    ) -> AccessRecord:
        return AccessRecord(
            path=path.path,
            classification=classification,
            timestamp=event.timestamp,
            sequence=next(self._sequence),
            size_delta=size_delta,
            is_directory=path.is_directory,
        )
