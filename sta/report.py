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

"""Output of an analysis handed to the renderers"""
from dataclasses import dataclass, field, fields
from sta.tree import DirectoryStats, DirectoryTree


@dataclass
class Diagnostics:
    """Counters of one ingestion step. Steps return their own `Diagnostics`
    and the caller merges them."""

    lines_total: int = 0
    lines_skipped: int = 0
    lines_malformed: int = 0
    processes_discovered: int = 0
    processes_missing_trace: int = 0
    paths_unresolved: int = 0
    files_ingested: int = 0

    def merge(self, other: 'Diagnostics') -> 'Diagnostics':
        for f in fields(self):
            setattr(
                self, f.name, getattr(self, f.name) + getattr(other, f.name)
            )
        return self

    def summary(self) -> str:
        return ', '.join(
            f'{f.name.replace("_", " ")}: {getattr(self, f.name)}'
            for f in fields(self)
        )


@dataclass
class Report:
    directories: list[DirectoryStats]
    diagnostics: Diagnostics
    tree: DirectoryTree = field(default=None, repr=False)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        """`False` if some data is known to be missing."""
        d = self.diagnostics
        return not (
            self.cancelled
            or d.lines_malformed
            or d.processes_missing_trace
            or d.paths_unresolved
        )
