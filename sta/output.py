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

"""Renderers of the report"""
from collections.abc import Callable
from datetime import timedelta
from sta.report import Report


def format_age(age: timedelta | None) -> str:
    if age is None:
        return '-'
    return f'{age.total_seconds():g}'


def oneline(report: Report) -> str:
    """Colon separated age, total, accessed and modified size in bytes,
    followed by the directory."""
    return ''.join(
        f'{format_age(d.age)}:{d.total_size_bytes}:{d.accessed_size_bytes}:'
        f'{d.modified_size_bytes}:{d.path}\n'
        for d in report.directories
    )


TABLE_HEADER = ('age', 'total', 'accessed', 'modified', 'directory')


def table(report: Report) -> str:
    """Aligned columns with a header. Numbers are right aligned, directories
    are left aligned."""
    rows = [TABLE_HEADER] + [
        (
            format_age(d.age),
            str(d.total_size_bytes),
            str(d.accessed_size_bytes),
            str(d.modified_size_bytes),
            d.path,
        )
        for d in report.directories
    ]
    widths = [max(len(row[i]) for row in rows) for i in range(4)]
    rows.insert(
        1, tuple('-' * w for w in widths) + ('-' * len(TABLE_HEADER[-1]),)
    )
    out = ''
    for *numbers, path in rows:
        cells = [n.rjust(w) for n, w in zip(numbers, widths)]
        out += '  '.join(cells + [path]) + '\n'
    return out


def _escape_label(value: str) -> str:
    return (
        value.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')
    )


PROMETHEUS_METRICS = (
    (
        'total_bytes',
        'Observed size of files in the directory.',
        'total_size_bytes',
    ),
    (
        'accessed_bytes',
        'Bytes read from files in the directory.',
        'accessed_size_bytes',
    ),
    (
        'modified_bytes',
        'Bytes written to files in the directory.',
        'modified_size_bytes',
    ),
)


def prometheus(report: Report) -> str:
    """Prometheus' metric exposition format."""
    out = ''
    for name, help, attribute in PROMETHEUS_METRICS:
        metric = f'strace_analyzer_directory_{name}'
        out += f'# HELP {metric} {help}\n# TYPE {metric} gauge\n'
        for d in report.directories:
            out += (
                f'{metric}{{directory="{_escape_label(d.path)}"}} '
                f'{getattr(d, attribute)}\n'
            )
    metric = 'strace_analyzer_directory_age_seconds'
    out += (
        f'# HELP {metric} Duration of activity in the directory.\n'
        f'# TYPE {metric} gauge\n'
    )
    for d in report.directories:
        if d.age is not None:
            out += (
                f'{metric}{{directory="{_escape_label(d.path)}"}} '
                f'{d.age.total_seconds():g}\n'
            )
    return out


def tree(report: Report) -> str:
    return report.tree.render() if report.tree is not None else ''


FORMATS: dict[str, Callable[[Report], str]] = {
    'table': table,
    'oneline': oneline,
    'prometheus': prometheus,
    'tree': tree,
}
