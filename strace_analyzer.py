#!/usr/bin/env python3
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

import logging
import sys
from getopt import getopt, GetoptError
from pathlib import Path
from sta.config import AgePolicy, AnalyzerConfig, Rollup, TimestampFormat
from sta.errors import TraceFileError
from sta.follower import analyze
from sta.output import FORMATS


def usage(prog: str = 'strace_analyzer.py'):
    print(
        f"""Usage: {prog} [OPTION]... FILE

Analyze file accesses of a command traced with:

    strace -ff -o cmd.strace cmd

FILE is the primary output file of the strace run. Output files of child
processes are followed based on the clone syscalls in the traces.

Options:

      --format=FORMAT      Output format: table (default), oneline,
                           prometheus or tree. `oneline` prints colon
                           separated age, total, accessed and modified size
                           in bytes, followed by the directory.
      --age=POLICY         first-event (default): age of a directory is the
                           time between its first and last event. run-start:
                           time between the start of the run and the last
                           event of the directory.
      --rollup=DEPTH       parent (default): files count only in their
                           directory. ancestors: files count in every
                           directory up to the boundary.
      --boundary=DIR       Topmost directory for --rollup=ancestors.
      --cwd=DIR            Working directory of the traced command, used to
                           resolve its relative paths.
      --timestamps=FORMAT  auto (default), none, clock (-t/-tt), epoch (-ttt)
                           or relative (-r).
      --no-follow          Don't read trace files of child processes.
  -v, --verbose            Verbose output.
      --debug              Debug output.
      --help               Show this help output.
""",
        file=sys.stderr,
    )
    return 2


AGE_POLICIES = {
    'first-event': AgePolicy.FIRST_EVENT,
    'run-start': AgePolicy.RUN_START,
}

ROLLUPS = {
    'parent': Rollup.PARENT,
    'ancestors': Rollup.ANCESTORS,
}

TIMESTAMP_FORMATS = {f.name.lower(): f for f in TimestampFormat}


def main(argv: list[str] = None) -> int:
    if argv is None:
        argv = sys.argv
    try:
        optlist, args = getopt(
            argv[1:],
            'v',
            [
                'format=',
                'age=',
                'rollup=',
                'boundary=',
                'cwd=',
                'timestamps=',
                'no-follow',
                'verbose',
                'debug',
                'help',
            ],
        )
    except GetoptError as e:
        print(e, file=sys.stderr)
        return usage(argv[0])

    output = FORMATS['table']
    options = {}
    level = logging.WARNING

    try:
        for opt, value in optlist:
            match opt:
                case '--format':
                    output = FORMATS[value.lower()]
                case '--age':
                    options['age_policy'] = AGE_POLICIES[value.lower()]
                case '--rollup':
                    options['rollup'] = ROLLUPS[value.lower()]
                case '--boundary':
                    options['rollup_boundary'] = value
                case '--cwd':
                    options['initial_cwd'] = value
                case '--timestamps':
                    options['timestamp_format'] = TIMESTAMP_FORMATS[
                        value.lower()
                    ]
                case '--no-follow':
                    options['follow_children'] = False
                case '-v' | '--verbose':
                    level = min(level, logging.INFO)
                case '--debug':
                    level = logging.DEBUG
                case _:
                    return usage(argv[0])
    except KeyError as e:
        print(f'invalid value {e} for {opt}', file=sys.stderr)
        return usage(argv[0])

    if len(args) != 1:
        return usage(argv[0])

    path = Path(args[0])
    if not path.exists():
        print(f'does not exist: {path}', file=sys.stderr)
        return 2
    if not path.is_file():
        print(f'is not a file: {path}', file=sys.stderr)
        return 2

    for name, key in (('boundary', 'rollup_boundary'), ('cwd', 'initial_cwd')):
        if (value := options.get(key)) is not None and value[:1] != '/':
            print(f'--{name} must be an absolute path', file=sys.stderr)
            return 2

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        report = analyze(path, AnalyzerConfig(**options))
    except TraceFileError as e:
        print(e, file=sys.stderr)
        return 1

    print(output(report), end='')
    print(report.diagnostics.summary(), file=sys.stderr)
    if not report.complete:
        print('warning: the report is incomplete', file=sys.stderr)
    return 0


if __name__ == '__main__':
    exit(main())
