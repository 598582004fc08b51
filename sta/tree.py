"""Tree data structure for the strace analyzer

Every path seen in the traces is a node of a `treelib.Tree`. Files keep their
`FileUsage`, directories keep `DirectoryStats` folded from the access records
of files below them.
"""
from dataclasses import dataclass
from datetime import timedelta
from treelib import Tree
from treelib.node import Node
from sta.config import AgePolicy, Rollup, AGE_POLICY, ROLLUP, ROLLUP_BOUNDARY
from sta.sta_types import AccessRecord, Classification
from sta.utils import ancestors, normalize, parent_directory, path_components


class FileUsage:
    """Bytes moved to and from a single file during the run."""

    def __init__(self):
        self.accessed_bytes = 0
        self.modified_bytes = 0
        self.created = False
        self.deleted = False

    @property
    def size(self) -> int:
        """Observed size of the file. The trace never tells the real size, but
        the file had at least as many bytes as were read from or written to
        it."""
        return max(self.accessed_bytes, self.modified_bytes)

    def add(self, record: AccessRecord) -> int:
        """Update usage by `record`.

        :returns: Growth of the observed size.
        """
        before = self.size
        size = max(record.size_delta or 0, 0)
        match record.classification:
            case Classification.ACCESSED:
                self.accessed_bytes += size
            case Classification.MODIFIED:
                self.modified_bytes += size
            case Classification.CREATED:
                self.created = True
                self.deleted = False
                self.modified_bytes += size
            case Classification.DELETED:
                self.deleted = True
        return self.size - before

    def __repr__(self):
        flags = ('C' if self.created else '') + ('D' if self.deleted else '')
        return f'<{self.accessed_bytes}/{self.modified_bytes}{flags}>'


@dataclass
class DirectoryStats:
    path: str
    total_size_bytes: int = 0
    accessed_size_bytes: int = 0
    modified_size_bytes: int = 0
    age: timedelta | None = None
    first_timestamp: float | None = None
    last_timestamp: float | None = None

    def add(self, record: AccessRecord, growth: int):
        """Fold one record into the statistics. Only ever adds."""
        size = max(record.size_delta or 0, 0)
        self.total_size_bytes += growth
        match record.classification:
            case Classification.ACCESSED:
                self.accessed_size_bytes += size
            case Classification.MODIFIED | Classification.CREATED:
                self.modified_size_bytes += size

        if (ts := record.timestamp) is not None:
            if self.first_timestamp is None or ts < self.first_timestamp:
                self.first_timestamp = ts
            if self.last_timestamp is None or ts > self.last_timestamp:
                self.last_timestamp = ts

    def finalize(self, policy: AgePolicy, run_start: float | None):
        """Compute `age` according to `policy`. Age stays `None` when the
        traces don't have timestamps."""
        if self.last_timestamp is None:
            self.age = None
            return
        match policy:
            case AgePolicy.FIRST_EVENT:
                start = self.first_timestamp
            case AgePolicy.RUN_START:
                start = run_start if run_start is not None else (
                    self.first_timestamp
                )
        self.age = timedelta(seconds=self.last_timestamp - start)

    @property
    def label(self) -> str:
        return (
            f'[total={self.total_size_bytes} '
            f'accessed={self.accessed_size_bytes} '
            f'modified={self.modified_size_bytes}]'
        )


class PathNode:
    """Represents internal data of the node."""

    def __init__(self, name: str):
        self.name = name
        self.usage: FileUsage | None = None
        self.stats: DirectoryStats | None = None

    @property
    def label(self) -> str:
        label = self.name
        if self.usage is not None:
            label += f' {self.usage}'
        if self.stats is not None:
            label += f' {self.stats.label}'
        return label


class DirectoryTree(Tree):
    """Aggregates access records into per-directory statistics.

    Node identifiers are absolute paths.
    """

    def __init__(
        self,
        rollup: Rollup = ROLLUP,
        boundary: str = ROLLUP_BOUNDARY,
        age_policy: AgePolicy = AGE_POLICY,
        tree=None,
        deep=False,
    ):
        super().__init__(tree, deep)
        self.rollup = rollup
        self.boundary = normalize(boundary)
        self.age_policy = age_policy
        # Earliest timestamp of the whole run
        self.run_start: float | None = None
        if tree is None:
            self.sta_root = self.create_node('/', '/', data=PathNode('/'))
        else:
            self.sta_root = self[self.root]

    def _create_path(self, path: str) -> Node:
        """Create necessary nodes in the tree to represent a path.

        :param path: string in the form of `/this/is/a/path`. It has to start
        with a `/` and optionally end with a `/`
        """
        parent = self.sta_root
        current = ''
        for e in path_components(path):
            current += '/' + e
            if (node := self.get_node(current)) is None:
                node = self.create_node(
                    e, current, parent=parent.identifier, data=PathNode(e)
                )
            parent = node
        return parent

    def directories_of(self, path: str) -> list[str]:
        """Directories that receive statistics of `path`."""
        if self.rollup == Rollup.PARENT:
            return [parent_directory(path)]
        return list(ancestors(path, self.boundary))

    def add(self, record: AccessRecord):
        """Fold `record` into the usage of its file and the statistics of the
        directories above it. Directories themselves have no size, their
        records only move timestamps."""
        node = self._create_path(record.path)
        growth = 0
        if not record.is_directory:
            if node.data.usage is None:
                node.data.usage = FileUsage()
            growth = node.data.usage.add(record)
        self.observe(record.timestamp)

        for directory in self.directories_of(record.path):
            data = self._create_path(directory).data
            if data.stats is None:
                data.stats = DirectoryStats(directory)
            data.stats.add(record, growth)

    def observe(self, timestamp: float | None):
        """Move start of the run to `timestamp` if it's earlier. Events that
        don't produce records still count for the start."""
        if timestamp is not None and (
            self.run_start is None or timestamp < self.run_start
        ):
            self.run_start = timestamp

    def load(self, records):
        for record in records:
            self.add(record)

    def get_usage(self, path: str) -> FileUsage | None:
        if (node := self.get_node(normalize(path))) is None:
            return None
        return node.data.usage

    def get_stats(self, path: str) -> DirectoryStats | None:
        if (node := self.get_node(normalize(path))) is None:
            return None
        return node.data.stats

    def report(self) -> list[DirectoryStats]:
        """Finalize ages and return directory statistics ordered by path."""
        stats = [
            node.data.stats
            for node in self.all_nodes_itr()
            if node.data.stats is not None
        ]
        for s in stats:
            s.finalize(self.age_policy, self.run_start)
        return sorted(stats, key=lambda s: s.path)

    def render(self) -> str:
        """Return the tree with usage of files and statistics of
        directories."""
        return self.show(data_property='label', stdout=False)
