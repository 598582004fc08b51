import codecs
import posixpath
from collections.abc import Iterator


def path_components(path: str) -> Iterator[str]:
    """Parse a path and return its components as iterator.

    :param path: string in the form of `/this/is/a/path`. It has to start with a
    `/` and optionally end with a `/`
    """
    return filter(lambda x: bool(x), path.split('/'))


def normalize(path: str) -> str:
    """Lexically normalize an absolute path. Symlinks are not followed, the
    engine never looks at the real filesystem."""
    # normpath keeps a leading double slash, strace never needs it
    return '/' + '/'.join(path_components(posixpath.normpath(path)))


def parent_directory(path: str) -> str:
    return posixpath.dirname(path) or '/'


def ancestors(path: str, boundary: str = '/') -> Iterator[str]:
    """Yield directories containing `path` from the closest one up to and
    including `boundary`. Nothing is yielded if `path` is not under
    `boundary`."""
    if not is_under(path, boundary) or path == boundary:
        return
    while path != boundary:
        path = parent_directory(path)
        yield path


def is_under(path: str, directory: str) -> bool:
    if directory == '/':
        return path.startswith('/')
    return path == directory or path.startswith(directory + '/')


def unquote(s: str) -> str:
    """Convert a quoted string argument from strace to a python string.

    Escapes are the C ones (`\\n`, `\\"`, `\\x41`, `\\101`). The truncation
    marker (`"abc"...`) is dropped. Invalid UTF-8 is kept via surrogate
    escapes so the path stays unique.
    """
    s = s.strip()
    if s.endswith('...'):
        s = s[:-3]
    if len(s) < 2 or s[0] != '"' or s[-1] != '"':
        raise ValueError(f'not a quoted string: {s}')
    raw, _ = codecs.escape_decode(s[1:-1].encode('utf-8', 'surrogateescape'))
    return raw.decode('utf-8', 'surrogateescape')
