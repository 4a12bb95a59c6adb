"""Config list helpers."""

from collections.abc import Iterator
from pathlib import Path


def read_list(path: Path) -> Iterator[str]:
    """Yield non-empty, non-comment lines of a list file, stripped.

    A missing file yields nothing.
    """
    if not path.is_file():
        return

    with path.open('r', encoding='utf-8') as f:
        for line in f:
            entry = line.strip()
            if not entry or entry.startswith('#'):
                continue
            yield entry
