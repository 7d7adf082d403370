"""Allow-listed path resolution for render inputs and outputs."""

import os
from collections.abc import Iterable
from pathlib import Path

from adreel.exceptions import UnsafePathError


def is_path_safe(path: str | os.PathLike[str], roots: Iterable[str | os.PathLike[str]]) -> bool:
    """Return True if ``path`` resolves inside any of ``roots``.

    Symlinks and ``..`` segments are resolved first, so ``public/../etc``
    is checked as ``etc``.
    """
    resolved = Path(path).resolve()
    for root in roots:
        if resolved.is_relative_to(Path(root).resolve()):
            return True
    return False


def resolve_within(path: str | os.PathLike[str], roots: Iterable[str | os.PathLike[str]]) -> Path:
    """Resolve ``path`` and ensure it stays under an allowed root.

    Raises:
        UnsafePathError: If the resolved path escapes every root
    """
    roots = list(roots)
    if not roots or not is_path_safe(path, roots):
        raise UnsafePathError(str(path))
    return Path(path).resolve()


def join_under(base: str | os.PathLike[str], relative: str) -> Path:
    """Join a client-supplied relative path onto ``base`` and confine it there.

    Leading slashes are stripped so ``/uploads/a.mp4`` is treated as relative.
    """
    candidate = Path(base) / relative.lstrip("/\\")
    return resolve_within(candidate, [base])
