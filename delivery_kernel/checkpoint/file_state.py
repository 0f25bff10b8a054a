"""
File-state fingerprinting.

Records size + mtime per file. This is a cheap change detector, not an
integrity check: a rewrite that keeps both size and mtime goes unnoticed.
"""

import os
from datetime import datetime, timezone
from typing import Iterable

from delivery_kernel.models.checkpoint import (
    FileFingerprint,
    FileStateDiff,
    FileStateSnapshot,
)


def capture_file_state(working_directory: str, excluded_dirs: Iterable[str] = ()) -> FileStateSnapshot:
    """Walk a directory tree and fingerprint every regular file under it."""
    root = os.path.abspath(working_directory)
    if not os.path.isdir(root):
        raise FileNotFoundError(f"Not a directory: {working_directory}")
    excluded = set(excluded_dirs)

    files = {}
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune in place so os.walk never descends into excluded trees
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for name in sorted(filenames):
            full_path = os.path.join(dirpath, name)
            try:
                st = os.stat(full_path)
            except OSError:
                continue  # Removed or unreadable between listing and stat
            rel_path = os.path.relpath(full_path, root).replace(os.sep, "/")
            files[rel_path] = FileFingerprint(size=st.st_size, mtime=st.st_mtime)

    return FileStateSnapshot(
        root=root,
        captured_at=datetime.now(timezone.utc),
        files=files,
    )


def compare_file_state(
    snapshot: FileStateSnapshot,
    working_directory: str,
    excluded_dirs: Iterable[str] = (),
) -> FileStateDiff:
    """What changed in a directory since the snapshot was taken."""
    current = capture_file_state(working_directory, excluded_dirs).files
    before = snapshot.files

    added = sorted(p for p in current if p not in before)
    removed = sorted(p for p in before if p not in current)
    modified = sorted(
        p for p in current
        if p in before
        and (current[p].size != before[p].size or current[p].mtime != before[p].mtime)
    )
    return FileStateDiff(added=added, removed=removed, modified=modified)
