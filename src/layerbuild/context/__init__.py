"""
Build context snapshotting

- ContextSnapshotter: deterministic hashed snapshot of a source tree
- load_ignore_file: rules from the root's '.lbignore'
- match_entries: entries selected by COPY/RUN source patterns
"""

from .snapshot import ContextSnapshotter, load_ignore_file, match_entries, snapshot

__all__ = [
    'ContextSnapshotter',
    'load_ignore_file',
    'match_entries',
    'snapshot',
]
