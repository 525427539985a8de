import logging
import os
import stat
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..constants import EntryKind, IGNORE_FILENAME
from ..datacls import BuildContext, FileEntry
from ..exceptions import ContextError, ContextRootError, IgnoreRuleError
from ..utils.hashing import digest_of, sha256_bytes, sha256_stream
from ..utils.patterns import is_ignored, normalize_rules

logger = logging.getLogger(__name__)


def load_ignore_file(root: str | os.PathLike) -> List[str]:
    """
    Read ignore rules from the '.lbignore' file at the context root

    Blank lines and lines starting with '#' are skipped. Returns an empty list
    when the file does not exist.
    """
    ignore_path = Path(root) / IGNORE_FILENAME
    if not ignore_path.is_file():
        return []
    try:
        content = ignore_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise IgnoreRuleError(f"Could not read {ignore_path}: {e}")

    rules = []
    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            rules.append(line)
    logger.debug(f"Loaded {len(rules)} rules from {IGNORE_FILENAME}")
    return rules


class ContextSnapshotter:
    """
    Builds a deterministic, hashed snapshot of a source tree.

    The tree is walked in lexicographic order. Regular files are hashed by
    content. Symlinks are never followed: they are recorded as their own entry
    kind and hashed by their literal target path. Paths excluded by an ignore
    rule do not appear in the snapshot and do not affect its digest.
    """

    def __init__(self, use_ignore_file: bool = True):
        """
        Args:
            use_ignore_file: also apply rules from the root's '.lbignore'
        """
        self.use_ignore_file = use_ignore_file

    def snapshot(self, root: str | os.PathLike, ignore_rules: Optional[Iterable[str]] = None) -> BuildContext:
        """
        Snapshot a context root

        Args:
            root: directory to snapshot
            ignore_rules: glob patterns relative to root

        Returns:
            BuildContext: immutable snapshot

        Raises:
            ContextRootError: if the root is missing or unreadable
            IgnoreRuleError: if an ignore rule is malformed
        """
        root_path = Path(root)
        self._check_root(root_path)

        raw_rules = list(ignore_rules or [])
        if self.use_ignore_file:
            raw_rules.extend(load_ignore_file(root_path))
        rules = normalize_rules(raw_rules)

        logger.info(f"[Snapshot] Scanning context '{root_path}' with {len(rules)} ignore rules...")
        entries: Dict[str, FileEntry] = {}
        ignored = 0
        for rel_path, full_path in self._walk(root_path, rules):
            if is_ignored(rel_path, rules):
                logger.debug(f"[Snapshot] Ignoring file: {rel_path}")
                ignored += 1
                continue
            entry = self._make_entry(rel_path, full_path)
            if entry is not None:
                entries[rel_path] = entry

        digest = digest_of([list(entry.identity()) for entry in entries.values()])
        logger.info(f"[Snapshot] Context has {len(entries)} entries ({ignored} ignored), digest {digest[:19]}")
        return BuildContext(
            root=str(root_path.resolve()),
            entries=entries,
            ignore_rules=rules,
            digest=digest,
        )

    def _check_root(self, root: Path):
        if not root.exists():
            raise ContextRootError(f"Context root does not exist: {root}")
        if not root.is_dir():
            raise ContextRootError(f"Context root is not a directory: {root}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise ContextRootError(f"Context root is not readable: {root}")

    def _walk(self, root: Path, rules: Tuple[str, ...]):
        """Yield (relative posix path, full path) of every non-directory, in sorted order."""

        def on_error(err: OSError):
            raise ContextError(f"Failed to read context directory '{err.filename}': {err.strerror}")

        found: List[Tuple[str, str]] = []
        for dirpath, dirnames, filenames in os.walk(root, topdown=True, onerror=on_error, followlinks=False):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            descend = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                full = os.path.join(dirpath, name)
                if os.path.islink(full):
                    # symlinked directories are entries, not subtrees
                    found.append((rel, full))
                elif is_ignored(rel, rules, is_dir=True):
                    logger.debug(f"[Snapshot] Ignoring directory: {rel}")
                else:
                    descend.append(name)
            dirnames[:] = descend

            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                found.append((rel, os.path.join(dirpath, name)))

        for rel, full in sorted(found):
            yield rel, full

    def _make_entry(self, rel_path: str, full_path: str) -> Optional[FileEntry]:
        try:
            st = os.lstat(full_path)
            if stat.S_ISLNK(st.st_mode):
                target = os.readlink(full_path)
                return FileEntry(
                    path=rel_path,
                    kind=EntryKind.SYMLINK,
                    digest=sha256_bytes(target.encode("utf-8")),
                    mode=stat.S_IMODE(st.st_mode),
                    size=len(target),
                )
            if not stat.S_ISREG(st.st_mode):
                logger.debug(f"[Snapshot] Skipping special file: {rel_path}")
                return None
            with open(full_path, "rb") as f:
                digest = sha256_stream(f)
        except OSError as e:
            raise ContextError(f"Failed to read context file '{rel_path}': {e}")

        return FileEntry(
            path=rel_path,
            kind=EntryKind.FILE,
            digest=digest,
            mode=stat.S_IMODE(st.st_mode),
            size=st.st_size,
        )


def snapshot(root: str | os.PathLike, ignore_rules: Optional[Iterable[str]] = None) -> BuildContext:
    """Snapshot ``root`` with the given ignore rules and the root's '.lbignore'."""
    return ContextSnapshotter().snapshot(root, ignore_rules)


def match_entries(context: BuildContext, patterns: Iterable[str]) -> List[FileEntry]:
    """
    Entries of ``context`` referred to by COPY/RUN source patterns

    A pattern selects an exact path, everything below a directory prefix, or
    every glob match; '.' and '/' select the whole context.
    """
    return context.select(list(patterns))
