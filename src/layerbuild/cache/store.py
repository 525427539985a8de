"""
Content-addressed layer store

The store is the only shared mutable resource of a build. Layers are keyed by
hash and stored at most once; their deltas are kept as blobs addressed by
their own digest, so identical deltas are shared as well.
"""

import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import fsspec
from pydantic import ValidationError

from ..datacls import Layer
from ..exceptions import CacheCorruptionError, CacheError
from ..utils.hashing import sha256_bytes, split_digest
from .index import LayerRecord, PrunePredicate

logger = logging.getLogger(__name__)


class _Gate:
    """
    Shared/exclusive gate.

    Writers of individual layers enter shared mode and may run concurrently;
    pruning enters exclusive mode so it never deletes a blob a concurrent put
    is about to reference.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._shared += 1
        try:
            yield
        finally:
            with self._cond:
                self._shared -= 1
                self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive or self._shared:
                self._cond.wait()
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class CacheStore(ABC):
    """
    Abstract layer store.

    ``get`` and ``has`` take no locks. ``put`` is serialized per hash and is
    idempotent. A layer only becomes visible once its record is committed,
    which happens after its delta blob has been written, so readers never see
    a partially written layer.

    Entries are reference counted by owner: pending builds hold non-durable
    references, assembled images hold durable ones. Both kinds are written
    through to the backend, so every handle on the same store sees them.
    ``prune`` only removes records nobody references.
    """

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._put_locks: Dict[str, List[Any]] = {}
        self._gate = _Gate()
        self._refs_lock = threading.RLock()
        self._pending_refs: Dict[str, Set[str]] = {}

    # ---- backend primitives ----
    @abstractmethod
    def _read_record(self, layer_hash: str) -> Optional[LayerRecord]:
        pass

    @abstractmethod
    def _commit_record(self, record: LayerRecord):
        pass

    @abstractmethod
    def _delete_record(self, layer_hash: str):
        pass

    @abstractmethod
    def _iter_records(self) -> Iterable[LayerRecord]:
        pass

    @abstractmethod
    def _has_blob(self, ref: str) -> bool:
        pass

    @abstractmethod
    def _read_blob(self, ref: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def _write_blob(self, ref: str, data: bytes):
        pass

    @abstractmethod
    def _delete_blob(self, ref: str):
        pass

    @abstractmethod
    def _iter_blob_refs(self) -> Iterable[str]:
        pass

    @abstractmethod
    def _load_refs(self) -> Dict[str, Set[str]]:
        pass

    @abstractmethod
    def _read_ref(self, owner: str) -> Optional[Set[str]]:
        pass

    @abstractmethod
    def _save_ref(self, owner: str, hashes: Set[str], durable: bool):
        pass

    @abstractmethod
    def _delete_ref(self, owner: str):
        pass

    # ---- public API ----
    def get(self, layer_hash: str) -> Optional[Layer]:
        """Return the stored layer, or None on a miss."""
        record = self._read_record(layer_hash)
        return record.to_layer() if record else None

    def has(self, layer_hash: str) -> bool:
        return self._read_record(layer_hash) is not None

    def entry(self, layer_hash: str) -> Optional[LayerRecord]:
        """Index record of a stored layer."""
        return self._read_record(layer_hash)

    def entries(self) -> List[LayerRecord]:
        """All index records, ordered by creation time then hash."""
        return sorted(self._iter_records(), key=lambda r: (r.created_at, r.hash))

    def put(self, layer: Layer, delta: Optional[bytes] = None) -> bool:
        """
        Store a layer and its delta

        Args:
            layer: layer to store
            delta: delta blob content; required unless the layer has no
                delta_ref or the blob is already stored

        Returns:
            bool: True if the layer was inserted, False if it already existed

        Raises:
            CacheCorruptionError: if the delta does not match layer.delta_ref
            CacheError: if the layer references a blob that is neither given nor stored
        """
        if delta is not None:
            if layer.delta_ref is None:
                raise CacheError(f"Layer {layer.short_hash} has no delta_ref but a delta was given")
            actual = sha256_bytes(delta)
            if actual != layer.delta_ref:
                raise CacheCorruptionError(
                    f"Delta of layer {layer.short_hash} hashes to {actual}, expected {layer.delta_ref}"
                )

        with self._gate.shared(), self._lock_for(layer.hash):
            if self._read_record(layer.hash) is not None:
                logger.debug(f"[CacheStore] Layer {layer.short_hash} already stored, skipping")
                return False

            delta_size = 0
            if layer.delta_ref is not None:
                if delta is not None:
                    delta_size = len(delta)
                    if not self._has_blob(layer.delta_ref):
                        self._write_blob(layer.delta_ref, delta)
                elif self._has_blob(layer.delta_ref):
                    delta_size = len(self._read_blob(layer.delta_ref) or b"")
                else:
                    raise CacheError(f"Blob {layer.delta_ref} of layer {layer.short_hash} is not stored")

            self._commit_record(LayerRecord.from_layer(layer, delta_size=delta_size))
            logger.debug(f"[CacheStore] Stored layer {layer.short_hash} ({layer.instruction.summary()})")
            return True

    def read_delta(self, ref: str) -> bytes:
        """
        Read a delta blob, verifying its content address

        Raises:
            CacheError: if the blob is not stored
            CacheCorruptionError: if its content does not match the reference
        """
        data = self._read_blob(ref)
        if data is None:
            raise CacheError(f"Blob {ref} is not stored")
        if sha256_bytes(data) != ref:
            raise CacheCorruptionError(f"Blob {ref} is corrupted")
        return data

    # ---- references ----
    def retain(self, owner: str, hashes: Iterable[str], durable: bool = False):
        """
        Add references from ``owner`` to the given layer hashes

        Args:
            owner: image id or build id holding the references
            hashes: layer hashes to protect from pruning
            durable: image references that outlive the build; pending builds use False
        """
        hashes = set(hashes)
        with self._refs_lock:
            if durable:
                merged = (self._read_ref(owner) or set()) | hashes
            else:
                merged = self._pending_refs.setdefault(owner, set())
                if hashes <= merged:
                    return
                merged.update(hashes)
            self._save_ref(owner, merged, durable)
        logger.debug(f"[CacheStore] '{owner}' retains {len(hashes)} layers (durable={durable})")

    def acquire(self, owner: str, layer_hash: str) -> Optional[Layer]:
        """
        Retain ``layer_hash`` for ``owner`` and look it up, as one step
        with respect to ``prune``: a layer returned here stays stored until
        the owner releases it.
        """
        with self._gate.shared():
            self.retain(owner, [layer_hash])
            return self.get(layer_hash)

    def release(self, owner: str):
        """Drop every reference held by ``owner``."""
        with self._refs_lock:
            self._pending_refs.pop(owner, None)
            self._delete_ref(owner)
        logger.debug(f"[CacheStore] Released references of '{owner}'")

    def references(self) -> Dict[str, Set[str]]:
        """Owner -> referenced hashes, pending and durable combined, as currently stored."""
        with self._refs_lock:
            return self._load_refs()

    def refcount(self, layer_hash: str) -> int:
        """Number of owners referencing a layer."""
        return sum(1 for hashes in self.references().values() if layer_hash in hashes)

    def prune(self, predicate: PrunePredicate) -> List[str]:
        """
        Remove unreferenced layers selected by ``predicate``

        Blobs no longer used by any remaining record are removed as well.

        Returns:
            List[str]: hashes of the removed layers
        """
        removed: List[str] = []
        with self._gate.exclusive():
            referenced: Set[str] = set()
            for hashes in self.references().values():
                referenced.update(hashes)

            kept_blobs: Set[str] = set()
            for record in self.entries():
                if record.hash not in referenced and predicate(record):
                    self._delete_record(record.hash)
                    removed.append(record.hash)
                elif record.delta_ref is not None:
                    kept_blobs.add(record.delta_ref)

            orphaned = [ref for ref in self._iter_blob_refs() if ref not in kept_blobs]
            for ref in orphaned:
                self._delete_blob(ref)

        logger.info(f"[CacheStore] Pruned {len(removed)} layers and {len(orphaned)} blobs")
        return removed

    def stats(self) -> Dict[str, Any]:
        records = self.entries()
        references = self.references()
        referenced: Set[str] = set()
        for hashes in references.values():
            referenced.update(hashes)
        blob_sizes: Dict[str, int] = {}
        for record in records:
            if record.delta_ref is not None:
                blob_sizes[record.delta_ref] = record.delta_size
        return {
            'layers': len(records),
            'empty_layers': sum(1 for r in records if r.empty),
            'blobs': len(blob_sizes),
            'blob_bytes': sum(blob_sizes.values()),
            'owners': len(references),
            'referenced_layers': len(referenced & {r.hash for r in records}),
        }

    @contextmanager
    def _lock_for(self, layer_hash: str) -> Iterator[None]:
        # [lock, waiters]; the entry goes away with its last waiter
        with self._locks_guard:
            slot = self._put_locks.setdefault(layer_hash, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._put_locks[layer_hash]


class MemoryCacheStore(CacheStore):
    """In-process store, used for tests and throwaway builds."""

    def __init__(self):
        super().__init__()
        self._records: Dict[str, LayerRecord] = {}
        self._blobs: Dict[str, bytes] = {}
        self._refs: Dict[str, Set[str]] = {}

    def _read_record(self, layer_hash: str) -> Optional[LayerRecord]:
        return self._records.get(layer_hash)

    def _commit_record(self, record: LayerRecord):
        self._records[record.hash] = record

    def _delete_record(self, layer_hash: str):
        self._records.pop(layer_hash, None)

    def _iter_records(self) -> Iterable[LayerRecord]:
        return list(self._records.values())

    def _has_blob(self, ref: str) -> bool:
        return ref in self._blobs

    def _read_blob(self, ref: str) -> Optional[bytes]:
        return self._blobs.get(ref)

    def _write_blob(self, ref: str, data: bytes):
        self._blobs[ref] = bytes(data)

    def _delete_blob(self, ref: str):
        self._blobs.pop(ref, None)

    def _iter_blob_refs(self) -> Iterable[str]:
        return list(self._blobs.keys())

    def _load_refs(self) -> Dict[str, Set[str]]:
        return {owner: set(hashes) for owner, hashes in self._refs.items()}

    def _read_ref(self, owner: str) -> Optional[Set[str]]:
        hashes = self._refs.get(owner)
        return set(hashes) if hashes is not None else None

    def _save_ref(self, owner: str, hashes: Set[str], durable: bool):
        self._refs[owner] = set(hashes)

    def _delete_ref(self, owner: str):
        self._refs.pop(owner, None)


_UNSAFE_OWNER_CHARS = re.compile(r'[^A-Za-z0-9._-]')


class FileCacheStore(CacheStore):
    """
    Durable store on top of an fsspec filesystem.

    Layout under ``root``::

        blobs/sha256/ab/<rest>         delta blobs
        index/sha256/ab/<rest>.json    layer records
        refs/<owner>.json              durable references
        tmp/                           staging area for atomic writes

    Every file is written to ``tmp/`` first and renamed into place, so a
    crashed or cancelled write never leaves a partial blob or record behind.
    """

    def __init__(self, root: str, fs: Optional[fsspec.AbstractFileSystem] = None):
        """
        Args:
            root: store directory
            fs: fsspec filesystem, local disk by default
        """
        super().__init__()
        self.fs = fs if fs is not None else fsspec.filesystem("file")
        self.root = str(root).rstrip("/")
        for sub in ("blobs", "index", "refs", "tmp"):
            self.fs.makedirs(f"{self.root}/{sub}", exist_ok=True)
        logger.debug(f"[CacheStore] Opened store at '{self.root}'")

    # ---- paths ----
    def _fanout(self, kind: str, digest: str, suffix: str = "") -> str:
        algorithm, hexpart = split_digest(digest)
        return f"{self.root}/{kind}/{algorithm}/{hexpart[:2]}/{hexpart[2:]}{suffix}"

    def _ref_path(self, owner: str) -> str:
        return f"{self.root}/refs/{_UNSAFE_OWNER_CHARS.sub('_', owner)}.json"

    def _atomic_write(self, path: str, data: bytes):
        tmp = f"{self.root}/tmp/{uuid.uuid4().hex}"
        with self.fs.open(tmp, "wb") as f:
            f.write(data)
        parent = path.rsplit("/", 1)[0]
        self.fs.makedirs(parent, exist_ok=True)
        self.fs.mv(tmp, path)

    def _cat(self, path: str) -> Optional[bytes]:
        try:
            return self.fs.cat_file(path)
        except FileNotFoundError:
            return None

    # ---- records ----
    def _parse_record(self, path: str, data: bytes) -> LayerRecord:
        try:
            return LayerRecord.model_validate_json(data)
        except ValidationError as e:
            raise CacheCorruptionError(f"Invalid layer record at {path}: {e}")

    def _read_record(self, layer_hash: str) -> Optional[LayerRecord]:
        try:
            path = self._fanout("index", layer_hash, ".json")
        except ValueError:
            return None
        data = self._cat(path)
        if data is None:
            return None
        record = self._parse_record(path, data)
        if record.hash != layer_hash:
            raise CacheCorruptionError(f"Record at {path} describes {record.hash}")
        return record

    def _commit_record(self, record: LayerRecord):
        self._atomic_write(self._fanout("index", record.hash, ".json"), record.model_dump_json().encode("utf-8"))

    def _delete_record(self, layer_hash: str):
        path = self._fanout("index", layer_hash, ".json")
        if self.fs.exists(path):
            self.fs.rm(path)

    def _iter_records(self) -> Iterable[LayerRecord]:
        records = []
        for path in self.fs.find(f"{self.root}/index"):
            if not path.endswith(".json"):
                continue
            data = self._cat(path)
            if data is not None:
                records.append(self._parse_record(path, data))
        return records

    # ---- blobs ----
    def _has_blob(self, ref: str) -> bool:
        return self.fs.exists(self._fanout("blobs", ref))

    def _read_blob(self, ref: str) -> Optional[bytes]:
        return self._cat(self._fanout("blobs", ref))

    def _write_blob(self, ref: str, data: bytes):
        self._atomic_write(self._fanout("blobs", ref), data)

    def _delete_blob(self, ref: str):
        path = self._fanout("blobs", ref)
        if self.fs.exists(path):
            self.fs.rm(path)

    def _iter_blob_refs(self) -> Iterable[str]:
        refs = []
        for path in self.fs.find(f"{self.root}/blobs"):
            parts = path.rstrip("/").split("/")
            if len(parts) < 3:
                continue
            algorithm, prefix, rest = parts[-3], parts[-2], parts[-1]
            refs.append(f"{algorithm}:{prefix}{rest}")
        return refs

    # ---- references ----
    def _parse_ref(self, path: str, data: bytes) -> Tuple[str, Set[str]]:
        try:
            content = json.loads(data)
            return content["owner"], set(content["hashes"])
        except (ValueError, KeyError, TypeError) as e:
            raise CacheCorruptionError(f"Invalid reference file {path}: {e}")

    def _load_refs(self) -> Dict[str, Set[str]]:
        refs: Dict[str, Set[str]] = {}
        for path in self.fs.find(f"{self.root}/refs"):
            data = self._cat(path)
            if data is None:
                continue
            owner, hashes = self._parse_ref(path, data)
            refs[owner] = hashes
        return refs

    def _read_ref(self, owner: str) -> Optional[Set[str]]:
        path = self._ref_path(owner)
        data = self._cat(path)
        if data is None:
            return None
        return self._parse_ref(path, data)[1]

    def _save_ref(self, owner: str, hashes: Set[str], durable: bool):
        content = {"owner": owner, "durable": durable, "hashes": sorted(hashes)}
        self._atomic_write(self._ref_path(owner), json.dumps(content, indent=2).encode("utf-8"))

    def _delete_ref(self, owner: str):
        path = self._ref_path(owner)
        if self.fs.exists(path):
            self.fs.rm(path)
