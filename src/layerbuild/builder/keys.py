"""
Cache key derivation

A layer's hash is the digest of its CacheKey, so everything that can change
an instruction's result must be in the key, and nothing else may be. In
particular COPY and RUN only see the context entries their patterns select:
editing an unrelated file leaves their keys untouched.
"""

import logging
from typing import Dict, List, Optional, Tuple

from ..datacls import Arg, BaseInstruction, BuildContext, CacheKey, Copy, FileEntry, Layer, Run
from ..exceptions import BuildError
from ..utils.hashing import digest_of

logger = logging.getLogger(__name__)


def _entry_digests(entries: List[FileEntry]) -> Tuple[Tuple[str, str], ...]:
    return tuple((e.path, digest_of([e.kind.value, e.digest, e.mode])) for e in entries)


def payload_digest(instruction: BaseInstruction, build_args: Optional[Dict[str, str]] = None) -> str:
    """Digest of the instruction's own arguments; ARG also covers its resolved value."""
    if isinstance(instruction, Arg):
        return digest_of({
            "kind": instruction.kind,
            "payload": instruction.payload(),
            "value": instruction.resolve(build_args),
        })
    return instruction.payload_digest()


def context_digests(
    instruction: BaseInstruction,
    context: BuildContext,
    source: Optional[Layer] = None,
) -> Tuple[Tuple[str, str], ...]:
    """
    The context-dependent part of a key

    - COPY from the context: the entries matched by its source patterns
    - COPY --from a stage: the tip layer hash of that stage
    - RUN: the entries matched by its declared inputs
    - anything else: nothing
    """
    if isinstance(instruction, Copy):
        if instruction.from_stage is not None:
            if source is None:
                raise BuildError(f"COPY --from={instruction.from_stage} needs the source stage's layer")
            return (("source", source.hash),)
        return _entry_digests(context.select(instruction.src))
    if isinstance(instruction, Run) and instruction.inputs:
        return _entry_digests(context.select(instruction.inputs))
    return ()


def compute_key(
    parent: Optional[Layer],
    instruction: BaseInstruction,
    context: BuildContext,
    *,
    source: Optional[Layer] = None,
    build_args: Optional[Dict[str, str]] = None,
) -> CacheKey:
    """Compute the CacheKey of ``instruction`` applied on top of ``parent``."""
    key = CacheKey(
        parent_hash=parent.hash if parent else None,
        kind=instruction.kind,
        payload_digest=payload_digest(instruction, build_args),
        context_digests=context_digests(instruction, context, source),
    )
    logger.debug(
        f"[Keys] {instruction.summary()}: parent={key.parent_hash} "
        f"context_inputs={len(key.context_digests)}"
    )
    return key
