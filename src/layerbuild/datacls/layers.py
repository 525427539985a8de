from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..utils.hashing import digest_of
from .instructions import Instruction


class CacheKey(BaseModel):
    """
    Everything an instruction's result depends on.

    Two keys with the same digest are cache-equivalent; nothing time-dependent
    takes part in it.
    """
    model_config = ConfigDict(frozen=True)

    parent_hash: Optional[str]
    kind: str
    payload_digest: str
    context_digests: Tuple[Tuple[str, str], ...] = ()

    @property
    def digest(self) -> str:
        return digest_of({
            "parent": self.parent_hash,
            "kind": self.kind,
            "payload": self.payload_digest,
            "context": [list(pair) for pair in self.context_digests],
        })


class Layer(BaseModel):
    """
    Immutable, content-addressed result of one instruction.

    ``hash`` is the digest of the CacheKey that produced it. ``delta_ref`` points
    at the opaque filesystem delta blob; metadata-only layers have none.
    """
    model_config = ConfigDict(frozen=True)

    hash: str
    parent_hash: Optional[str] = None
    instruction: Instruction
    delta_ref: Optional[str] = None
    empty: bool = False

    @property
    def short_hash(self) -> str:
        return self.hash.split(":", 1)[-1][:12]


class LayerResult(BaseModel):
    """A layer together with whether it came from the cache."""
    model_config = ConfigDict(frozen=True)

    layer: Layer
    cached: bool
