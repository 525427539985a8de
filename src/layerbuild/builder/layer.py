import logging
import threading
from typing import Dict, Optional

from ..cache.store import CacheStore
from ..constants import METADATA_KINDS
from ..datacls import BaseInstruction, BuildContext, Layer, LayerResult
from ..exceptions import BuildCancelledError, ExecutionError, ExecutorError
from ..executor import InstructionExecutor
from ..utils.hashing import sha256_bytes
from .keys import compute_key

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag shared by every worker of one build."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise BuildCancelledError("Build was cancelled")


class LayerBuilder:
    """
    Produces one layer per instruction, reusing cached layers where the
    cache key matches.

    A builder is shared by all stages of a build; it keeps no per-stage state,
    miss propagation is driven by the caller through ``force_miss``.
    """

    def __init__(
        self,
        store: CacheStore,
        executor: InstructionExecutor,
        token: Optional[CancelToken] = None,
        build_args: Optional[Dict[str, str]] = None,
        owner: Optional[str] = None,
    ):
        """
        Args:
            store: layer store
            executor: collaborator that runs instructions on a miss
            token: cancellation token of the surrounding build
            build_args: resolved build arguments
            owner: pending-build id under which every touched layer is retained
        """
        self.store = store
        self.executor = executor
        self.token = token or CancelToken()
        self.build_args = dict(build_args or {})
        self.owner = owner

    def build(
        self,
        parent: Optional[Layer],
        instruction: BaseInstruction,
        context: BuildContext,
        *,
        source: Optional[Layer] = None,
    ) -> Layer:
        """Build (or reuse) the layer of ``instruction`` on top of ``parent``."""
        return self.step(parent, instruction, context, source=source).layer

    def step(
        self,
        parent: Optional[Layer],
        instruction: BaseInstruction,
        context: BuildContext,
        *,
        source: Optional[Layer] = None,
        force_miss: bool = False,
        stage: Optional[str] = None,
        index: Optional[int] = None,
    ) -> LayerResult:
        """
        Build one layer and report whether it came from the cache

        Args:
            parent: layer the instruction applies to, None for the first one
            instruction: instruction to apply
            context: build context snapshot
            source: tip layer of the source stage for COPY --from
            force_miss: skip the cache lookup; set once an earlier
                instruction of the same stage missed
            stage: stage name, for error reporting
            index: instruction index within the stage, for error reporting

        Returns:
            LayerResult: the layer and whether it was a cache hit

        Raises:
            ExecutionError: if the executor fails
            BuildCancelledError: if the build was cancelled
        """
        key = compute_key(parent, instruction, context, source=source, build_args=self.build_args)
        layer_hash = key.digest
        if self.owner is not None:
            cached = self.store.acquire(self.owner, layer_hash)
        else:
            cached = self.store.get(layer_hash)

        if cached is not None and not force_miss:
            logger.debug(f"[LayerBuilder] HIT  {cached.short_hash} {instruction.summary()}")
            return LayerResult(layer=cached, cached=True)

        self.token.raise_if_cancelled()
        parent_hash = parent.hash if parent else None

        if instruction.kind in METADATA_KINDS:
            layer = Layer(hash=layer_hash, parent_hash=parent_hash, instruction=instruction, empty=True)
            layer = self._store(layer)
            logger.debug(f"[LayerBuilder] MISS {layer.short_hash} {instruction.summary()} (metadata)")
            return LayerResult(layer=layer, cached=False)

        logger.info(f"[LayerBuilder] Executing {instruction.summary()}")
        try:
            delta = self.executor.execute(
                parent, instruction, context, source=source, build_args=self.build_args
            )
        except ExecutorError as e:
            if self.token.cancelled:
                raise BuildCancelledError("Build was cancelled") from e
            raise ExecutionError(str(e), stage=stage, index=index, instruction=instruction) from e
        except Exception as e:
            if self.token.cancelled:
                raise BuildCancelledError("Build was cancelled") from e
            raise ExecutionError(
                f"{type(e).__name__}: {e}", stage=stage, index=index, instruction=instruction
            ) from e

        if not isinstance(delta, (bytes, bytearray)):
            raise ExecutionError(
                f"executor returned {type(delta).__name__}, expected bytes",
                stage=stage, index=index, instruction=instruction,
            )
        self.token.raise_if_cancelled()

        delta = bytes(delta)
        layer = Layer(
            hash=layer_hash,
            parent_hash=parent_hash,
            instruction=instruction,
            delta_ref=sha256_bytes(delta),
        )
        layer = self._store(layer, delta)
        logger.debug(f"[LayerBuilder] MISS {layer.short_hash} {instruction.summary()} ({len(delta)} bytes)")
        return LayerResult(layer=layer, cached=False)

    def _store(self, layer: Layer, delta: Optional[bytes] = None) -> Layer:
        """Insert ``layer``; if its hash is already stored, the stored layer wins."""
        while not self.store.put(layer, delta):
            stored = self.store.get(layer.hash)
            # None: pruned between the two calls, insert again
            if stored is not None:
                if stored.delta_ref != layer.delta_ref:
                    logger.debug(f"[LayerBuilder] {layer.short_hash} rebuilt with a different delta, keeping the stored one")
                return stored
        return layer
