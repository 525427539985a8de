"""
Instruction executors

The core never runs anything itself. On a cache miss the LayerBuilder hands
the instruction to an InstructionExecutor and stores whatever opaque delta it
returns. Retry policy for flaky commands belongs here, not in the core.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .datacls import BaseInstruction, BuildContext, Copy, FromImage, Layer, Run
from .exceptions import ExecutorError
from .utils.hashing import canonical_json
from .utils.reflection import instantiate

logger = logging.getLogger(__name__)


class InstructionExecutor(ABC):
    """
    Abstract collaborator that turns an instruction into a filesystem delta.

    Implementations must be safe to call from several worker threads at once,
    one call per stage at a time.
    """

    @abstractmethod
    def execute(
        self,
        parent: Optional[Layer],
        instruction: BaseInstruction,
        context: BuildContext,
        *,
        source: Optional[Layer] = None,
        build_args: Optional[Dict[str, str]] = None,
    ) -> bytes:
        """
        Execute an instruction on top of ``parent``

        Args:
            parent: layer the instruction applies to, None for the first layer
            instruction: instruction to execute
            context: build context snapshot
            source: tip layer of the source stage for COPY --from
            build_args: resolved build arguments

        Returns:
            bytes: opaque filesystem delta

        Raises:
            ExecutorError: if the instruction fails
        """
        pass

    def cancel(self):
        """Cooperatively cancel in-flight executions. The default does nothing."""
        pass


class ManifestExecutor(InstructionExecutor):
    """
    Deterministic executor whose delta is a JSON manifest of the change.

    It never touches the filesystem, which makes it suitable for planning a
    build, for checking cache behaviour and for tests.
    """

    def execute(
        self,
        parent: Optional[Layer],
        instruction: BaseInstruction,
        context: BuildContext,
        *,
        source: Optional[Layer] = None,
        build_args: Optional[Dict[str, str]] = None,
    ) -> bytes:
        parent_hash = parent.hash if parent else None
        if isinstance(instruction, FromImage):
            manifest = {"op": "base", "ref": instruction.ref}
        elif isinstance(instruction, Copy) and instruction.from_stage is not None:
            if source is None:
                raise ExecutorError(f"COPY --from={instruction.from_stage} has no source layer")
            manifest = {
                "op": "copy",
                "parent": parent_hash,
                "from_layer": source.hash,
                "src": list(instruction.src),
                "dest": instruction.dest,
            }
        elif isinstance(instruction, Copy):
            files = context.select(instruction.src)
            if not files:
                raise ExecutorError(f"COPY sources {list(instruction.src)} matched no files in the build context")
            manifest = {
                "op": "copy",
                "parent": parent_hash,
                "dest": instruction.dest,
                "files": [
                    {"path": f.path, "kind": f.kind.value, "digest": f.digest, "mode": f.mode}
                    for f in files
                ],
            }
        elif isinstance(instruction, Run):
            manifest = {
                "op": "run",
                "parent": parent_hash,
                "command": instruction.command,
                "inputs": [f.digest for f in context.select(instruction.inputs)] if instruction.inputs else [],
            }
        else:
            raise ExecutorError(f"{instruction.kind.upper()} does not produce a filesystem delta")

        logger.debug(f"[ManifestExecutor] {instruction.summary()}")
        return canonical_json(manifest)


def load_executor(ref: Optional[str] = None, **kwargs) -> InstructionExecutor:
    """
    Create an executor from a 'package.module:Class' reference

    Args:
        ref: class reference, ManifestExecutor when omitted
        kwargs: constructor arguments

    Raises:
        ExecutorError: if the reference cannot be loaded or is not an executor
    """
    if not ref:
        return ManifestExecutor()
    try:
        executor = instantiate(ref, InstructionExecutor, **kwargs)
    except (ImportError, AttributeError, ValueError, TypeError) as e:
        raise ExecutorError(f"Could not load executor '{ref}': {e}")
    logger.info(f"Using executor '{ref}'")
    return executor
