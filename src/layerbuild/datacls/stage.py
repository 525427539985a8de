from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .instructions import Copy, FromImage, Instruction
from .layers import Layer, LayerResult


class Stage(BaseModel):
    """A named, ordered sequence of instructions with its own layer chain."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    instructions: Tuple[Instruction, ...] = ()
    # position used for ordinal references; defaults to the index in the definition
    ordinal: Optional[int] = Field(default=None, ge=0)

    @property
    def base(self) -> Optional[FromImage]:
        """The leading FROM instruction, if any."""
        if self.instructions and isinstance(self.instructions[0], FromImage):
            return self.instructions[0]
        return None

    @property
    def copy_sources(self) -> List[str]:
        """Stage references of all COPY --from instructions, in order."""
        return [
            ins.from_stage for ins in self.instructions
            if isinstance(ins, Copy) and ins.from_stage is not None
        ]


class StageOutput(BaseModel):
    """
    What running one stage produced.

    ``chain`` is the full layer chain root-to-tip, including the layers of a
    stage this one is built FROM; ``steps`` only covers the stage's own
    instructions.
    """
    model_config = ConfigDict(frozen=True)

    stage: Stage
    base_stage: Optional[str] = None
    chain: Tuple[Layer, ...] = ()
    steps: Tuple[LayerResult, ...] = ()

    @property
    def tip(self) -> Optional[Layer]:
        return self.chain[-1] if self.chain else None

    @property
    def hits(self) -> int:
        return sum(1 for s in self.steps if s.cached)

    @property
    def misses(self) -> int:
        return sum(1 for s in self.steps if not s.cached)

    @property
    def executor_calls(self) -> int:
        """Misses that actually ran the executor (metadata layers never do)."""
        return sum(1 for s in self.steps if not s.cached and not s.layer.empty)
