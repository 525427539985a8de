from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .layers import Layer
from .stage import StageOutput


class RuntimeConfig(BaseModel):
    """Runtime settings folded from a stage's metadata instructions."""
    model_config = ConfigDict(frozen=True)

    env: Dict[str, str] = Field(default_factory=dict)
    # sorted, duplicate free 'port/proto' specs
    exposed_ports: Tuple[str, ...] = ()
    entrypoint: Optional[Tuple[str, ...]] = None
    cmd: Optional[Tuple[str, ...]] = None
    user: Optional[str] = None


class Image(BaseModel):
    """Final, immutable image descriptor for a build target."""
    model_config = ConfigDict(frozen=True)

    id: str
    target: str
    ordered_layers: Tuple[Layer, ...]
    runtime_config: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @property
    def layer_hashes(self) -> List[str]:
        return [layer.hash for layer in self.ordered_layers]


class BuildResult(BaseModel):
    """Outcome of a successful build: the image plus per-stage outputs."""
    model_config = ConfigDict(frozen=True)

    image: Image
    # stage name -> output, in execution order
    stages: Dict[str, StageOutput]
    context_digest: str

    @property
    def cache_hits(self) -> int:
        return sum(o.hits for o in self.stages.values())

    @property
    def cache_misses(self) -> int:
        return sum(o.misses for o in self.stages.values())

    @property
    def executor_calls(self) -> int:
        return sum(o.executor_calls for o in self.stages.values())
