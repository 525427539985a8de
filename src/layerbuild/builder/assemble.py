import logging
from typing import Dict, List, Mapping, Optional, Set, Tuple

from ..datacls import (
    Cmd,
    Entrypoint,
    Env,
    Expose,
    Image,
    Layer,
    RuntimeConfig,
    Stage,
    StageOutput,
    User,
)
from ..exceptions import AssemblyError
from ..utils.hashing import digest_of

logger = logging.getLogger(__name__)


def _port_order(spec: str) -> Tuple[int, str]:
    port, _, protocol = spec.partition("/")
    return int(port), protocol


class ImageAssembler:
    """
    Folds the outputs of a target stage into an immutable Image
    """

    def assemble(self, target_stage: Stage, stage_outputs: Mapping[str, StageOutput]) -> Image:
        """
        Assemble the image of ``target_stage``

        Args:
            target_stage: the stage the image is built from
            stage_outputs: outputs of every stage that ran, by stage name

        Returns:
            Image: ordered layers root-to-tip and the folded runtime config

        Raises:
            AssemblyError: if the target (or a stage it is built FROM) has no output
        """
        output = stage_outputs.get(target_stage.name)
        if output is None or not output.chain:
            raise AssemblyError(f"Stage '{target_stage.name}' produced no layers")

        layers = self._ordered_layers(output)
        runtime = self._fold_runtime(output, stage_outputs)
        layer_hashes = [layer.hash for layer in layers]
        image_id = digest_of({
            "layers": layer_hashes,
            "config": runtime.model_dump(mode="json"),
        })
        image = Image(
            id=image_id,
            target=target_stage.name,
            ordered_layers=tuple(layers),
            runtime_config=runtime,
        )
        logger.info(f"[ImageAssembler] Assembled image {image_id} from {len(layers)} layers")
        return image

    def _ordered_layers(self, output: StageOutput) -> List[Layer]:
        layers = list(output.chain)
        previous: Optional[str] = None
        for layer in layers:
            if layer.parent_hash != previous:
                raise AssemblyError(
                    f"Layer chain of stage '{output.stage.name}' is broken at {layer.short_hash}"
                )
            previous = layer.hash
        return layers

    def _fold_runtime(self, output: StageOutput, stage_outputs: Mapping[str, StageOutput]) -> RuntimeConfig:
        env: Dict[str, str] = {}
        ports: Set[str] = set()
        settings: Dict[str, object] = {"entrypoint": None, "cmd": None, "user": None}

        lineage: List[StageOutput] = []
        current: Optional[StageOutput] = output
        while current is not None:
            if current.stage.name in {o.stage.name for o in lineage}:
                raise AssemblyError(f"Stage '{current.stage.name}' is its own base")
            lineage.append(current)
            if current.base_stage is None:
                break
            base = stage_outputs.get(current.base_stage)
            if base is None:
                raise AssemblyError(
                    f"Stage '{current.stage.name}' is built from '{current.base_stage}', which produced no output"
                )
            current = base

        # base stages first, then the stage itself
        for item in reversed(lineage):
            for instruction in item.stage.instructions:
                if isinstance(instruction, Env):
                    env.update(instruction.values)
                elif isinstance(instruction, Expose):
                    ports.add(instruction.spec)
                elif isinstance(instruction, User):
                    settings["user"] = instruction.identity
                elif isinstance(instruction, Entrypoint):
                    settings["entrypoint"] = instruction.argv
                elif isinstance(instruction, Cmd):
                    settings["cmd"] = instruction.argv

        return RuntimeConfig(
            env=env,
            exposed_ports=tuple(sorted(ports, key=_port_order)),
            **settings,
        )


def assemble(target_stage: Stage, stage_outputs: Mapping[str, StageOutput]) -> Image:
    return ImageAssembler().assemble(target_stage, stage_outputs)
