import logging
from typing import Dict, List, Optional, Sequence

from ..datacls import FromImage, Stage
from ..exceptions import (
    CircularDependencyError,
    ReferenceNotFoundError,
    StageDefinitionError,
)

logger = logging.getLogger(__name__)


class StageGraph:
    """
    Dependency graph between the stages of one build definition.

    Edges come from ``FromImage(ref=X)`` and ``Copy(from_stage=X)`` where X
    names another stage, either by name or by its ordinal. A stage without an
    explicit ordinal takes its position in the list.
    Construction validates every stage, reachable from the target or not.
    """

    def __init__(self, stages: Sequence[Stage]):
        self.stages: List[Stage] = list(stages)
        self._by_name: Dict[str, Stage] = {}
        self._by_ordinal: Dict[int, Stage] = {}
        self._ordinals: Dict[str, int] = {}
        for position, stage in enumerate(self.stages):
            if stage.name in self._by_name:
                raise StageDefinitionError(f"Duplicate stage name '{stage.name}'")
            ordinal = stage.ordinal if stage.ordinal is not None else position
            if ordinal in self._by_ordinal:
                raise StageDefinitionError(
                    f"Stages '{self._by_ordinal[ordinal].name}' and '{stage.name}' share ordinal {ordinal}"
                )
            self._by_name[stage.name] = stage
            self._by_ordinal[ordinal] = stage
            self._ordinals[stage.name] = ordinal
            for index, instruction in enumerate(stage.instructions):
                if index > 0 and isinstance(instruction, FromImage):
                    raise StageDefinitionError(
                        f"Stage '{stage.name}': FROM must be the first instruction (found at #{index})"
                    )
        self._deps: Dict[str, List[str]] = {s.name: self._direct_deps(s) for s in self.stages}
        self._check_cycles()

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def lookup(self, ref: str) -> Optional[Stage]:
        """Find a stage by name, then by ordinal; None if neither matches."""
        if ref in self._by_name:
            return self._by_name[ref]
        if ref.isdigit():
            return self._by_ordinal.get(int(ref))
        return None

    def get(self, name: str) -> Stage:
        stage = self.lookup(name)
        if stage is None:
            raise ReferenceNotFoundError(f"Stage '{name}' not found")
        return stage

    def ordinal(self, name: str) -> int:
        return self._ordinals[name]

    def base_of(self, stage: Stage) -> Optional[Stage]:
        """The stage ``stage`` is built FROM, None for an external base."""
        if stage.base is None:
            return None
        return self.lookup(stage.base.ref)

    def dependencies(self, name: str) -> List[str]:
        """Direct dependencies of a stage: its FROM stage first, then COPY sources."""
        return list(self._deps[self.get(name).name])

    def _direct_deps(self, stage: Stage) -> List[str]:
        deps: List[str] = []
        base = stage.base
        if base is not None:
            # a FROM that names no stage is an external image
            target = self.lookup(base.ref)
            if target is not None:
                deps.append(target.name)
        for ref in stage.copy_sources:
            target = self.lookup(ref)
            if target is None:
                raise ReferenceNotFoundError(
                    f"Stage '{stage.name}' copies from unknown stage '{ref}'"
                )
            if target.name not in deps:
                deps.append(target.name)
        if stage.name in deps:
            raise CircularDependencyError(f"Stage '{stage.name}' depends on itself")
        return deps

    def _check_cycles(self):
        visiting: List[str] = []
        visited = set()

        def visit(name: str):
            if name in visited:
                return
            if name in visiting:
                loop = visiting[visiting.index(name):] + [name]
                raise CircularDependencyError(f"Circular dependency between stages: {' -> '.join(loop)}")
            visiting.append(name)
            for dep in self._deps[name]:
                visit(dep)
            visiting.pop()
            visited.add(name)

        for stage in self.stages:
            visit(stage.name)


class StageGraphResolver:
    """
    Decides which stages a target needs and in what order they run
    """

    def __init__(self):
        self.graph: Optional[StageGraph] = None

    def resolve(self, stages: Sequence[Stage], target: str) -> List[Stage]:
        """
        Resolve the stages required by ``target``

        Args:
            stages: every stage of the build definition
            target: name or ordinal of the stage to build

        Returns:
            List[Stage]: the target and its transitive dependencies, each
            stage after all of its dependencies; siblings in ordinal order

        Raises:
            ReferenceNotFoundError: unknown target or stage reference
            CircularDependencyError: if the stages form a cycle
            StageDefinitionError: duplicate names or ordinals, or a misplaced FROM
        """
        graph = StageGraph(stages)
        self.graph = graph
        target_stage = graph.lookup(target)
        if target_stage is None:
            raise ReferenceNotFoundError(f"Target stage '{target}' not found")

        ordered: List[Stage] = []
        seen = set()

        def visit(name: str):
            if name in seen:
                return
            seen.add(name)
            for dep in sorted(graph.dependencies(name), key=graph.ordinal):
                visit(dep)
            ordered.append(graph.get(name))

        visit(target_stage.name)
        skipped = [s.name for s in graph.stages if s.name not in seen]
        logger.debug(
            f"[Resolver] Target '{target_stage.name}' needs {[s.name for s in ordered]}"
            + (f", skipping {skipped}" if skipped else "")
        )
        return ordered


def resolve(stages: Sequence[Stage], target: str) -> List[Stage]:
    return StageGraphResolver().resolve(stages, target)
