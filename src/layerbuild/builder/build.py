import asyncio
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence

from ..cache.store import CacheStore
from ..context import ContextSnapshotter
from ..datacls import BuildContext, BuildResult, Copy, Layer, LayerResult, Stage, StageOutput
from ..exceptions import BuildCancelledError, DependencyFailedError
from ..executor import InstructionExecutor, ManifestExecutor
from .assemble import ImageAssembler
from .layer import CancelToken, LayerBuilder
from .resolve import StageGraph, StageGraphResolver

logger = logging.getLogger(__name__)


class Builder:
    """
    Runs the stages a target needs and assembles its image.

    Every stage becomes an asyncio task that waits for the stages it depends
    on and then walks its instructions in a worker thread, so independent
    stages build in parallel while instructions of one stage stay sequential.
    """

    def __init__(
        self,
        store: CacheStore,
        executor: Optional[InstructionExecutor] = None,
        max_workers: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor or ManifestExecutor()
        self.max_workers = max_workers
        self.token = CancelToken()
        self.assembler = ImageAssembler()

    def cancel(self):
        """Stop the build: no new instruction starts and in-flight executions are asked to stop."""
        logger.warning("[Builder] Cancellation requested")
        self.token.cancel()
        self.executor.cancel()

    def build(
        self,
        stages: Sequence[Stage],
        target: str,
        context: BuildContext,
        build_args: Optional[Dict[str, str]] = None,
    ) -> BuildResult:
        return asyncio.run(self.run(stages, target, context, build_args))

    async def run(
        self,
        stages: Sequence[Stage],
        target: str,
        context: BuildContext,
        build_args: Optional[Dict[str, str]] = None,
    ) -> BuildResult:
        """
        Build ``target`` from ``stages`` against a context snapshot

        Raises:
            GraphError: if the stage graph is invalid; nothing runs in that case
            ExecutionError: the first stage failure, in execution order
            BuildCancelledError: if the build was cancelled
            AssemblyError: if the target produced no layers
        """
        resolver = StageGraphResolver()
        ordered = resolver.resolve(stages, target)
        graph = resolver.graph
        self.token.raise_if_cancelled()

        build_id = f"build-{uuid.uuid4().hex}"
        layer_builder = LayerBuilder(
            self.store, self.executor, token=self.token, build_args=build_args, owner=build_id
        )
        outputs: Dict[str, StageOutput] = {}
        logger.info(
            f"[Builder] Building '{ordered[-1].name}' ({len(ordered)} stages, context {context.digest})"
        )

        loop = asyncio.get_running_loop()
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="layerbuild") as pool:
                tasks: Dict[str, asyncio.Task] = {}
                for stage in ordered:
                    tasks[stage.name] = asyncio.ensure_future(
                        self._stage_task(stage, graph, tasks, outputs, pool, loop, layer_builder, context)
                    )
                results = await asyncio.gather(*tasks.values(), return_exceptions=True)

            failures = [(s, r) for s, r in zip(ordered, results) if isinstance(r, BaseException)]
            if failures:
                for stage, error in failures:
                    logger.error(f"[Builder] Stage '{stage.name}' failed: {error}")
                if self.token.cancelled:
                    raise BuildCancelledError("Build was cancelled")
                primary = next(
                    (e for _, e in failures if not isinstance(e, DependencyFailedError)),
                    failures[0][1],
                )
                raise primary

            target_stage = ordered[-1]
            image = self.assembler.assemble(target_stage, outputs)
            self.store.retain(image.id, image.layer_hashes, durable=True)
        finally:
            self.store.release(build_id)

        result = BuildResult(
            image=image,
            stages={s.name: outputs[s.name] for s in ordered},
            context_digest=context.digest,
        )
        logger.info(
            f"[Builder] Built image {image.id}: {result.cache_hits} cached, "
            f"{result.cache_misses} built, {result.executor_calls} executor calls"
        )
        return result

    async def _stage_task(
        self,
        stage: Stage,
        graph: StageGraph,
        tasks: Dict[str, asyncio.Task],
        outputs: Dict[str, StageOutput],
        pool: ThreadPoolExecutor,
        loop: asyncio.AbstractEventLoop,
        layer_builder: LayerBuilder,
        context: BuildContext,
    ) -> StageOutput:
        for dep in graph.dependencies(stage.name):
            try:
                await tasks[dep]
            except Exception as e:
                raise DependencyFailedError(stage.name, dep) from e

        self.token.raise_if_cancelled()
        logger.debug(f"[Builder] Starting stage '{stage.name}'")
        output = await loop.run_in_executor(
            pool, self._run_stage, stage, graph, outputs, layer_builder, context
        )
        outputs[stage.name] = output
        return output

    def _run_stage(
        self,
        stage: Stage,
        graph: StageGraph,
        outputs: Dict[str, StageOutput],
        layer_builder: LayerBuilder,
        context: BuildContext,
    ) -> StageOutput:
        base = graph.base_of(stage)
        chain: List[Layer] = []
        parent: Optional[Layer] = None
        if base is not None:
            chain = list(outputs[base.name].chain)
            parent = outputs[base.name].tip

        steps: List[LayerResult] = []
        missed = False
        for index, instruction in enumerate(stage.instructions):
            if index == 0 and base is not None:
                # FROM another stage continues that stage's chain
                continue
            self.token.raise_if_cancelled()
            source = None
            if isinstance(instruction, Copy) and instruction.from_stage is not None:
                source = outputs[graph.get(instruction.from_stage).name].tip
            result = layer_builder.step(
                parent,
                instruction,
                context,
                source=source,
                force_miss=missed,
                stage=stage.name,
                index=index,
            )
            missed = missed or not result.cached
            steps.append(result)
            chain.append(result.layer)
            parent = result.layer

        output = StageOutput(
            stage=stage,
            base_stage=base.name if base is not None else None,
            chain=tuple(chain),
            steps=tuple(steps),
        )
        logger.info(
            f"[Builder] Stage '{stage.name}' done: {output.hits} cached, {output.misses} built"
        )
        return output


def build_image(
    stages: Sequence[Stage],
    target: str,
    context_root: str | os.PathLike,
    ignore_rules: Optional[Iterable[str]] = None,
    *,
    store: CacheStore,
    executor: Optional[InstructionExecutor] = None,
    build_args: Optional[Dict[str, str]] = None,
    max_workers: Optional[int] = None,
) -> BuildResult:
    """
    Snapshot ``context_root`` and build ``target``

    Args:
        stages: every stage of the build definition
        target: name or ordinal of the stage to build
        context_root: build context directory
        ignore_rules: extra ignore rules, combined with the root's '.lbignore'
        store: layer store
        executor: instruction executor, ManifestExecutor when omitted
        build_args: ARG overrides
        max_workers: worker threads for independent stages

    Returns:
        BuildResult: the image plus per-stage outputs and cache statistics

    Raises:
        GraphError: invalid stage graph
        ContextError: unreadable context root or malformed ignore rule
        BuildError: execution failure, cancellation or assembly failure
    """
    # graph errors surface before the context is hashed
    StageGraph(stages)
    context = ContextSnapshotter().snapshot(context_root, ignore_rules)
    builder = Builder(store, executor=executor, max_workers=max_workers)
    return builder.build(stages, target, context, build_args)
