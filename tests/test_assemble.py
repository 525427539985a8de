import pytest

from layerbuild.builder import ImageAssembler, LayerBuilder
from layerbuild.context import snapshot
from layerbuild.datacls import (
    Cmd,
    Entrypoint,
    Env,
    Expose,
    FromImage,
    Run,
    StageOutput,
    User,
)
from layerbuild.exceptions import AssemblyError

from conftest import make_stage


@pytest.fixture
def run_stage(context_dir, store, executor):
    """Build a stage's instructions directly with a LayerBuilder."""
    builder = LayerBuilder(store, executor)
    ctx = snapshot(context_dir)

    def _run(stage, base: StageOutput = None) -> StageOutput:
        chain = list(base.chain) if base else []
        parent = base.tip if base else None
        steps = []
        instructions = stage.instructions[1:] if base else stage.instructions
        for instruction in instructions:
            result = builder.step(parent, instruction, ctx)
            steps.append(result)
            chain.append(result.layer)
            parent = result.layer
        return StageOutput(
            stage=stage,
            base_stage=base.stage.name if base else None,
            chain=tuple(chain),
            steps=tuple(steps),
        )
    return _run


class TestRuntimeConfig:
    """Folding metadata instructions into the runtime config."""

    def test_fold_rules(self, run_stage):
        stage = make_stage(
            "app",
            FromImage(ref="alpine"),
            Env(values={"A": "1", "B": "2"}),
            Expose(port=8080),
            User(identity="root"),
            Cmd(argv=["old"]),
            Env.of("A", "3"),
            Expose(port="443/udp"),
            Expose(port=80),
            Expose(port=8080),
            User(identity="app"),
            Entrypoint(argv="serve --port 80"),
            Cmd(argv=["--verbose"]),
        )
        image = ImageAssembler().assemble(stage, {"app": run_stage(stage)})
        runtime = image.runtime_config
        assert runtime.env == {"A": "3", "B": "2"}
        assert runtime.exposed_ports == ("80/tcp", "443/udp", "8080/tcp")
        assert runtime.user == "app"
        assert runtime.entrypoint == ("/bin/sh", "-c", "serve --port 80")
        assert runtime.cmd == ("--verbose",)

    def test_defaults(self, run_stage):
        stage = make_stage("bare", FromImage(ref="alpine"))
        runtime = ImageAssembler().assemble(stage, {"bare": run_stage(stage)}).runtime_config
        assert runtime.env == {}
        assert runtime.exposed_ports == ()
        assert runtime.entrypoint is None
        assert runtime.cmd is None
        assert runtime.user is None

    def test_inherits_from_base_stage(self, run_stage):
        base = make_stage("base", FromImage(ref="alpine"), Env(values={"A": "1", "B": "1"}), Expose(port=22))
        final = make_stage("final", FromImage(ref="base"), Env.of("B", "2"), Cmd(argv=["run"]))
        base_output = run_stage(base)
        outputs = {"base": base_output, "final": run_stage(final, base=base_output)}
        image = ImageAssembler().assemble(final, outputs)
        assert image.runtime_config.env == {"A": "1", "B": "2"}
        assert image.runtime_config.exposed_ports == ("22/tcp",)
        assert image.layer_hashes[:3] == [layer.hash for layer in base_output.chain]


class TestImage:
    """Layer order and image identity."""

    def test_layers_are_root_to_tip(self, run_stage):
        stage = make_stage("app", FromImage(ref="alpine"), Run(command="make"), Env.of("A", "1"))
        output = run_stage(stage)
        image = ImageAssembler().assemble(stage, {"app": output})
        assert image.target == "app"
        assert image.ordered_layers == output.chain
        assert image.ordered_layers[0].parent_hash is None
        for parent, child in zip(image.ordered_layers, image.ordered_layers[1:]):
            assert child.parent_hash == parent.hash

    def test_id_is_deterministic(self, run_stage):
        stage = make_stage("app", FromImage(ref="alpine"), Run(command="make"))
        first = ImageAssembler().assemble(stage, {"app": run_stage(stage)})
        second = ImageAssembler().assemble(stage, {"app": run_stage(stage)})
        assert first.id == second.id
        assert first.id.startswith("sha256:")

    def test_missing_target_output(self):
        stage = make_stage("app", FromImage(ref="alpine"))
        with pytest.raises(AssemblyError):
            ImageAssembler().assemble(stage, {})

    def test_empty_stage(self):
        stage = make_stage("app")
        with pytest.raises(AssemblyError):
            ImageAssembler().assemble(stage, {"app": StageOutput(stage=stage)})

    def test_missing_base_output(self, run_stage):
        base = make_stage("base", FromImage(ref="alpine"))
        final = make_stage("final", FromImage(ref="base"))
        output = run_stage(final, base=run_stage(base))
        with pytest.raises(AssemblyError, match="base"):
            ImageAssembler().assemble(final, {"final": output})

    def test_broken_chain(self, run_stage):
        stage = make_stage("app", FromImage(ref="alpine"), Run(command="make"))
        output = run_stage(stage)
        broken = output.model_copy(update={"chain": output.chain[1:]})
        with pytest.raises(AssemblyError, match="broken"):
            ImageAssembler().assemble(stage, {"app": broken})
