import pytest

from layerbuild.builder import CancelToken, LayerBuilder, compute_key
from layerbuild.cache import prune_all
from layerbuild.context import snapshot
from layerbuild.datacls import Arg, Cmd, Copy, Env, Expose, FromImage, Run, User
from layerbuild.exceptions import BuildCancelledError, BuildError, ExecutionError, ExecutorError
from layerbuild.executor import ManifestExecutor

from conftest import RecordingExecutor


class StampExecutor(ManifestExecutor):
    """Manifest executor whose output changes on every call, like a real build."""

    def __init__(self):
        self.stamp = 0

    def execute(self, parent, instruction, context, *, source=None, build_args=None):
        self.stamp += 1
        manifest = super().execute(parent, instruction, context, source=source, build_args=build_args)
        return manifest + f"\n{self.stamp}".encode()


@pytest.fixture
def ctx(context_dir):
    return snapshot(context_dir)


class TestCacheKeys:
    """What does and does not take part in a cache key."""

    def test_key_is_deterministic(self, ctx):
        instruction = Copy(src="src", dest="/app")
        assert compute_key(None, instruction, ctx).digest == compute_key(None, instruction, ctx).digest

    def test_parent_is_part_of_the_key(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        first = builder.build(None, FromImage(ref="alpine"), ctx)
        second = builder.build(None, FromImage(ref="debian"), ctx)
        run = Run(command="make")
        assert compute_key(first, run, ctx).digest != compute_key(second, run, ctx).digest

    def test_copy_key_ignores_unrelated_files(self, context_dir):
        instruction = Copy(src="src", dest="/app")
        before = compute_key(None, instruction, snapshot(context_dir))
        (context_dir / "docs" / "readme.md").write_text("changed\n")
        assert compute_key(None, instruction, snapshot(context_dir)) == before
        (context_dir / "src" / "util.c").write_text("changed\n")
        assert compute_key(None, instruction, snapshot(context_dir)) != before

    def test_run_key_covers_only_its_inputs(self, context_dir):
        with_inputs = Run(command="make", inputs=("src",))
        without_inputs = Run(command="make")
        before = (compute_key(None, with_inputs, snapshot(context_dir)),
                  compute_key(None, without_inputs, snapshot(context_dir)))
        (context_dir / "src" / "main.c").write_text("changed\n")
        after = (compute_key(None, with_inputs, snapshot(context_dir)),
                 compute_key(None, without_inputs, snapshot(context_dir)))
        assert before[0] != after[0]
        assert before[1] == after[1]

    def test_arg_key_covers_resolved_value(self, ctx):
        arg = Arg(name="VERSION", default="1")
        default = compute_key(None, arg, ctx)
        assert compute_key(None, arg, ctx, build_args={"VERSION": "1"}) == default
        assert compute_key(None, arg, ctx, build_args={"VERSION": "2"}) != default
        assert compute_key(None, arg, ctx, build_args={"OTHER": "2"}) == default

    def test_copy_from_stage_uses_source_layer(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        source_a = builder.build(None, FromImage(ref="alpine"), ctx)
        source_b = builder.build(None, FromImage(ref="debian"), ctx)
        instruction = Copy(src="/out", dest="/out", from_stage="base")
        key_a = compute_key(None, instruction, ctx, source=source_a)
        assert key_a.context_digests == (("source", source_a.hash),)
        assert key_a != compute_key(None, instruction, ctx, source=source_b)

    def test_copy_from_stage_without_source_fails(self, ctx):
        with pytest.raises(BuildError):
            compute_key(None, Copy(src="/out", dest="/out", from_stage="base"), ctx)


class TestLayerBuilder:
    """Hit/miss behaviour of a single build step."""

    def test_miss_then_hit(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        first = builder.step(None, FromImage(ref="alpine"), ctx)
        second = builder.step(None, FromImage(ref="alpine"), ctx)
        assert not first.cached
        assert second.cached
        assert second.layer.model_dump() == first.layer.model_dump()
        assert len(executor.calls) == 1
        assert store.read_delta(first.layer.delta_ref)

    def test_layer_hash_is_key_digest(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        base = builder.build(None, FromImage(ref="alpine"), ctx)
        layer = builder.build(base, Copy(src="a.txt", dest="/"), ctx)
        assert layer.hash == compute_key(base, Copy(src="a.txt", dest="/"), ctx).digest
        assert layer.parent_hash == base.hash

    @pytest.mark.parametrize("instruction", [
        Env.of("PATH", "/bin"),
        Expose(port=80),
        User(identity="app"),
        Cmd(argv="serve"),
        Arg(name="VERSION"),
    ])
    def test_metadata_instructions_make_empty_layers(self, ctx, store, executor, instruction):
        builder = LayerBuilder(store, executor)
        result = builder.step(None, instruction, ctx)
        assert result.layer.empty
        assert result.layer.delta_ref is None
        assert executor.calls == []
        assert store.has(result.layer.hash)

    def test_force_miss_executes_again(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        first = builder.step(None, FromImage(ref="alpine"), ctx)
        forced = builder.step(None, FromImage(ref="alpine"), ctx, force_miss=True)
        assert not forced.cached
        assert forced.layer.hash == first.layer.hash
        assert len(executor.calls) == 2
        assert len(store.entries()) == 1

    def test_forced_rebuild_returns_the_stored_layer(self, ctx, store):
        executor = StampExecutor()
        builder = LayerBuilder(store, executor)
        first = builder.step(None, FromImage(ref="alpine"), ctx)
        forced = builder.step(None, FromImage(ref="alpine"), ctx, force_miss=True)
        assert executor.stamp == 2
        assert not forced.cached
        assert forced.layer.model_dump() == first.layer.model_dump()
        assert store.read_delta(forced.layer.delta_ref) == store.read_delta(first.layer.delta_ref)

    def test_lookup_and_retain_are_one_step_for_prune(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        layer = builder.build(None, FromImage(ref="alpine"), ctx)

        owned = LayerBuilder(store, executor, owner="build-1")
        assert owned.step(None, FromImage(ref="alpine"), ctx).cached
        assert store.prune(prune_all) == []
        assert store.has(layer.hash)

    def test_executor_error_is_wrapped(self, ctx, store):
        executor = RecordingExecutor(fail_on={"make"})
        builder = LayerBuilder(store, executor)
        with pytest.raises(ExecutionError) as excinfo:
            builder.step(None, Run(command="make"), ctx, stage="base", index=1)
        error = excinfo.value
        assert error.stage == "base"
        assert error.index == 1
        assert error.instruction == Run(command="make")
        assert isinstance(error.__cause__, ExecutorError)
        assert "stage 'base', instruction #1" in str(error)
        assert store.entries() == []

    def test_unexpected_exception_is_wrapped(self, ctx, store):
        def explode(instruction):
            raise RuntimeError("boom")

        builder = LayerBuilder(store, RecordingExecutor(on_execute=explode))
        with pytest.raises(ExecutionError, match="RuntimeError: boom"):
            builder.step(None, Run(command="make"), ctx)

    def test_copy_without_matches_fails(self, ctx, store, executor):
        builder = LayerBuilder(store, executor)
        with pytest.raises(ExecutionError, match="matched no files"):
            builder.step(None, Copy(src="missing", dest="/"), ctx)

    def test_retains_touched_layers_for_owner(self, ctx, store, executor):
        builder = LayerBuilder(store, executor, owner="build-1")
        layer = builder.build(None, FromImage(ref="alpine"), ctx)
        assert store.refcount(layer.hash) == 1
        store.release("build-1")
        assert store.refcount(layer.hash) == 0


class TestCancellation:
    """A cancelled step never reaches the store."""

    def test_cancel_before_execute(self, ctx, store, executor):
        token = CancelToken()
        token.cancel()
        builder = LayerBuilder(store, executor, token=token)
        with pytest.raises(BuildCancelledError):
            builder.step(None, Run(command="make"), ctx)
        assert executor.calls == []
        assert store.entries() == []

    def test_cancel_during_execute(self, ctx, store):
        token = CancelToken()
        executor = RecordingExecutor(on_execute=lambda instruction: token.cancel())
        builder = LayerBuilder(store, executor, token=token)
        with pytest.raises(BuildCancelledError):
            builder.step(None, Run(command="make"), ctx)
        assert len(executor.calls) == 1
        assert store.entries() == []

    def test_cached_layers_are_still_served(self, ctx, store, executor):
        token = CancelToken()
        builder = LayerBuilder(store, executor, token=token)
        builder.build(None, FromImage(ref="alpine"), ctx)
        token.cancel()
        assert builder.step(None, FromImage(ref="alpine"), ctx).cached
