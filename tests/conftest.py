import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import pytest

from layerbuild.cache import MemoryCacheStore
from layerbuild.datacls import BaseInstruction, Run, Stage
from layerbuild.exceptions import ExecutorError
from layerbuild.executor import ManifestExecutor


class RecordingExecutor(ManifestExecutor):
    """ManifestExecutor that records every call and can fail on chosen RUN commands."""

    def __init__(
        self,
        fail_on=(),
        on_execute: Optional[Callable[[BaseInstruction], None]] = None,
    ):
        self.calls = []
        self.fail_on = set(fail_on)
        self.on_execute = on_execute
        self.cancelled = False
        self._lock = threading.Lock()

    def execute(self, parent, instruction, context, *, source=None, build_args=None):
        with self._lock:
            self.calls.append(instruction)
        if self.on_execute is not None:
            self.on_execute(instruction)
        if isinstance(instruction, Run) and instruction.command in self.fail_on:
            raise ExecutorError(f"'{instruction.command}' exited with status 1")
        return super().execute(parent, instruction, context, source=source, build_args=build_args)

    def cancel(self):
        self.cancelled = True

    @property
    def summaries(self):
        return [i.summary() for i in self.calls]

    def reset(self):
        self.calls.clear()


def write_tree(root: Path, files: Dict[str, Union[str, bytes]]) -> Path:
    """Create files below root from a {relative path: content} mapping."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    return root


def make_stage(name: str, *instructions: BaseInstruction, ordinal: Optional[int] = None) -> Stage:
    return Stage(name=name, instructions=tuple(instructions), ordinal=ordinal)


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def context_dir(tmp_path: Path) -> Path:
    """A small source tree used as build context."""
    return write_tree(tmp_path / "ctx", {
        "src/main.c": "int main(void) { return 0; }\n",
        "src/util.c": "int add(int a, int b) { return a + b; }\n",
        "docs/readme.md": "# demo\n",
        "a.txt": "A\n",
        "b.txt": "B\n",
        "app.log": "noise\n",
    })
