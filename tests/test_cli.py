import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from layerbuild import __version__
from layerbuild.cache import FileCacheStore
from layerbuild.cli import cli
from layerbuild.datacls import Layer, Run
from layerbuild.utils.hashing import digest_of, sha256_bytes

from conftest import write_tree

BUILD_FILE = {
    'name': 'demo',
    'context': 'ctx',
    'stages': [
        {
            'name': 'base',
            'instructions': [
                {'kind': 'from', 'ref': 'x'},
                {'kind': 'run', 'command': 'build', 'inputs': ['src']},
            ],
        },
        {
            'name': 'final',
            'instructions': [
                {'kind': 'from', 'ref': 'y'},
                {'kind': 'copy', 'src': '/out', 'dest': '/out', 'from_stage': 'base'},
                {'kind': 'cmd', 'argv': ['/out/app']},
            ],
        },
    ],
}


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv('LAYERBUILD_CACHE_DIR', raising=False)
    write_tree(tmp_path / 'ctx', {'src/main.c': 'int main(void) { return 0; }\n'})
    config_file = tmp_path / 'layerbuild.yml'
    config_file.write_text(yaml.dump(BUILD_FILE))
    return config_file


@pytest.fixture
def runner():
    return CliRunner()


class TestBuildCommand:
    """Tests for 'layerbuild build'."""

    def test_build_writes_image_descriptor(self, runner, project, tmp_path):
        output = tmp_path / 'image.json'
        result = runner.invoke(cli, ['build', str(project), '--output', str(output)])
        assert result.exit_code == 0, result.output
        assert 'Image sha256:' in result.output
        image = json.loads(output.read_text())
        assert image['target'] == 'final'
        assert image['runtime_config']['cmd'] == ['/out/app']
        assert (tmp_path / '.layerbuild_cache' / 'index').is_dir()

    def test_second_build_is_cached(self, runner, project):
        runner.invoke(cli, ['build', str(project)])
        result = runner.invoke(cli, ['build', str(project)])
        assert result.exit_code == 0, result.output
        assert 'base: 2 cached, 0 built' in result.output
        assert 'final: 3 cached, 0 built' in result.output

    def test_target_and_cache_dir(self, runner, project, tmp_path):
        cache_dir = tmp_path / 'elsewhere'
        result = runner.invoke(cli, ['build', str(project), '-t', 'base', '--cache-dir', str(cache_dir)])
        assert result.exit_code == 0, result.output
        assert 'final:' not in result.output
        assert (cache_dir / 'blobs').is_dir()

    def test_missing_build_file_aborts(self, runner, tmp_path):
        result = runner.invoke(cli, ['build', str(tmp_path / 'missing.yml')])
        assert result.exit_code == 1

    def test_unknown_target_aborts(self, runner, project):
        result = runner.invoke(cli, ['build', str(project), '--target', 'ghost'])
        assert result.exit_code == 1

    def test_malformed_build_arg(self, runner, project):
        result = runner.invoke(cli, ['build', str(project), '--build-arg', 'NOVALUE'])
        assert result.exit_code == 2

    def test_unknown_executor_aborts(self, runner, project):
        result = runner.invoke(cli, ['build', str(project), '--executor', 'no.such.module:Executor'])
        assert result.exit_code == 1

    def test_version(self, runner):
        result = runner.invoke(cli, ['--version'])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestCacheCommands:
    """Tests for 'layerbuild cache ...'."""

    @pytest.fixture
    def cache_dir(self, runner, project, tmp_path) -> Path:
        runner.invoke(cli, ['build', str(project)])
        return tmp_path / '.layerbuild_cache'

    def test_ls(self, runner, cache_dir):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(cache_dir), 'ls'])
        assert result.exit_code == 0, result.output
        assert 'RUN build' in result.output
        assert 'refs=' in result.output

    def test_ls_empty(self, runner, tmp_path):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(tmp_path / 'empty'), 'ls'])
        assert result.exit_code == 0
        assert 'Cache is empty.' in result.output

    def test_inspect_by_prefix(self, runner, cache_dir):
        record = FileCacheStore(str(cache_dir)).entries()[0]
        prefix = record.hash.split(':', 1)[1][:12]
        result = runner.invoke(cli, ['cache', '--cache-dir', str(cache_dir), 'inspect', prefix])
        assert result.exit_code == 0, result.output
        assert record.hash in result.output

    def test_inspect_unknown(self, runner, cache_dir):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(cache_dir), 'inspect', 'ffffffffffff'])
        assert result.exit_code == 1

    def test_stats(self, runner, cache_dir):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(cache_dir), 'stats'])
        assert result.exit_code == 0
        assert 'layers: 5' in result.output
        assert 'owners: 1' in result.output

    def test_prune_keeps_image_layers(self, runner, cache_dir):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(cache_dir), 'prune', '--all'])
        assert result.exit_code == 0, result.output
        # only the base stage's layers are unreferenced
        assert 'Removed 2 layers.' in result.output

    def test_prune_unreferenced(self, runner, tmp_path):
        root = tmp_path / 'cache'
        store = FileCacheStore(str(root))
        layer = Layer(
            hash=digest_of('loose'),
            instruction=Run(command='make'),
            delta_ref=sha256_bytes(b'delta'),
        )
        store.put(layer, b'delta')
        result = runner.invoke(cli, ['cache', '--cache-dir', str(root), 'prune', '--older-than', '0s'])
        assert result.exit_code == 0, result.output
        assert 'Removed 1 layers.' in result.output
        assert FileCacheStore(str(root)).stats()['blobs'] == 0

    @pytest.mark.parametrize("args", [[], ['--all', '--older-than', '1d'], ['--older-than', 'soon']])
    def test_prune_usage_errors(self, runner, tmp_path, args):
        result = runner.invoke(cli, ['cache', '--cache-dir', str(tmp_path / 'c'), 'prune', *args])
        assert result.exit_code == 2
