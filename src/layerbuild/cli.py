import click
import logging
import os
import traceback
from typing import Dict, Optional, Tuple

from . import __version__
from . import constants
from .builder import Builder
from .cache import FileCacheStore, PrunePredicate, older_than, parse_age, prune_all
from .config import Config
from .context import ContextSnapshotter
from .executor import load_executor
from .utils import setup_logger, parse_module_levels
from .exceptions import (
    LayerBuildError,
    ConfigurationError,
    ContextError,
    GraphError,
    BuildError,
    CacheError,
    ExecutorError,
)


def setup_logging(debug: bool, log_levels: str = None, log_file: str = None):
    """Setup logger with debug and module-level configuration"""
    module_levels = parse_module_levels(log_levels) if log_levels else None
    setup_logger(debug=debug, module_levels=module_levels, log_file=log_file)


def parse_build_args(ctx, param, values: Tuple[str, ...]) -> Dict[str, str]:
    """Turn repeated '--build-arg KEY=VALUE' options into a mapping"""
    build_args = {}
    for item in values:
        if '=' not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        key, value = item.split('=', 1)
        if not key.strip():
            raise click.BadParameter(f"empty key in '{item}'")
        build_args[key.strip()] = value
    return build_args


def _abort(message: str):
    logging.error(message)
    ctx = click.get_current_context()
    if ctx.obj.get('debug'):
        traceback.print_exc()
    raise click.Abort()


def handle_errors(func):
    """Decorator to handle common exceptions"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConfigurationError as e:
            _abort(f"Configuration error: {e}")
        except ContextError as e:
            _abort(f"Build context error: {e}")
        except GraphError as e:
            _abort(f"Stage definition error: {e}")
        except BuildError as e:
            _abort(f"Build error: {e}")
        except CacheError as e:
            _abort(f"Cache error: {e}")
        except ExecutorError as e:
            _abort(f"Executor error: {e}")
        except LayerBuildError as e:
            _abort(f"An unexpected application error occurred: {e}")
        except FileNotFoundError as e:
            _abort(f"A required file was not found: {e}")
        except Exception as e:
            _abort(f"An unexpected error occurred: {e}")
    return wrapper


def _open_store(cache_dir: Optional[str]) -> FileCacheStore:
    if not cache_dir:
        cache_dir = os.environ.get(constants.CACHE_DIR_ENV) or constants.DEFAULT_CACHE_DIR
    return FileCacheStore(os.path.abspath(cache_dir))


def _find_layer(store: FileCacheStore, ref: str) -> str:
    """Resolve a full hash, or a unique hex prefix of one"""
    if store.has(ref):
        return ref
    prefix = ref.split(':', 1)[-1]
    matches = [r.hash for r in store.entries() if r.hash.split(':', 1)[-1].startswith(prefix)]
    if not matches:
        raise CacheError(f"No layer matches '{ref}'")
    if len(matches) > 1:
        raise CacheError(f"'{ref}' is ambiguous, it matches {len(matches)} layers")
    return matches[0]


@handle_errors
def do_build(
    config_file: str,
    target: Optional[str],
    build_args: Dict[str, str],
    cache_dir: Optional[str],
    workers: Optional[int],
    executor_ref: Optional[str],
    output: Optional[str],
):
    """Execute build command"""
    config = Config(config_file)
    store = FileCacheStore(config.cache_dir(cache_dir))
    executor = load_executor(executor_ref)

    args = config.build_args
    args.update(build_args)
    context = ContextSnapshotter().snapshot(config.context_dir, config.ignore)

    builder = Builder(store, executor=executor, max_workers=workers)
    result = builder.build(config.stages, target or config.target, context, args)

    for name, stage_output in result.stages.items():
        click.echo(f"  {name}: {stage_output.hits} cached, {stage_output.misses} built")
    click.echo(f"Image {result.image.id} ({len(result.image.ordered_layers)} layers)")
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(result.image.model_dump_json(indent=2))
        logging.info(f"Image descriptor written to '{output}'")


@handle_errors
def do_cache_ls(cache_dir: Optional[str]):
    store = _open_store(cache_dir)
    records = store.entries()
    if not records:
        click.echo("Cache is empty.")
        return
    for record in records:
        layer = record.to_layer()
        click.echo(
            f"{layer.short_hash}  {record.kind:<10} {record.delta_size:>10}  "
            f"{record.created_at:%Y-%m-%d %H:%M:%S}  refs={store.refcount(record.hash)}  {record.summary}"
        )


@handle_errors
def do_cache_inspect(cache_dir: Optional[str], ref: str):
    store = _open_store(cache_dir)
    record = store.entry(_find_layer(store, ref))
    click.echo(record.model_dump_json(indent=2))
    click.echo(f"refcount: {store.refcount(record.hash)}")


@handle_errors
def do_cache_prune(cache_dir: Optional[str], predicate: PrunePredicate):
    store = _open_store(cache_dir)
    removed = store.prune(predicate)
    click.echo(f"Removed {len(removed)} layers.")


@handle_errors
def do_cache_stats(cache_dir: Optional[str]):
    store = _open_store(cache_dir)
    for key, value in store.stats().items():
        click.echo(f"{key}: {value}")


@click.group()
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.option('-l', '--log-levels', help="Comma-separated per-module log levels (e.g., 'cache=DEBUG,build=INFO')")
@click.option('-f', '--log-file', help='Path to log file')
@click.version_option(version=__version__, prog_name='layerbuild')
@click.pass_context
def cli(ctx, debug, log_levels, log_file):
    """Layer Build - Cached, multi-stage image builds from a build file

    \b
    Examples:
      layerbuild build layerbuild.yml            Build the default target
      layerbuild build layerbuild.yml -t base    Build one stage
      layerbuild cache prune --older-than 7d     Drop old unreferenced layers
    """
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    setup_logging(debug, log_levels, log_file)


@cli.command()
@click.argument('config_file', default=constants.BUILD_FILENAME, type=click.Path(dir_okay=False))
@click.option('-t', '--target', help='Stage to build (default: the configured target)')
@click.option('--build-arg', 'build_args', multiple=True, callback=parse_build_args,
              help='Build argument override, KEY=VALUE (repeatable)')
@click.option('--cache-dir', help=f'Cache directory (default: ${constants.CACHE_DIR_ENV} or next to the build file)')
@click.option('-w', '--workers', type=click.IntRange(min=1), help='Worker threads for independent stages')
@click.option('--executor', 'executor_ref', help="Executor class as 'package.module:Class'")
@click.option('-o', '--output', type=click.Path(dir_okay=False), help='Write the image descriptor as JSON')
def build(config_file, target, build_args, cache_dir, workers, executor_ref, output):
    """Build the target stage of a build file"""
    do_build(config_file, target, build_args, cache_dir, workers, executor_ref, output)


@cli.group()
@click.option('--cache-dir', help=f'Cache directory (default: ${constants.CACHE_DIR_ENV} or ./{constants.DEFAULT_CACHE_DIR})')
@click.pass_context
def cache(ctx, cache_dir):
    """Inspect and prune the layer cache"""
    ctx.obj['cache_dir'] = cache_dir


@cache.command('ls')
@click.pass_context
def cache_ls(ctx):
    """List stored layers"""
    do_cache_ls(ctx.obj.get('cache_dir'))


@cache.command('inspect')
@click.argument('layer_hash')
@click.pass_context
def cache_inspect(ctx, layer_hash):
    """Show the record of one layer (full hash or unique prefix)"""
    do_cache_inspect(ctx.obj.get('cache_dir'), layer_hash)


@cache.command('prune')
@click.option('--all', 'prune_everything', is_flag=True, help='Remove every unreferenced layer')
@click.option('--older-than', 'age', help="Remove unreferenced layers older than this age (e.g. '12h', '7d')")
@click.pass_context
def cache_prune(ctx, prune_everything, age):
    """Remove unreferenced layers and orphaned blobs"""
    if prune_everything == bool(age):
        raise click.UsageError("Use exactly one of --all or --older-than.")
    if prune_everything:
        predicate = prune_all
    else:
        try:
            predicate = older_than(parse_age(age))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="'--older-than'")
    do_cache_prune(ctx.obj.get('cache_dir'), predicate)


@cache.command('stats')
@click.pass_context
def cache_stats(ctx):
    """Show cache statistics"""
    do_cache_stats(ctx.obj.get('cache_dir'))


if __name__ == '__main__':
    cli()
