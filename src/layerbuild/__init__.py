"""
Layer Build

Content-addressed layer cache and multi-stage build orchestration.

Main modules:
- context: Build context snapshotting and ignore rules
- cache: Content-addressed, reference counted layer store
- builder: Cache keys, layer production, stage resolution and image assembly
- executor: The collaborator that actually runs instructions
- config: Build file loading and validation
- datacls: Type-safe data classes and models
- utils: Utility functions

Quick start example:
```python
from layerbuild import Config, FileCacheStore, build_image

config = Config("layerbuild.yml")
store = FileCacheStore(config.cache_dir())
result = build_image(config.stages, config.target, config.context_dir, config.ignore, store=store)
print(result.image.id)
```
"""

__version__ = "0.1.0"

from .config import Config, ConfigModel
from .builder import Builder, build_image
from .cache import CacheStore, MemoryCacheStore, FileCacheStore
from .context import ContextSnapshotter, snapshot
from .executor import InstructionExecutor, ManifestExecutor, load_executor
from .exceptions import (
    LayerBuildError,
    ConfigurationError,
    ContextError,
    GraphError,
    BuildError,
    ExecutionError,
    BuildCancelledError,
    CacheError,
    ExecutorError,
)

__all__ = [
    '__version__',
    # Configuration
    'Config',
    'ConfigModel',
    # Build
    'Builder',
    'build_image',
    'ContextSnapshotter',
    'snapshot',
    # Cache
    'CacheStore',
    'MemoryCacheStore',
    'FileCacheStore',
    # Executors
    'InstructionExecutor',
    'ManifestExecutor',
    'load_executor',
    # Exceptions
    'LayerBuildError',
    'ConfigurationError',
    'ContextError',
    'GraphError',
    'BuildError',
    'ExecutionError',
    'BuildCancelledError',
    'CacheError',
    'ExecutorError',
]
