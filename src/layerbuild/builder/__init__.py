"""
Layer Build Builder Module

- Builder: Stage scheduling and image build process
- build_image: Snapshot a context and build a target in one call
- LayerBuilder: Cached, per-instruction layer production
- StageGraphResolver: Stage dependency resolution
- ImageAssembler: Folding stage outputs into an Image
- compute_key: Cache key derivation

Usage:
    from layerbuild.builder import build_image
    from layerbuild.cache import FileCacheStore

    store = FileCacheStore(".layerbuild_cache")
    result = build_image(config.stages, config.target, config.context_dir, store=store)
"""

from .build import Builder, build_image
from .layer import CancelToken, LayerBuilder
from .resolve import StageGraph, StageGraphResolver
from .assemble import ImageAssembler
from .keys import compute_key

__all__ = [
    'Builder',
    'build_image',
    'CancelToken',
    'LayerBuilder',
    'StageGraph',
    'StageGraphResolver',
    'ImageAssembler',
    'compute_key',
]
