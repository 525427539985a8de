"""
Layer Build data classes

- instructions: the tagged instruction variants
- contexts: BuildContext snapshot and its entries
- layers: CacheKey and Layer
- stage: Stage and StageOutput
- image: Image, RuntimeConfig and BuildResult
"""

from .instructions import (
    BaseInstruction,
    Instruction,
    FromImage,
    Copy,
    Run,
    Env,
    Expose,
    User,
    Entrypoint,
    Cmd,
    Arg,
    parse_instruction,
    parse_instructions,
)
from .contexts import BuildContext, FileEntry
from .layers import CacheKey, Layer, LayerResult
from .stage import Stage, StageOutput
from .image import BuildResult, Image, RuntimeConfig

__all__ = [
    'BaseInstruction',
    'Instruction',
    'FromImage',
    'Copy',
    'Run',
    'Env',
    'Expose',
    'User',
    'Entrypoint',
    'Cmd',
    'Arg',
    'parse_instruction',
    'parse_instructions',
    'BuildContext',
    'FileEntry',
    'CacheKey',
    'Layer',
    'LayerResult',
    'Stage',
    'StageOutput',
    'Image',
    'RuntimeConfig',
    'BuildResult',
]
