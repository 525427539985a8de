"""
Layer Build Utils Module

- logger: Logging setup and configuration
- hashing: Content digests and canonical JSON
- reflection: Loading user-provided classes by reference
- patterns: Ignore rules and source pattern matching

Usage:
    from layerbuild.utils import setup_logger, digest_of, instantiate
"""

from .logger import setup_logger, parse_module_levels
from .hashing import sha256_bytes, sha256_stream, canonical_json, digest_of, split_digest
from .reflection import import_object, instantiate
from .patterns import normalize_rule, normalize_rules, is_ignored, select_paths

__all__ = [
    'setup_logger',
    'parse_module_levels',
    # Hashing
    'sha256_bytes',
    'sha256_stream',
    'canonical_json',
    'digest_of',
    'split_digest',
    # Reflection utilities
    'import_object',
    'instantiate',
    # Patterns
    'normalize_rule',
    'normalize_rules',
    'is_ignored',
    'select_paths',
]
