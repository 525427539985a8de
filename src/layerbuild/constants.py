from enum import Enum

# --- Log and Debug ---
# Short aliases for module names to keep CLI/env concise
LOG_ALIAS_MAP = {
    "build": "layerbuild.builder.build",
    "bld": "layerbuild.builder.build",
    "layer": "layerbuild.builder.layer",
    "lyr": "layerbuild.builder.layer",
    "keys": "layerbuild.builder.keys",
    "resolve": "layerbuild.builder.resolve",
    "rsv": "layerbuild.builder.resolve",
    "assemble": "layerbuild.builder.assemble",
    "asm": "layerbuild.builder.assemble",
    "cache": "layerbuild.cache",
    "cc": "layerbuild.cache",
    "store": "layerbuild.cache.store",
    "ctx": "layerbuild.context",
    "snap": "layerbuild.context.snapshot",
    "exec": "layerbuild.executor",
    "conf": "layerbuild.config",
}

# Top-level modules within layerbuild for auto-prefixing
KNOWN_TOP_MODULES = {
    "builder",
    "cache",
    "context",
    "datacls",
    "utils",
    "exceptions",
    "config",
    "executor",
}

LOG_LEVELS_ENV = "LAYERBUILD_LOG_LEVELS"

# --- Filenames and Paths ---
BUILD_FILENAME = "layerbuild.yml"
IGNORE_FILENAME = ".lbignore"
DEFAULT_CACHE_DIR = ".layerbuild_cache"
CACHE_DIR_ENV = "LAYERBUILD_CACHE_DIR"

# --- Hashing ---
HASH_ALGORITHM = "sha256"
HASH_PREFIX = f"{HASH_ALGORITHM}:"
READ_CHUNK_SIZE = 1024 * 1024


class InstructionKind(str, Enum):
    """Discriminator values of the instruction variants."""
    FROM = "from"
    COPY = "copy"
    RUN = "run"
    ENV = "env"
    EXPOSE = "expose"
    USER = "user"
    ENTRYPOINT = "entrypoint"
    CMD = "cmd"
    ARG = "arg"


# Instructions that only change image metadata; they produce empty layers
# and never reach the executor.
METADATA_KINDS = frozenset(kind.value for kind in (
    InstructionKind.ENV,
    InstructionKind.EXPOSE,
    InstructionKind.USER,
    InstructionKind.ENTRYPOINT,
    InstructionKind.CMD,
    InstructionKind.ARG,
))


class EntryKind(str, Enum):
    """Kinds of entries recorded in a build context snapshot."""
    FILE = "file"
    SYMLINK = "symlink"
