from typing import Optional, Any


class LayerBuildError(Exception):
    """Base exception for all application-specific errors."""

    pass


# --- 1. Errors related to loading and parsing the build file ---
class ConfigurationError(LayerBuildError):
    """Base class for errors encountered while finding, reading, or parsing build files."""

    pass


class ConfigFileMissingError(ConfigurationError):
    """Raised when the build file cannot be found."""

    pass


class ConfigParsingError(ConfigurationError):
    """Raised when a YAML build file is syntactically incorrect."""

    pass


class ConfigValidationError(ConfigurationError):
    """Raised when the build file fails structural validation (e.g., Pydantic)."""

    pass


# --- 2. Errors related to the build context snapshot ---
class ContextError(LayerBuildError):
    """Base class for errors raised while snapshotting the build context."""

    pass


class ContextRootError(ContextError):
    """Raised when the context root is missing, not a directory, or unreadable."""

    pass


class IgnoreRuleError(ContextError):
    """Raised when an ignore rule is malformed."""

    pass


# --- 3. Errors related to the structure of the stage graph ---
class GraphError(LayerBuildError):
    """Base class for structurally invalid build definitions."""

    pass


class ReferenceNotFoundError(GraphError):
    """Raised when a stage reference (copy source, base, target) does not exist."""

    pass


class CircularDependencyError(GraphError):
    """Raised when a stage (transitively) depends on itself."""

    pass


class StageDefinitionError(GraphError):
    """Raised for logical errors inside a stage, like duplicate names or a misplaced 'from'."""

    pass


# --- 4. Errors raised by executors ---
class ExecutorError(LayerBuildError):
    """Raised by an InstructionExecutor when an instruction cannot be carried out."""

    pass


# --- 5. Errors that occur during the build phase ---
class BuildError(LayerBuildError):
    """Base class for errors that occur while producing layers or the image."""

    pass


class ExecutionError(BuildError):
    """
    Raised when the executor fails for an instruction.

    Carries the failing stage and instruction index so callers can report
    exactly where the build stopped.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        index: Optional[int] = None,
        instruction: Any = None,
    ):
        self.stage = stage
        self.index = index
        self.instruction = instruction
        self.reason = message
        super().__init__(self._format())

    def _format(self) -> str:
        if self.stage is None:
            return self.reason
        where = f"stage '{self.stage}'"
        if self.index is not None:
            where += f", instruction #{self.index}"
        return f"{where}: {self.reason}"


class DependencyFailedError(BuildError):
    """Raised for a stage that cannot run because a stage it depends on failed."""

    def __init__(self, stage: str, dependency: str):
        self.stage = stage
        self.dependency = dependency
        super().__init__(f"stage '{stage}' skipped: dependency '{dependency}' failed")


class BuildCancelledError(BuildError):
    """Raised when a build is cancelled before it completes."""

    pass


class AssemblyError(BuildError):
    """Raised when the image cannot be assembled because the target stage never ran."""

    pass


# --- 6. Errors related to the cache store ---
class CacheError(LayerBuildError):
    """Base class for cache store errors."""

    pass


class CacheCorruptionError(CacheError):
    """Raised when a stored record or blob does not match its content address."""

    pass
