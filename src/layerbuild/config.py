import logging
import os
from typing import Any, Dict, List, Optional

import fsspec
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import constants
from .builder.resolve import StageGraph
from .datacls import Instruction, Stage
from .exceptions import (
    ConfigFileMissingError,
    ConfigParsingError,
    ConfigValidationError,
    ReferenceNotFoundError,
)
from .utils.patterns import normalize_rules

logger = logging.getLogger(__name__)


class StageModel(BaseModel):
    """
        Class Config-Validation Model describe one entry of `stages`
    """
    name: str = Field(min_length=1)
    instructions: List[Instruction] = Field(default_factory=list)
    model_config = ConfigDict(extra="forbid")


class ConfigModel(BaseModel):
    """
        Class Config-Validation Model desribe top-level of the build file
    """
    name: str
    context: str = "."
    target: Optional[str] = None
    ignore: List[str] = Field(default_factory=list)
    build_args: Dict[str, str] = Field(default_factory=dict)
    stages: List[StageModel] = Field(min_length=1)
    model_config = ConfigDict(extra="forbid")

    @field_validator("build_args", mode="before")
    @classmethod
    def stringify_build_args(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("ignore")
    @classmethod
    def check_ignore_rules(cls, value: List[str]) -> List[str]:
        # IgnoreRuleError is not a ValueError, so it propagates as is
        normalize_rules(value)
        return value

    def to_stages(self) -> List[Stage]:
        return [
            Stage(name=s.name, instructions=tuple(s.instructions), ordinal=i)
            for i, s in enumerate(self.stages)
        ]

    @model_validator(mode='after')
    def validate_stage_graph(self) -> 'ConfigModel':
        """Check stage references, FROM placement and cycles"""
        logger.debug("[Validation] Checking stage graph...")
        graph = StageGraph(self.to_stages())
        if self.target is not None and graph.lookup(self.target) is None:
            raise ReferenceNotFoundError(f"Target stage '{self.target}' is not defined.")
        logger.debug("[Validation] Stage graph is valid.")
        return self


class Config:
    """
    Loads and validates a layerbuild.yml build file using Pydantic models.
    It is the sole gatekeeper for configuration.
    """
    def __init__(self, config_path: str | os.PathLike, fs: Optional[fsspec.AbstractFileSystem] = None):
        self.path = os.path.abspath(os.fspath(config_path))
        self.fs = fs if fs is not None else fsspec.filesystem("file")
        logger.info(f"Loading build file from '{self.path}'...")
        raw_data = self._load_raw_config()

        logger.info("Validating build file structure with Pydantic...")
        try:
            self.model = ConfigModel.model_validate(raw_data)
            logger.debug(f"Build file validated successfully: \n{self.model.model_dump_json(indent=2)}")
        except ValidationError as e:
            raise ConfigValidationError(f"Build file validation failed:\n{e}")
        self._stages = self.model.to_stages()

    def _load_raw_config(self) -> Dict[str, Any]:
        try:
            content = self.fs.read_text(self.path, encoding="utf-8")
            config_data = yaml.safe_load(content)
            if not isinstance(config_data, dict):
                raise ConfigParsingError("Build file must be a YAML document containing a dictionary.")
            logger.debug(f"Successfully parsed YAML from '{self.path}'.")
            return config_data
        except FileNotFoundError:
            raise ConfigFileMissingError(f"Build file not found at: {self.path}")
        except IsADirectoryError:
            raise ConfigFileMissingError(f"Build file path is a directory: {self.path}")
        except yaml.YAMLError as e:
            raise ConfigParsingError(f"Error parsing YAML file: {e}")

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def stages(self) -> List[Stage]:
        return list(self._stages)

    @property
    def target(self) -> str:
        """Configured target, the last stage when none is given."""
        return self.model.target if self.model.target is not None else self._stages[-1].name

    @property
    def base_dir(self) -> str:
        return os.path.dirname(self.path)

    @property
    def context_dir(self) -> str:
        """Build context directory, relative paths are taken from the build file's directory."""
        return os.path.normpath(os.path.join(self.base_dir, self.model.context))

    @property
    def ignore(self) -> List[str]:
        return list(self.model.ignore)

    @property
    def build_args(self) -> Dict[str, str]:
        return dict(self.model.build_args)

    def cache_dir(self, override: Optional[str] = None) -> str:
        """
        Resolve the cache directory

        Order: explicit override, the LAYERBUILD_CACHE_DIR environment
        variable, then '.layerbuild_cache' next to the build file.
        """
        if override:
            return os.path.abspath(override)
        from_env = os.environ.get(constants.CACHE_DIR_ENV)
        if from_env:
            return os.path.abspath(from_env)
        return os.path.join(self.base_dir, constants.DEFAULT_CACHE_DIR)
