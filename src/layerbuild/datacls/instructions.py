"""
Build instructions

The closed set of instruction variants a stage is made of. Every variant is an
immutable pydantic model carrying a ``kind`` discriminator so that a list of
plain dicts (e.g. loaded from YAML) validates straight into typed instructions.
"""

import re
import shlex
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from ..utils.hashing import digest_of

_PORT_SPEC = re.compile(r'^(\d+)(?:/(tcp|udp))?$')


class BaseInstruction(BaseModel):
    """Common behaviour of all instruction variants."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str

    def payload(self) -> Dict[str, Any]:
        """JSON-compatible arguments of the instruction, without the discriminator."""
        return self.model_dump(mode="json", exclude={"kind"})

    def payload_digest(self) -> str:
        return digest_of({"kind": self.kind, "payload": self.payload()})

    def summary(self) -> str:
        """One-line human readable form, used in logs and cache index records."""
        args = " ".join(f"{k}={v}" for k, v in self.payload().items() if v not in (None, [], {}))
        return f"{self.kind.upper()} {args}".strip()


class FromImage(BaseInstruction):
    """Base of a stage: an external image reference or another stage's name/ordinal."""
    kind: Literal["from"] = "from"
    ref: str = Field(min_length=1)

    def summary(self) -> str:
        return f"FROM {self.ref}"


class Copy(BaseInstruction):
    """Copy files matched by ``src`` from the build context, or from another stage, to ``dest``."""
    kind: Literal["copy"] = "copy"
    src: Tuple[str, ...] = Field(min_length=1)
    dest: str = Field(min_length=1)
    from_stage: Optional[str] = None

    @field_validator("src", mode="before")
    @classmethod
    def single_source(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    def summary(self) -> str:
        origin = f"--from={self.from_stage} " if self.from_stage is not None else ""
        return f"COPY {origin}{' '.join(self.src)} {self.dest}"


class Run(BaseInstruction):
    """
    Run a command on top of the parent layer.

    ``inputs`` lists context patterns forming the command's working set; only
    those entries take part in the cache key.
    """
    kind: Literal["run"] = "run"
    command: str = Field(min_length=1)
    inputs: Tuple[str, ...] = ()

    def summary(self) -> str:
        return f"RUN {self.command}"


class Env(BaseInstruction):
    kind: Literal["env"] = "env"
    values: Dict[str, str] = Field(min_length=1)

    @field_validator("values", mode="before")
    @classmethod
    def stringify_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @classmethod
    def of(cls, key: str, value: str) -> "Env":
        return cls(values={key: value})

    def summary(self) -> str:
        return "ENV " + " ".join(f"{k}={v}" for k, v in self.values.items())


class Expose(BaseInstruction):
    kind: Literal["expose"] = "expose"
    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"

    @model_validator(mode="before")
    @classmethod
    def parse_port_spec(cls, data: Any) -> Any:
        """Accept '8080/udp' style port specs."""
        if isinstance(data, dict) and isinstance(data.get("port"), str):
            match = _PORT_SPEC.match(data["port"].strip())
            if not match:
                raise ValueError(f"Invalid port spec '{data['port']}'")
            data = dict(data)
            data["port"] = int(match.group(1))
            if match.group(2):
                data["protocol"] = match.group(2)
        return data

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.protocol}"

    def summary(self) -> str:
        return f"EXPOSE {self.spec}"


class User(BaseInstruction):
    kind: Literal["user"] = "user"
    identity: str = Field(min_length=1)

    def summary(self) -> str:
        return f"USER {self.identity}"


def _argv(value: Any) -> Any:
    # shell form is wrapped the same way container runtimes do
    if isinstance(value, str):
        return ("/bin/sh", "-c", value)
    return value


class Entrypoint(BaseInstruction):
    kind: Literal["entrypoint"] = "entrypoint"
    argv: Tuple[str, ...] = Field(min_length=1)

    @field_validator("argv", mode="before")
    @classmethod
    def shell_form(cls, value: Any) -> Any:
        return _argv(value)

    def summary(self) -> str:
        return f"ENTRYPOINT {shlex.join(self.argv)}"


class Cmd(BaseInstruction):
    kind: Literal["cmd"] = "cmd"
    argv: Tuple[str, ...] = Field(min_length=1)

    @field_validator("argv", mode="before")
    @classmethod
    def shell_form(cls, value: Any) -> Any:
        return _argv(value)

    def summary(self) -> str:
        return f"CMD {shlex.join(self.argv)}"


class Arg(BaseInstruction):
    kind: Literal["arg"] = "arg"
    name: str = Field(min_length=1)
    default: Optional[str] = None

    def resolve(self, build_args: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Effective value: a build argument override wins over the default."""
        if build_args and self.name in build_args:
            return build_args[self.name]
        return self.default

    def summary(self) -> str:
        return f"ARG {self.name}" + (f"={self.default}" if self.default is not None else "")


Instruction = Annotated[
    Union[FromImage, Copy, Run, Env, Expose, User, Entrypoint, Cmd, Arg],
    Field(discriminator="kind"),
]

_INSTRUCTION_ADAPTER = TypeAdapter(Instruction)
_INSTRUCTIONS_ADAPTER = TypeAdapter(List[Instruction])


def parse_instruction(data: Dict[str, Any]) -> BaseInstruction:
    """Validate a plain mapping (with a 'kind' key) into an instruction."""
    return _INSTRUCTION_ADAPTER.validate_python(data)


def parse_instructions(data: List[Dict[str, Any]]) -> List[BaseInstruction]:
    return _INSTRUCTIONS_ADAPTER.validate_python(data)
