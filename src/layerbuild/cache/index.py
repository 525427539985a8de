import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..datacls import Instruction, Layer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LayerRecord(BaseModel):
    """
    Index entry describing one stored layer.

    This is what inspection and pruning tools see: the layer itself plus the
    size of its delta and when it was first stored.
    """
    model_config = ConfigDict(frozen=True)

    hash: str
    parent_hash: Optional[str] = None
    instruction: Instruction
    delta_ref: Optional[str] = None
    delta_size: int = 0
    empty: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def kind(self) -> str:
        return self.instruction.kind

    @property
    def summary(self) -> str:
        return self.instruction.summary()

    @classmethod
    def from_layer(cls, layer: Layer, delta_size: int = 0) -> "LayerRecord":
        return cls(
            hash=layer.hash,
            parent_hash=layer.parent_hash,
            instruction=layer.instruction,
            delta_ref=layer.delta_ref,
            delta_size=delta_size,
            empty=layer.empty,
        )

    def to_layer(self) -> Layer:
        return Layer(
            hash=self.hash,
            parent_hash=self.parent_hash,
            instruction=self.instruction,
            delta_ref=self.delta_ref,
            empty=self.empty,
        )


PrunePredicate = Callable[[LayerRecord], bool]


def prune_all(record: LayerRecord) -> bool:
    """Select every unreferenced record."""
    return True


def older_than(age: timedelta, now: Optional[datetime] = None) -> PrunePredicate:
    """Select records stored more than ``age`` ago."""
    reference = now or _utcnow()

    def predicate(record: LayerRecord) -> bool:
        created = record.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return reference - created > age

    return predicate


_AGE_PATTERN = re.compile(r'^\s*(\d+)\s*([smhdw])\s*$')
_AGE_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_age(text: str) -> timedelta:
    """
    Parse a compact age like '30m', '12h' or '7d'

    Raises:
        ValueError: if the text is not '<number><s|m|h|d|w>'
    """
    match = _AGE_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid age '{text}', expected e.g. '30m', '12h', '7d'")
    return int(match.group(1)) * _AGE_UNITS[match.group(2)]
