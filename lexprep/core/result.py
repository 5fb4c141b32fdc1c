"""Result type for best-effort operations that can partially degrade."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Primary value plus warnings collected from auxiliary steps."""

    value: T
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
