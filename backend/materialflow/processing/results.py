"""Tagged stage results: callers can tell "worked", "worked worse" and "failed" apart."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCESS  = "success"
    DEGRADED = "degraded"
    FAILED   = "failed"


@dataclass
class StageResult(Generic[T]):
    value:    T
    outcome:  Outcome = Outcome.SUCCESS
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.outcome is Outcome.DEGRADED

    @classmethod
    def ok(cls, value: T) -> "StageResult[T]":
        return cls(value=value)

    @classmethod
    def degrade(cls, value: T, *warnings: str) -> "StageResult[T]":
        return cls(value=value, outcome=Outcome.DEGRADED, warnings=list(warnings))
