from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class SelectionResult:
    """
    Ordered constituent symbols (selection order) with their scores at the
    moment each was picked. `degraded` is set when fewer than `requested`
    eligible assets existed.
    """
    symbols: tuple[str, ...]
    requested: int
    scores: Dict[str, float] = field(default_factory=dict)
    metric: str = "embedding"

    @property
    def actual_count(self) -> int:
        return len(self.symbols)

    @property
    def degraded(self) -> bool:
        return self.actual_count < self.requested
