from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Tuple

from manifold_index.contracts.features import FeatureBuildResult
from manifold_index.contracts.observation import Observation
from manifold_index.contracts.projection import Embedding
from manifold_index.contracts.selection import SelectionResult
from manifold_index.contracts.snapshot import Annotation, IndexSnapshot
from manifold_index.contracts.weighting import WeightResult
from manifold_index.exceptions.core import InsufficientData, ValidationError
from manifold_index.utils.config import IndexConfig
from manifold_index.utils.logger import get_logger, log_debug


class CycleState(Enum):
    """
    Per-cycle state machine:

        IDLE -> BUILDING_FEATURES -> PROJECTING -> SELECTING -> WEIGHTING
             -> FINALIZING -> IDLE | FAILED
    """

    IDLE = "idle"
    BUILDING_FEATURES = "building_features"
    PROJECTING = "projecting"
    SELECTING = "selecting"
    WEIGHTING = "weighting"
    FINALIZING = "finalizing"
    FAILED = "failed"


_ORDER = (
    CycleState.IDLE,
    CycleState.BUILDING_FEATURES,
    CycleState.PROJECTING,
    CycleState.SELECTING,
    CycleState.WEIGHTING,
    CycleState.FINALIZING,
)


class CycleTrace:
    """
    Transition log of one cycle. Transitions must follow _ORDER; any state
    may move to FAILED, and FINALIZING returns to IDLE.
    """

    _logger = get_logger(__name__)

    def __init__(self, timestamp: int):
        self.timestamp = int(timestamp)
        self.state = CycleState.IDLE
        self.history: List[Tuple[CycleState, float]] = [(CycleState.IDLE, time.perf_counter())]

    def advance(self, state: CycleState) -> None:
        cur = self.state
        if state is CycleState.FAILED:
            pass
        elif cur is CycleState.FINALIZING and state is CycleState.IDLE:
            pass
        elif cur in _ORDER and state in _ORDER and _ORDER.index(state) == _ORDER.index(cur) + 1:
            pass
        else:
            raise RuntimeError(f"illegal cycle transition {cur.value} -> {state.value}")
        self.state = state
        self.history.append((state, time.perf_counter()))
        log_debug(self._logger, "cycle.transition", timestamp=self.timestamp, from_state=cur, to_state=state)

    @property
    def states(self) -> tuple[CycleState, ...]:
        return tuple(s for s, _ in self.history)

    def elapsed_ms(self) -> float:
        return (self.history[-1][1] - self.history[0][1]) * 1000.0


@dataclass(frozen=True, eq=False)
class PreparedCycle:
    """Everything up to (not including) chaining. Independent of the previous snapshot."""
    timestamp: int
    config: IndexConfig
    features: FeatureBuildResult
    embedding: Embedding
    selection: SelectionResult
    weights: WeightResult
    prices: Mapping[str, float]
    annotations: tuple[Annotation, ...] = field(default_factory=tuple)


def latest_prices(observations: Iterable[Observation], start_ts: int, end_ts: int) -> Dict[str, float]:
    """Last valid in-window price per symbol."""
    best: Dict[str, Tuple[int, float]] = {}
    for o in observations:
        try:
            o.validate()
        except ValidationError:
            continue
        ts = int(o.timestamp)
        if not (start_ts <= ts <= end_ts):
            continue
        prev = best.get(o.symbol)
        if prev is None or ts >= prev[0]:
            best[o.symbol] = (ts, float(o.price))
    return {s: p for s, (_, p) in best.items()}


def chain_return(
    previous: IndexSnapshot | None,
    prices: Mapping[str, float],
) -> tuple[float, tuple[Annotation, ...]]:
    """
    Return of the portfolio held since `previous`: sum of w_i * (p_i / ref_i - 1)
    over the previous constituents, in their stored order. A constituent with
    no current price contributes zero and is annotated.
    """
    if previous is None:
        return 0.0, ()

    total = 0.0
    notes: List[Annotation] = []
    for c in previous.constituents:
        price = prices.get(c.symbol)
        if price is None or not math.isfinite(price) or price <= 0 or c.reference_price <= 0:
            notes.append(
                Annotation.from_exception(
                    InsufficientData(c.symbol, 0, 1, reason="no current price for chaining"),
                    stage=CycleState.FINALIZING.value,
                )
            )
            continue
        total += c.weight * (price / c.reference_price - 1.0)
    return total, tuple(notes)
