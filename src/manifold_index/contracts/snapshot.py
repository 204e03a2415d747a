from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

SCHEMA_VERSION = 1

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class Annotation:
    """
    Non-fatal condition absorbed by a cycle.

    `kind` is the error class name (InsufficientData, ValidationError,
    DegradedSelection, WeightError); `symbol` is None for cycle-wide notes.
    """
    kind: str
    stage: str
    detail: str
    symbol: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "stage": self.stage, "detail": self.detail, "symbol": self.symbol}

    @classmethod
    def from_exception(cls, exc: BaseException, *, stage: str, symbol: str | None = None) -> "Annotation":
        return cls(
            kind=type(exc).__name__,
            stage=stage,
            detail=str(exc),
            symbol=symbol if symbol is not None else getattr(exc, "symbol", None),
        )


@dataclass(frozen=True)
class Constituent:
    symbol: str
    weight: float
    updated_ts: int          # epoch ms of the cycle that set the weight
    reference_price: float   # price at updated_ts; next cycle measures returns from it

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "weight": float(self.weight),
            "updated_ts": int(self.updated_ts),
            "reference_price": float(self.reference_price),
        }


@dataclass(frozen=True)
class ChainBase:
    """Level the snapshot was chained from. `timestamp` is None on the first cycle."""
    value: float
    timestamp: int | None

    def to_dict(self) -> Dict[str, Any]:
        return {"value": float(self.value), "timestamp": self.timestamp}


@dataclass(frozen=True)
class IndexSnapshot:
    """
    Immutable output of one successful computation cycle.

    Invariants:
    - constituent weights sum to 1.0 within WEIGHT_TOLERANCE
    - len(constituents) <= requested_count; `degraded` is set whenever it
      is less, whether the selector found too few eligible assets or the
      weighting stage excluded some of them
    - base.timestamp < timestamp when chained
    """
    timestamp: int
    value: float
    constituents: tuple[Constituent, ...]
    base: ChainBase
    weighted_return: float
    weighting_method: str
    requested_count: int
    degraded: bool = False
    annotations: tuple[Annotation, ...] = field(default_factory=tuple)
    config_digest: str = ""
    schema_version: int = SCHEMA_VERSION

    @property
    def actual_count(self) -> int:
        return len(self.constituents)

    @property
    def previous_timestamp(self) -> int | None:
        return self.base.timestamp

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(c.symbol for c in self.constituents)

    @property
    def weights(self) -> Dict[str, float]:
        return {c.symbol: c.weight for c in self.constituents}

    def annotations_of(self, kind: str) -> tuple[Annotation, ...]:
        return tuple(a for a in self.annotations if a.kind == kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": int(self.timestamp),
            "value": float(self.value),
            "constituents": [c.to_dict() for c in self.constituents],
            "base": self.base.to_dict(),
            "previous_timestamp": self.previous_timestamp,
            "weighted_return": float(self.weighted_return),
            "weighting_method": self.weighting_method,
            "requested_count": int(self.requested_count),
            "actual_count": self.actual_count,
            "degraded": bool(self.degraded),
            "annotations": [a.to_dict() for a in self.annotations],
            "config_digest": self.config_digest,
            "schema_version": int(self.schema_version),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "IndexSnapshot":
        base = d["base"]
        base_ts = base.get("timestamp")
        return cls(
            timestamp=int(d["timestamp"]),
            value=float(d["value"]),
            constituents=tuple(
                Constituent(
                    symbol=str(c["symbol"]),
                    weight=float(c["weight"]),
                    updated_ts=int(c["updated_ts"]),
                    reference_price=float(c["reference_price"]),
                )
                for c in d.get("constituents", [])
            ),
            base=ChainBase(value=float(base["value"]), timestamp=None if base_ts is None else int(base_ts)),
            weighted_return=float(d.get("weighted_return", 0.0)),
            weighting_method=str(d["weighting_method"]),
            requested_count=int(d["requested_count"]),
            degraded=bool(d.get("degraded", False)),
            annotations=tuple(
                Annotation(kind=a["kind"], stage=a["stage"], detail=a["detail"], symbol=a.get("symbol"))
                for a in d.get("annotations", [])
            ),
            config_digest=str(d.get("config_digest", "")),
            schema_version=int(d.get("schema_version", SCHEMA_VERSION)),
        )
