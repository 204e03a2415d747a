from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from manifold_index.exceptions.core import ValidationError


@dataclass(frozen=True)
class Observation:
    """
    One asset at one instant.

    Semantics:
        - `timestamp` : observation time (UTC epoch ms int)
        - `price`     : > 0
        - `market_cap`: >= 0
        - `volume`    : traded volume, >= 0

    Construction does not validate; sources may hand back bad points and the
    feature stage decides what to drop. Call `validate()` to check.
    """

    symbol: str
    price: float
    market_cap: float
    volume: float
    timestamp: int

    def validate(self) -> "Observation":
        if not isinstance(self.symbol, str) or not self.symbol.strip():
            raise ValidationError(f"observation symbol must be a non-empty string, got {self.symbol!r}")
        for name in ("price", "market_cap", "volume"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
                raise ValidationError(f"{self.symbol}@{self.timestamp}: {name} must be a finite number, got {value!r}")
        if self.price <= 0:
            raise ValidationError(f"{self.symbol}@{self.timestamp}: non-positive price {self.price}")
        if self.market_cap < 0:
            raise ValidationError(f"{self.symbol}@{self.timestamp}: negative market cap {self.market_cap}")
        if self.volume < 0:
            raise ValidationError(f"{self.symbol}@{self.timestamp}: negative volume {self.volume}")
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": float(self.price),
            "market_cap": float(self.market_cap),
            "volume": float(self.volume),
            "timestamp": int(self.timestamp),
        }

    @classmethod
    def from_mapping(cls, rec: Mapping[str, Any]) -> "Observation":
        return cls(
            symbol=str(rec["symbol"]),
            price=float(rec["price"]),
            market_cap=float(rec["market_cap"]),
            volume=float(rec["volume"]),
            timestamp=int(rec["timestamp"]),
        )
