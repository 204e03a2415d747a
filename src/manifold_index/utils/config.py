from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from manifold_index.contracts.weighting import WeightingMethod
from manifold_index.exceptions.core import ConfigError


class IndexConfig(BaseModel):
    """
    Recognised index options. Accepts camelCase aliases (lookbackPeriod, ...)
    or snake_case field names.

    `update_frequency` governs the caller's scheduling only; the engine does
    not enforce it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    universe: Tuple[str, ...] = Field(..., min_length=1, description="Candidate symbols passed to the data source.")
    lookback_period: int = Field(30, gt=0, alias="lookbackPeriod", description="Lookback window in days.")
    constituent_count: int = Field(10, gt=0, alias="constituentCount")
    update_frequency: int = Field(1, gt=0, alias="updateFrequency", description="Days between cycles.")
    weighting_method: WeightingMethod = Field(WeightingMethod.MARKET_CAP, alias="weightingMethod")
    manifold_dimension: int = Field(2, ge=1, alias="manifoldDimension")
    min_observations: int = Field(20, gt=0, alias="minObservations")
    base_index_value: float = Field(1000.0, gt=0, alias="baseIndexValue")

    projection_method: Literal["pca", "isomap"] = Field("pca", alias="projectionMethod")
    neighbors: int = Field(5, ge=1, description="Neighbourhood size for graph projectors.")
    selection_metric: Literal["embedding", "feature"] = Field("embedding", alias="selectionMetric")
    diversity_weight: float = Field(0.5, ge=0.0, le=1.0, alias="diversityWeight")
    max_weight: Optional[float] = Field(None, gt=0.0, le=1.0, alias="maxWeight")
    periods_per_year: int = Field(365, gt=0, alias="periodsPerYear")
    fetch_timeout: Optional[float] = Field(None, gt=0.0, alias="fetchTimeout", description="Seconds.")

    @field_validator("universe")
    @classmethod
    def _check_universe(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        cleaned = tuple(str(s).strip() for s in v)
        if any(not s for s in cleaned):
            raise ValueError("universe symbols must be non-empty strings")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("universe symbols must be unique")
        return cleaned

    @field_validator("projection_method", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexConfig":
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid index config: {e}") from e

    def replace(self, **changes: Any) -> "IndexConfig":
        """Copy with changes, re-validated."""
        data = self.model_dump(by_alias=False)
        data.update(changes)
        return IndexConfig.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def digest(self) -> str:
        """Stable SHA-256 over the canonical JSON form."""
        payload = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def load_config(path: str | Path) -> IndexConfig:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read index config {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Index config {p} must be a JSON object")
    return IndexConfig.from_dict(data)
