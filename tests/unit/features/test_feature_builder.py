from __future__ import annotations

import dataclasses
import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from manifold_index.contracts.features import FEATURE_COLUMNS
from manifold_index.contracts.observation import Observation
from manifold_index.data.sources import FrameObservationSource
from manifold_index.features.builder import FeatureBuilder
from tests.helpers.market import DAY_MS, SYMBOLS, T0, synthetic_frame


def _observations(symbols=SYMBOLS[:5], days=40, **kw):
    frame = synthetic_frame(symbols, days, **kw)
    return FrameObservationSource(frame).fetch_observations(set(symbols), T0, T0 + days * DAY_MS)


def test_matrix_rows_share_feature_order():
    obs = _observations()
    result = FeatureBuilder(min_observations=20).build(obs, T0 + 39 * DAY_MS, 30)

    assert result.matrix.feature_names == FEATURE_COLUMNS
    assert result.matrix.symbols == tuple(sorted(SYMBOLS[:5]))
    for s in result.matrix.symbols:
        assert len(result.matrix.vector(s)) == len(FEATURE_COLUMNS)
    assert result.issues == ()


def test_volatility_matches_annualised_log_return_std():
    obs = _observations()
    ts = T0 + 39 * DAY_MS
    result = FeatureBuilder(min_observations=20, periods_per_year=365).build(obs, ts, 30)

    btc = sorted(
        (o for o in obs if o.symbol == "BTCUSDT" and ts - 30 * DAY_MS <= o.timestamp <= ts),
        key=lambda o: o.timestamp,
    )
    rets = np.diff(np.log([o.price for o in btc]))
    expected = float(np.std(rets, ddof=1) * math.sqrt(365))

    row = dict(zip(FEATURE_COLUMNS, result.matrix.vector("BTCUSDT")))
    assert row["volatility"] == pytest.approx(expected, rel=1e-9)
    assert row["inverse_volatility"] == pytest.approx(1.0 / expected, rel=1e-9)
    assert -1.0 <= row["market_correlation"] <= 1.0


def test_short_history_symbol_is_excluded_not_fatal():
    obs = _observations()
    ts = T0 + 39 * DAY_MS
    # keep only 5 ETH points
    eth = [o for o in obs if o.symbol == "ETHUSDT"][-5:]
    obs = [o for o in obs if o.symbol != "ETHUSDT"] + eth

    result = FeatureBuilder(min_observations=20).build(obs, ts, 30)

    assert "ETHUSDT" not in result.matrix
    assert result.matrix.n_assets == 4
    kinds = {(a.kind, a.symbol) for a in result.issues}
    assert ("InsufficientData", "ETHUSDT") in kinds


def test_requested_symbol_without_data_is_reported():
    obs = _observations()
    result = FeatureBuilder(min_observations=20).build(obs, T0 + 39 * DAY_MS, 30, symbols=set(SYMBOLS[:5]) | {"NEWCOIN"})

    assert "NEWCOIN" not in result.matrix
    assert any(a.kind == "InsufficientData" and a.symbol == "NEWCOIN" for a in result.issues)


def test_invalid_observations_are_dropped_and_recorded():
    obs = _observations()
    ts = T0 + 39 * DAY_MS
    bad = [
        Observation(symbol="BTCUSDT", price=0.0, market_cap=1.0, volume=1.0, timestamp=ts - DAY_MS // 2),
        Observation(symbol="SOLUSDT", price=5.0, market_cap=-1.0, volume=1.0, timestamp=ts - DAY_MS // 3),
        Observation(symbol="BNBUSDT", price=5.0, market_cap=1.0, volume=-3.0, timestamp=ts - DAY_MS // 4),
    ]
    clean = FeatureBuilder(min_observations=20).build(obs, ts, 30)
    dirty = FeatureBuilder(min_observations=20).build(obs + bad, ts, 30)

    assert dirty.matrix.frame.equals(clean.matrix.frame)
    dropped = [a for a in dirty.issues if a.kind == "ValidationError"]
    assert {a.symbol for a in dropped} == {"BTCUSDT", "SOLUSDT", "BNBUSDT"}


def test_duplicate_timestamps_keep_last_point():
    ts = T0 + 29 * DAY_MS
    obs = [
        Observation(symbol="X", price=100.0 + i, market_cap=1e6, volume=1e4, timestamp=T0 + i * DAY_MS)
        for i in range(30)
    ]
    dup = Observation(symbol="X", price=500.0, market_cap=1e6, volume=1e4, timestamp=T0 + 29 * DAY_MS)
    result = FeatureBuilder(min_observations=10).build(obs + [dup], ts, 30)

    assert len(result.history["X"]) == 30
    assert result.latest["X"].price == 500.0


def test_build_is_deterministic_and_order_independent():
    obs = _observations()
    ts = T0 + 39 * DAY_MS
    a = FeatureBuilder(min_observations=20).build(obs, ts, 30)
    b = FeatureBuilder(min_observations=20).build(list(reversed(obs)), ts, 30)

    assert a.matrix.frame.equals(b.matrix.frame)


def test_parallel_per_symbol_build_matches_serial():
    obs = _observations(symbols=SYMBOLS)
    ts = T0 + 39 * DAY_MS
    serial = FeatureBuilder(min_observations=20).build(obs, ts, 30)
    with ThreadPoolExecutor(max_workers=4) as pool:
        parallel = FeatureBuilder(min_observations=20, executor=pool).build(obs, ts, 30)

    assert parallel.matrix.frame.equals(serial.matrix.frame)


def test_flat_prices_keep_all_assets_with_zero_volatility():
    obs = _observations(days=30, flat=True)
    result = FeatureBuilder(min_observations=20).build(obs, T0 + 29 * DAY_MS, 30)

    assert result.matrix.n_assets == 5
    assert (result.matrix.frame["volatility"] == 0.0).all()
    assert (result.matrix.frame["inverse_volatility"] == 0.0).all()


def test_overflowing_liquidity_excludes_symbol_with_annotation():
    obs = _observations()
    ts = T0 + 39 * DAY_MS
    # a subnormal cap divides volume into inf
    obs = [dataclasses.replace(o, market_cap=5e-324) if o.symbol == "ETHUSDT" else o for o in obs]

    result = FeatureBuilder(min_observations=20).build(obs, ts, 30)

    assert "ETHUSDT" not in result.matrix
    assert result.matrix.n_assets == 4
    assert [(i.kind, i.symbol) for i in result.issues] == [("ValidationError", "ETHUSDT")]
    assert "liquidity" in result.issues[0].detail
