from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from manifold_index.contracts.snapshot import WEIGHT_TOLERANCE, IndexSnapshot
from manifold_index.data.sources import FrameObservationSource
from manifold_index.exceptions.core import CycleError
from manifold_index.index.cycle import CycleState
from manifold_index.index.engine import IndexEngine, compute_cycle
from tests.helpers.market import (
    DAY_MS,
    SYMBOLS,
    T0,
    FailingSource,
    RecordingSource,
    SlowSource,
    make_config,
    synthetic_frame,
)

T1 = T0 + 40 * DAY_MS
T2 = T0 + 47 * DAY_MS


@pytest.fixture(scope="module")
def frame():
    return synthetic_frame(SYMBOLS, 60)


@pytest.fixture
def source(frame):
    return FrameObservationSource(frame)


def _price(frame, symbol: str, ts: int) -> float:
    row = frame[(frame["symbol"] == symbol) & (frame["timestamp"] == ts)]
    return float(row["price"].iloc[0])


# ---------------------------------------------------------------------
# First cycle
# ---------------------------------------------------------------------

def test_first_cycle_starts_at_base_value(source) -> None:
    snap = compute_cycle(T1, make_config(), source)

    assert isinstance(snap, IndexSnapshot)
    assert snap.value == 1000.0
    assert snap.weighted_return == 0.0
    assert snap.previous_timestamp is None
    assert snap.actual_count == 5
    assert not snap.degraded
    assert abs(sum(snap.weights.values()) - 1.0) <= WEIGHT_TOLERANCE


def test_constituents_carry_cycle_prices(source, frame) -> None:
    snap = compute_cycle(T1, make_config(), source)
    for c in snap.constituents:
        assert c.updated_ts == T1
        assert c.reference_price == _price(frame, c.symbol, T1)


def test_market_cap_weights_follow_latest_caps(source, frame) -> None:
    snap = compute_cycle(T1, make_config(), source)
    caps = {
        s: float(frame[(frame["symbol"] == s) & (frame["timestamp"] == T1)]["market_cap"].iloc[0])
        for s in snap.symbols
    }
    total = sum(caps.values())
    for s, w in snap.weights.items():
        assert w == pytest.approx(caps[s] / total)


def test_cycle_reads_one_lookback_window(frame) -> None:
    rec = RecordingSource(FrameObservationSource(frame))
    compute_cycle(T1, make_config(), rec)

    assert rec.calls == [(frozenset(SYMBOLS), T1 - 30 * DAY_MS, T1)]


def test_same_inputs_same_snapshot(source) -> None:
    cfg = make_config()
    a = compute_cycle(T1, cfg, source)
    b = compute_cycle(T1, cfg, source)
    assert a.to_dict() == b.to_dict()
    assert a.config_digest == cfg.digest()


def test_parallel_feature_build_gives_same_snapshot(source) -> None:
    cfg = make_config()
    serial = IndexEngine(source, cfg).compute_cycle(T1)
    with ThreadPoolExecutor(max_workers=3) as pool:
        parallel = IndexEngine(source, cfg, feature_executor=pool).compute_cycle(T1)
    assert parallel.to_dict() == serial.to_dict()


@pytest.mark.parametrize(
    "overrides",
    [
        {"weightingMethod": "volume"},
        {"weightingMethod": "liquidity"},
        {"weightingMethod": "riskParity"},
        {"projectionMethod": "isomap", "neighbors": 3},
        {"selectionMetric": "feature", "diversityWeight": 0.0},
        {"maxWeight": 0.3},
    ],
)
def test_configured_variants_produce_valid_snapshots(source, overrides) -> None:
    snap = compute_cycle(T1, make_config(**overrides), source)

    assert isinstance(snap, IndexSnapshot), snap
    assert 0 < snap.actual_count <= snap.requested_count
    assert abs(sum(snap.weights.values()) - 1.0) <= WEIGHT_TOLERANCE
    if "maxWeight" in overrides:
        assert max(snap.weights.values()) <= 0.3 + 1e-9


# ---------------------------------------------------------------------
# Degraded conditions
# ---------------------------------------------------------------------

def test_more_requested_than_eligible_is_degraded(source) -> None:
    snap = compute_cycle(T1, make_config(constituentCount=20), source)

    assert isinstance(snap, IndexSnapshot)
    assert snap.actual_count == 10
    assert snap.requested_count == 20
    assert snap.degraded
    assert len(snap.annotations_of("DegradedSelection")) == 1


def test_short_history_asset_is_annotated_not_selected(frame) -> None:
    late = frame[(frame["symbol"] != "DOTUSDT") | (frame["timestamp"] >= T1 - 4 * DAY_MS)]
    snap = compute_cycle(T1, make_config(constituentCount=10), FrameObservationSource(late))

    assert isinstance(snap, IndexSnapshot)
    assert "DOTUSDT" not in snap.symbols
    assert snap.actual_count == 9
    notes = snap.annotations_of("InsufficientData")
    assert [n.symbol for n in notes] == ["DOTUSDT"]


def test_weighting_exclusion_is_recorded_and_degrades(frame) -> None:
    zero_cap = frame.copy()
    zero_cap.loc[zero_cap["symbol"] == "DOTUSDT", "market_cap"] = 0.0
    snap = compute_cycle(T1, make_config(constituentCount=10), FrameObservationSource(zero_cap))

    assert isinstance(snap, IndexSnapshot)
    assert "DOTUSDT" not in snap.symbols
    assert snap.actual_count == 9
    assert snap.degraded
    assert [n.symbol for n in snap.annotations_of("WeightError")] == ["DOTUSDT"]
    short = snap.annotations_of("DegradedSelection")
    assert len(short) == 1
    assert short[0].stage == CycleState.WEIGHTING.value
    assert abs(sum(snap.weights.values()) - 1.0) <= WEIGHT_TOLERANCE


def test_subnormal_market_cap_is_excluded_not_raised(frame) -> None:
    tiny = frame.copy()
    tiny.loc[tiny["symbol"] == "DOTUSDT", "market_cap"] = 5e-324
    snap = compute_cycle(T1, make_config(constituentCount=10), FrameObservationSource(tiny))

    assert isinstance(snap, IndexSnapshot), snap
    assert "DOTUSDT" not in snap.symbols
    assert snap.degraded
    assert [n.symbol for n in snap.annotations_of("ValidationError")] == ["DOTUSDT"]


def test_unknown_universe_symbol_is_annotated(source) -> None:
    cfg = make_config(symbols=SYMBOLS + ["NEWCOIN"])
    snap = compute_cycle(T1, cfg, source)

    assert isinstance(snap, IndexSnapshot)
    assert any(n.symbol == "NEWCOIN" for n in snap.annotations_of("InsufficientData"))


# ---------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------

def test_flat_market_fails_in_projection() -> None:
    flat = FrameObservationSource(synthetic_frame(SYMBOLS[:5], 30, flat=True))
    out = compute_cycle(T0 + 29 * DAY_MS, make_config(symbols=SYMBOLS[:5]), flat)

    assert isinstance(out, CycleError)
    assert out.kind == "ProjectionError"
    assert out.state is CycleState.PROJECTING
    assert not out.retryable
    assert "volatility" in str(out)


def test_no_data_in_window_is_projection_error(source) -> None:
    out = compute_cycle(T0 + 400 * DAY_MS, make_config(), source)
    assert isinstance(out, CycleError)
    assert out.kind == "ProjectionError"
    assert out.state is CycleState.BUILDING_FEATURES


def test_connection_failure_is_retryable() -> None:
    out = compute_cycle(T1, make_config(), FailingSource())

    assert isinstance(out, CycleError)
    assert out.kind == "DataSourceConnectionError"
    assert out.retryable
    assert out.state is CycleState.BUILDING_FEATURES


def test_builtin_timeout_from_source_is_retryable() -> None:
    out = compute_cycle(T1, make_config(), FailingSource(TimeoutError("read timed out")))
    assert isinstance(out, CycleError)
    assert out.kind == "CycleTimeoutError"
    assert out.retryable


def test_slow_source_hits_fetch_timeout(source) -> None:
    out = compute_cycle(T1, make_config(), SlowSource(source, delay=1.0), timeout=0.05)

    assert isinstance(out, CycleError)
    assert out.kind == "CycleTimeoutError"
    assert out.retryable


def test_configured_fetch_timeout_applies(source) -> None:
    out = compute_cycle(T1, make_config(fetchTimeout=0.05), SlowSource(source, delay=1.0))
    assert isinstance(out, CycleError)
    assert out.kind == "CycleTimeoutError"


def test_generous_timeout_still_succeeds(source) -> None:
    out = compute_cycle(T1, make_config(), SlowSource(source, delay=0.01), timeout=10.0)
    assert isinstance(out, IndexSnapshot)


# ---------------------------------------------------------------------
# Chaining
# ---------------------------------------------------------------------

def test_second_cycle_chains_held_portfolio(source, frame) -> None:
    cfg = make_config()
    first = compute_cycle(T1, cfg, source)
    second = compute_cycle(T2, cfg, source, previous_snapshot=first)

    expected_return = sum(
        c.weight * (_price(frame, c.symbol, T2) / c.reference_price - 1.0) for c in first.constituents
    )
    assert second.weighted_return == pytest.approx(expected_return, rel=1e-12)
    assert second.value == pytest.approx(first.value * (1.0 + expected_return), rel=1e-12)
    assert second.previous_timestamp == T1
    assert second.base.value == first.value


def test_chaining_is_a_pure_function_of_previous(source) -> None:
    cfg = make_config()
    first = compute_cycle(T1, cfg, source)
    a = compute_cycle(T2, cfg, source, previous_snapshot=first)
    b = compute_cycle(T2, cfg, source, previous_snapshot=first)
    assert a.to_dict() == b.to_dict()


def test_previous_constituent_outside_universe_still_chains(source, frame) -> None:
    first = compute_cycle(T1, make_config(), source)
    dropped = first.constituents[0].symbol
    narrower = make_config(symbols=[s for s in SYMBOLS if s != dropped])

    second = compute_cycle(T2, narrower, source, previous_snapshot=first)

    assert isinstance(second, IndexSnapshot)
    assert dropped not in second.symbols
    assert second.annotations_of("InsufficientData") == ()
    expected = sum(c.weight * (_price(frame, c.symbol, T2) / c.reference_price - 1.0) for c in first.constituents)
    assert second.weighted_return == pytest.approx(expected, rel=1e-12)


def test_previous_snapshot_not_before_cycle_is_chain_conflict(source) -> None:
    cfg = make_config()
    later = compute_cycle(T2, cfg, source)
    out = compute_cycle(T1, cfg, source, previous_snapshot=later)

    assert isinstance(out, CycleError)
    assert out.kind == "ChainConflictError"
    assert out.state is CycleState.FINALIZING
