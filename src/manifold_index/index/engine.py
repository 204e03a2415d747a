from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextvars import copy_context
from typing import Iterable, List, Sequence

from manifold_index.contracts.observation import Observation
from manifold_index.contracts.snapshot import Annotation, ChainBase, Constituent, IndexSnapshot
from manifold_index.contracts.source import ObservationSource, SnapshotSink
from manifold_index.exceptions.core import (
    ChainConflictError,
    CycleError,
    CycleTimeoutError,
    DataSourceConnectionError,
    DegradedSelection,
    IndexEngineError,
    ProjectionError,
)
from manifold_index.features.builder import FeatureBuilder
from manifold_index.index.cycle import CycleState, CycleTrace, PreparedCycle, chain_return, latest_prices
from manifold_index.index.ledger import SnapshotLedger
from manifold_index.projection.manifold import ManifoldProjector
from manifold_index.selection.selector import ConstituentSelector
from manifold_index.utils.config import IndexConfig
from manifold_index.utils.logger import cycle_context, get_logger, log_cycle, log_error, log_warn
from manifold_index.utils.timer import timed_block, window_bounds
from manifold_index.weighting.calculator import WeightCalculator

CycleOutcome = IndexSnapshot | CycleError


class IndexEngine:
    """
    Orchestrates one computation cycle per timestamp:

        fetch -> features -> projection -> selection -> weighting -> chaining

    It owns no market state. The previous snapshot is an explicit input to
    `compute_cycle`; `step` / `backfill` read it from the ledger and commit
    through it, which is the only place chaining state changes.
    """

    _logger = get_logger(__name__)

    def __init__(
        self,
        source: ObservationSource,
        config: IndexConfig,
        *,
        ledger: SnapshotLedger | None = None,
        sink: SnapshotSink | None = None,
        feature_executor: Executor | None = None,
    ):
        if ledger is not None and sink is not None:
            raise ValueError("pass a sink either to the engine or to the ledger, not both")
        self.source = source
        self.config = config
        self.ledger = ledger if ledger is not None else SnapshotLedger(sink=sink)
        self.feature_executor = feature_executor

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def _fetch(self, symbols: set[str], start_ts: int, end_ts: int, timeout: float | None) -> List[Observation]:
        """Source read bounded by `timeout` seconds."""
        def call() -> List[Observation]:
            try:
                return list(self.source.fetch_observations(frozenset(symbols), start_ts, end_ts))
            except (DataSourceConnectionError, CycleTimeoutError):
                raise
            except ConnectionError as e:
                raise DataSourceConnectionError(str(e) or type(e).__name__) from e
            except TimeoutError as e:
                raise CycleTimeoutError(str(e) or "data source timed out") from e

        if timeout is None:
            return call()

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="index-fetch")
        # the worker keeps the caller's cycle context for its log records
        future: Future = pool.submit(copy_context().run, call)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            raise CycleTimeoutError(f"data source read exceeded {timeout}s") from e
        finally:
            pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prepare(
        self,
        trace: CycleTrace,
        config: IndexConfig,
        extra_symbols: Iterable[str] = (),
        timeout: float | None = None,
    ) -> PreparedCycle:
        ts = trace.timestamp
        start_ts, end_ts = window_bounds(ts, config.lookback_period)
        universe = set(config.universe)
        notes: List[Annotation] = []

        trace.advance(CycleState.BUILDING_FEATURES)
        with timed_block("cycle.fetch", timestamp=ts):
            observations = self._fetch(universe | set(extra_symbols), start_ts, end_ts, timeout)
        with timed_block("cycle.features", timestamp=ts):
            built = FeatureBuilder.from_config(config, executor=self.feature_executor).build(
                [o for o in observations if o.symbol in universe],
                ts,
                config.lookback_period,
                symbols=universe,
            )
        notes.extend(built.issues)
        if built.matrix.n_assets == 0:
            raise ProjectionError("no eligible assets after feature building")

        trace.advance(CycleState.PROJECTING)
        with timed_block("cycle.projection", timestamp=ts):
            embedding = ManifoldProjector.from_config(config).project(built.matrix)

        trace.advance(CycleState.SELECTING)
        latest = built.latest
        with timed_block("cycle.selection", timestamp=ts):
            selector = ConstituentSelector.from_config(config)
            selection = selector.select(embedding, {s: o.market_cap for s, o in latest.items()})
        degraded = selector.degradation(selection)
        if degraded is not None:
            log_warn(self._logger, "cycle.degraded_selection", timestamp=ts, requested=degraded.requested, actual=degraded.actual)
            notes.append(Annotation.from_exception(degraded, stage=CycleState.SELECTING.value))

        trace.advance(CycleState.WEIGHTING)
        with timed_block("cycle.weighting", timestamp=ts):
            weights = WeightCalculator.from_config(config).compute(selection.symbols, built.history, built.matrix)
        for ex in weights.excluded:
            notes.append(
                Annotation(kind="WeightError", stage=CycleState.WEIGHTING.value, detail=ex.reason, symbol=ex.symbol)
            )
        # exclusions can push an otherwise full selection below the requested count
        if weights.excluded and len(weights.weights) < selection.requested:
            short = DegradedSelection(selection.requested, len(weights.weights))
            log_warn(self._logger, "cycle.degraded_weighting", timestamp=ts, requested=short.requested, actual=short.actual)
            notes.append(Annotation.from_exception(short, stage=CycleState.WEIGHTING.value))

        return PreparedCycle(
            timestamp=ts,
            config=config,
            features=built,
            embedding=embedding,
            selection=selection,
            weights=weights,
            prices=latest_prices(observations, start_ts, end_ts),
            annotations=tuple(notes),
        )

    def _finalize(self, trace: CycleTrace, prepared: PreparedCycle, previous: IndexSnapshot | None) -> IndexSnapshot:
        trace.advance(CycleState.FINALIZING)
        ts = prepared.timestamp
        config = prepared.config

        if previous is not None and ts <= previous.timestamp:
            raise ChainConflictError(f"cycle {ts} is not after previous snapshot {previous.timestamp}")

        weighted_return, chain_notes = chain_return(previous, prepared.prices)
        base = (
            ChainBase(value=previous.value, timestamp=previous.timestamp)
            if previous is not None
            else ChainBase(value=config.base_index_value, timestamp=None)
        )
        latest = prepared.features.latest
        constituents = tuple(
            Constituent(symbol=s, weight=w, updated_ts=ts, reference_price=float(latest[s].price))
            for s, w in prepared.weights.weights.items()
        )

        snapshot = IndexSnapshot(
            timestamp=ts,
            value=base.value * (1.0 + weighted_return),
            constituents=constituents,
            base=base,
            weighted_return=weighted_return,
            weighting_method=prepared.weights.method.value,
            requested_count=prepared.selection.requested,
            degraded=len(constituents) < prepared.selection.requested,
            annotations=prepared.annotations + chain_notes,
            config_digest=config.digest(),
        )
        trace.advance(CycleState.IDLE)
        log_cycle(
            self._logger,
            "cycle.completed",
            timestamp=ts,
            value=snapshot.value,
            constituents=snapshot.actual_count,
            degraded=snapshot.degraded,
            annotations=len(snapshot.annotations),
            elapsed_ms=round(trace.elapsed_ms(), 3),
        )
        return snapshot

    def _fail(self, trace: CycleTrace, exc: IndexEngineError) -> CycleError:
        err = exc if isinstance(exc, CycleError) else CycleError.from_exception(exc, state=trace.state, timestamp=trace.timestamp)
        trace.advance(CycleState.FAILED)
        log_error(self._logger, "cycle.failed", **err.to_dict())
        return err

    def _prepare_safe(
        self,
        timestamp: int,
        config: IndexConfig,
        extra_symbols: Iterable[str],
        timeout: float | None,
    ) -> tuple[CycleTrace, PreparedCycle | CycleError]:
        trace = CycleTrace(timestamp)
        with cycle_context(trace):
            try:
                return trace, self._prepare(trace, config, extra_symbols, timeout)
            except IndexEngineError as e:
                return trace, self._fail(trace, e)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compute_cycle(
        self,
        timestamp: int,
        config: IndexConfig | None = None,
        previous_snapshot: IndexSnapshot | None = None,
        *,
        timeout: float | None = None,
    ) -> CycleOutcome:
        """
        Compute one snapshot without committing it.

        Degraded conditions are annotations on the snapshot; structural
        failures come back as a CycleError value.
        """
        cfg = config or self.config
        effective_timeout = timeout if timeout is not None else cfg.fetch_timeout
        extra = previous_snapshot.symbols if previous_snapshot is not None else ()

        trace, prepared = self._prepare_safe(int(timestamp), cfg, extra, effective_timeout)
        if isinstance(prepared, CycleError):
            return prepared
        with cycle_context(trace):
            try:
                return self._finalize(trace, prepared, previous_snapshot)
            except IndexEngineError as e:
                return self._fail(trace, e)

    def step(self, timestamp: int, *, timeout: float | None = None) -> CycleOutcome:
        """Compute against the ledger head and commit on success."""
        outcome = self.compute_cycle(timestamp, self.config, self.ledger.head, timeout=timeout)
        if isinstance(outcome, CycleError):
            return outcome
        try:
            return self.ledger.commit(outcome)
        except ChainConflictError as e:
            return CycleError.from_exception(e, state=CycleState.FINALIZING, timestamp=outcome.timestamp)

    def backfill(
        self,
        timestamps: Sequence[int],
        *,
        max_workers: int = 4,
        timeout: float | None = None,
    ) -> List[CycleOutcome]:
        """
        Prepare cycles concurrently, then chain and commit them one by one in
        timestamp order. Stops at the first failure; earlier commits stay.
        """
        ordered = sorted({int(t) for t in timestamps})
        if not ordered:
            return []
        cfg = self.config
        effective_timeout = timeout if timeout is not None else cfg.fetch_timeout
        head = self.ledger.head
        extra = head.symbols if head is not None else ()

        results: List[CycleOutcome] = []
        with ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="index-backfill") as pool:
            futures = [pool.submit(self._prepare_safe, ts, cfg, extra, effective_timeout) for ts in ordered]
            try:
                for future in futures:
                    trace, prepared = future.result()
                    if isinstance(prepared, CycleError):
                        results.append(prepared)
                        break
                    with cycle_context(trace):
                        try:
                            snapshot = self._finalize(trace, prepared, self.ledger.head)
                        except IndexEngineError as e:
                            results.append(self._fail(trace, e))
                            break
                        try:
                            self.ledger.commit(snapshot)
                        except ChainConflictError as e:
                            results.append(
                                CycleError.from_exception(e, state=CycleState.FINALIZING, timestamp=snapshot.timestamp)
                            )
                            break
                        results.append(snapshot)
            finally:
                for future in futures:
                    future.cancel()

        log_cycle(
            self._logger,
            "backfill.done",
            requested=len(ordered),
            committed=sum(isinstance(r, IndexSnapshot) for r in results),
            failed=any(isinstance(r, CycleError) for r in results),
        )
        return results


def compute_cycle(
    timestamp: int,
    config: IndexConfig,
    source: ObservationSource,
    previous_snapshot: IndexSnapshot | None = None,
    *,
    timeout: float | None = None,
) -> CycleOutcome:
    """Stateless entry point: one cycle, nothing committed."""
    return IndexEngine(source, config).compute_cycle(timestamp, config, previous_snapshot, timeout=timeout)
