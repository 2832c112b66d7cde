"""
Chart Patterns — Pattern Engine

Orchestrates one detection call:
  candles → pivots → classifiers → breakout evaluation → completion floor
  → dedup → aftermath → impact scoring → categorized result

Detection is synchronous and stateless. Historical enrichment is async: the
candle provider is awaited once and one backtest per pattern type runs in a
worker thread, all joined with ``asyncio.gather``.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Sequence, Union

import structlog

from chartpatterns.config import DetectionConfig, get_settings
from chartpatterns.engines.aftermath_engine import AftermathEngine
from chartpatterns.engines.breakout_engine import BreakoutEngine
from chartpatterns.engines.continuation_patterns import ContinuationPatternClassifier
from chartpatterns.engines.dedup import deduplicate
from chartpatterns.engines.impact_engine import ImpactEngine
from chartpatterns.engines.pattern_scoring import ScanContext
from chartpatterns.engines.pivots import find_pivots
from chartpatterns.engines.reversal_patterns import ReversalPatternClassifier
from chartpatterns.models import (
    Candle,
    DetectionDiagnostics,
    DetectionResult,
    HistoricalCaseStats,
    PatternStatus,
    PatternType,
)
from chartpatterns.observability import trace_span, traced

log = structlog.get_logger(__name__)

LOW_DETECTION_COUNT = 1


class CandleProvider(Protocol):
    """Source of a longer candle history for the same instrument/timeframe."""

    async def get_candles(self, limit: int) -> list[Candle]:
        ...


class PatternEngine:
    """Chart-pattern detection across every supported formation family."""

    def __init__(self):
        self._reversal = ReversalPatternClassifier()
        self._continuation = ContinuationPatternClassifier()
        self._breakout = BreakoutEngine()
        self._impact = ImpactEngine()
        self._aftermath = AftermathEngine()

    @staticmethod
    def _coerce(candles: Sequence[Union[Candle, dict]]) -> list[Candle]:
        return [c if isinstance(c, Candle) else Candle.model_validate(c) for c in candles]

    # ──────────────────────────────────────────────
    # Detection
    # ──────────────────────────────────────────────

    def detect(
        self,
        candles: Sequence[Union[Candle, dict]],
        config: Optional[DetectionConfig] = None,
    ) -> DetectionResult:
        """Detect chart patterns in a time-ascending candle series.

        Args:
            candles: OHLC bars, oldest first.
            config: Per-call parameters. Defaults to ``Settings.default_mode``.

        Returns:
            DetectionResult with evaluated, deduplicated and scored candidates.
            Short series return an empty result rather than raising.
        """
        config = config or DetectionConfig.for_mode(get_settings().default_mode)
        bars = self._coerce(candles)
        diagnostics = DetectionDiagnostics(params=config.model_dump(mode="json"))
        result = DetectionResult(candle_count=len(bars), diagnostics=diagnostics)

        if len(bars) < config.min_bars:
            result.warnings.append("insufficient_bars")
            log.debug("pattern_engine.insufficient_bars", bars=len(bars), required=config.min_bars)
            return result

        with trace_span("pattern_engine.detect", metadata={"bars": len(bars), "mode": config.mode.value}) as span:
            pivots = find_pivots(bars, config.pivot_depth, config.pivot_vote)
            diagnostics.swings = pivots
            ctx = ScanContext(candles=bars, pivots=pivots, config=config, diagnostics=diagnostics)

            raw = self._reversal.detect(ctx) + self._continuation.detect(ctx)
            diagnostics.raw_count = len(raw)

            evaluated = [self._breakout.evaluate(c, bars, config) for c in raw]
            evaluated = [c for c in evaluated if self._passes_floor(c, config, len(bars) - 1)]
            survivors = deduplicate(evaluated)
            diagnostics.deduped_count = len(survivors)

            if config.include_aftermath:
                survivors = [
                    c.model_copy(update={"aftermath": self._aftermath.analyze(c, bars, config)})
                    if c.breakout and c.breakout.breakout_index is not None else c
                    for c in survivors
                ]
            scored = [self._impact.score(c, bars, config) for c in survivors]
            scored.sort(key=lambda c: (c.impact.impact_score, c.confidence), reverse=True)

        diagnostics.elapsed_ms = span["elapsed_ms"]
        result.patterns = scored
        if config.group_results:
            result.groups = self._impact.categorize(scored)

        log.info(
            "pattern_engine.scan_complete",
            bars=len(bars),
            pivots=len(pivots),
            raw=diagnostics.raw_count,
            patterns=len(scored),
            mode=config.mode.value,
        )
        return result

    @staticmethod
    def _passes_floor(candidate, config: DetectionConfig, last: int) -> bool:
        """Completion floor plus the optional still-relevant-now filter."""
        if candidate.completion < config.min_completion:
            return False
        if config.require_current_in_pattern:
            active = candidate.status in (PatternStatus.COMPLETED_ACTIVE, PatternStatus.NEAR_COMPLETION)
            return active or last - candidate.range.end_index <= config.relevance_bars
        return True

    # ──────────────────────────────────────────────
    # Historical Enrichment
    # ──────────────────────────────────────────────

    @traced("pattern_engine.backtest")
    def backtest(
        self,
        candles: Sequence[Union[Candle, dict]],
        config: DetectionConfig,
        pattern_types: Optional[Sequence[PatternType]] = None,
        max_examples: Optional[int] = None,
    ) -> dict[str, HistoricalCaseStats]:
        """Detect over a long history and aggregate each type's aftermath."""
        update = {
            "min_completion": 0.0,
            "group_results": False,
            "include_aftermath": True,
            "require_current_in_pattern": False,
        }
        if pattern_types:
            update["patterns"] = [PatternType(t).value for t in pattern_types]
        history_config = config.model_copy(update=update)
        result = self.detect(candles, history_config)
        limit = max_examples if max_examples is not None else get_settings().history_max_examples
        stats = self._aftermath.summarize(result.patterns, limit)

        for t in pattern_types or ():
            key = PatternType(t).value
            stats.setdefault(key, HistoricalCaseStats(pattern_type=PatternType(t)))
        return stats

    @staticmethod
    def _config_of(result: DetectionResult) -> DetectionConfig:
        """The config recorded on a result, or the process default."""
        if result.diagnostics and result.diagnostics.params:
            return DetectionConfig.model_validate(result.diagnostics.params)
        return DetectionConfig.for_mode(get_settings().default_mode)

    async def enrich_with_history(
        self,
        result: DetectionResult,
        provider: CandleProvider,
        config: Optional[DetectionConfig] = None,
        lookback: Optional[int] = None,
    ) -> DetectionResult:
        """Attach per-type historical statistics for every detected type.

        Without ``config`` the history scan reuses the parameters that produced
        ``result``. Provider failures are logged and leave the result without statistics.
        """
        types = sorted({p.type for p in result.patterns}, key=lambda t: t.value)
        if not types:
            return result
        config = config or self._config_of(result)
        limit = lookback or get_settings().history_lookback_bars

        try:
            history = self._coerce(await provider.get_candles(limit))
        except Exception as e:
            log.warning("pattern_engine.history_fetch_failed", error=str(e), lookback=limit)
            return result.model_copy(update={"warnings": result.warnings + ["history_unavailable"]})

        per_type = await asyncio.gather(*(
            asyncio.to_thread(self.backtest, history, config, [t])
            for t in types
        ))

        statistics: dict[str, HistoricalCaseStats] = {}
        for stats in per_type:
            statistics.update(stats)
        warnings = list(result.warnings)
        for key, stats in statistics.items():
            if stats.count <= LOW_DETECTION_COUNT:
                warnings.append(f"low_detection_count:{key}")

        log.info(
            "pattern_engine.history_enriched",
            types=[t.value for t in types],
            history_bars=len(history),
        )
        return result.model_copy(update={"statistics": statistics, "warnings": warnings})
