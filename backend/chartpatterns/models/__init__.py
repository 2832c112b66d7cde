"""
Chart Patterns — Pydantic Models

All I/O schemas for the detection engine. Engines accept candles and return
these; the historical enrichment path serializes them unchanged.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class PivotKind(str, Enum):
    """Swing pivot classification."""
    HIGH = "H"
    LOW = "L"


class PatternType(str, Enum):
    """Supported chart formations."""
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    TRIPLE_TOP = "triple_top"
    TRIPLE_BOTTOM = "triple_bottom"
    HEAD_AND_SHOULDERS = "head_and_shoulders"
    INVERSE_HEAD_AND_SHOULDERS = "inverse_head_and_shoulders"
    TRIANGLE_ASCENDING = "triangle_ascending"
    TRIANGLE_DESCENDING = "triangle_descending"
    TRIANGLE_SYMMETRICAL = "triangle_symmetrical"
    RISING_WEDGE = "rising_wedge"
    FALLING_WEDGE = "falling_wedge"
    PENNANT = "pennant"
    FLAG = "flag"


class PatternStatus(str, Enum):
    """Lifecycle status attached by the breakout evaluator."""
    FORMING = "forming"
    NEAR_COMPLETION = "near_completion"
    COMPLETED_ACTIVE = "completed_active"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"


class Direction(str, Enum):
    """Expected resolution of a formation."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class DetectionMode(str, Enum):
    """Completed (confirmatory) vs forming (early-warning) detection."""
    COMPLETED = "completed"
    FORMING = "forming"


class PatternCategory(str, Enum):
    """Impact categorizer buckets."""
    SHORT_TERM = "short_term"
    STRUCTURAL = "structural"
    WATCHLIST = "watchlist"
    INVALIDATED = "invalidated"


class AftermathOutcome(str, Enum):
    """Qualitative result of a completed pattern's follow-through."""
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    NO_BREAKOUT = "no_breakout"
    INCONCLUSIVE = "inconclusive"


TRIANGLE_TYPES = frozenset({
    PatternType.TRIANGLE_ASCENDING,
    PatternType.TRIANGLE_DESCENDING,
    PatternType.TRIANGLE_SYMMETRICAL,
})

WEDGE_TYPES = frozenset({PatternType.RISING_WEDGE, PatternType.FALLING_WEDGE})


# ──────────────────────────────────────────────
# Market Data
# ──────────────────────────────────────────────

class Candle(BaseModel):
    """Single OHLC bar. Non-finite prices are accepted and skipped downstream."""
    model_config = ConfigDict(frozen=True)

    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None
    timestamp: Optional[datetime] = None


class Pivot(BaseModel):
    """Swing point. Classified on high/low, priced at the bar's close."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    price: float
    kind: PivotKind


class TrendLine(BaseModel):
    """Straight line in (bar index, price) space."""
    slope: float
    intercept: float
    r_squared: float = Field(default=1.0, ge=0.0, le=1.0)
    touch_indices: list[int] = Field(default_factory=list)
    start_index: int = 0
    end_index: int = 0

    def value_at(self, x: float) -> float:
        return self.slope * x + self.intercept


class KeyPivot(BaseModel):
    """A pivot tagged with the role it plays inside a formation."""
    role: str
    index: int
    price: float
    kind: PivotKind
    confirmed: bool = True


class PatternRange(BaseModel):
    """Inclusive bar-index span of a formation."""
    start_index: int = Field(ge=0)
    end_index: int
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_order(self) -> "PatternRange":
        if self.start_index >= self.end_index:
            raise ValueError("start_index must precede end_index")
        return self

    @property
    def bars(self) -> int:
        return self.end_index - self.start_index + 1


# ──────────────────────────────────────────────
# Evaluation Results
# ──────────────────────────────────────────────

class BreakoutInfo(BaseModel):
    """Breakout scan outcome for one candidate."""
    completed: bool = False
    invalidated: bool = False
    breakout_index: Optional[int] = None
    bars_since_break: Optional[int] = None
    direction: Optional[Literal["up", "down"]] = None
    boundary_price: Optional[float] = None
    buffer: float = 0.0
    invalidation_index: Optional[int] = None
    sequence_start_index: Optional[int] = None
    reason: Optional[str] = None


class ImpactInfo(BaseModel):
    """Freshness/impact scoring and the bucket it lands in."""
    freshness: float = Field(ge=0.0, le=1.0)
    impact_score: float = Field(ge=0.0, le=1.0)
    coverage_ratio: float
    bars_since_last_pivot: int
    magnitude: float = 0.0
    category: PatternCategory = PatternCategory.WATCHLIST


class PriceMove(BaseModel):
    """Forward move measured a fixed number of bars after the base bar."""
    horizon: int
    return_pct: float
    high: float
    low: float


class Aftermath(BaseModel):
    """What happened after a pattern's breakout."""
    base_index: int
    breakout_confirmed: bool
    breakout_index: Optional[int] = None
    price_moves: dict[int, PriceMove] = Field(default_factory=dict)
    theoretical_target: Optional[float] = None
    target_reached: bool = False
    bars_to_target: Optional[int] = None
    outcome: AftermathOutcome = AftermathOutcome.INCONCLUSIVE


class AftermathExample(BaseModel):
    """Historical occurrence kept as a showcase for a pattern type."""
    start_index: int
    end_index: int
    breakout_index: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    return_pct: Optional[float] = None
    outcome: AftermathOutcome


class HistoricalCaseStats(BaseModel):
    """Aggregated backtest statistics for one pattern type."""
    pattern_type: PatternType
    count: int = 0
    with_aftermath: int = 0
    success_rate: Optional[float] = None
    avg_move: Optional[float] = None
    avg_return_7: Optional[float] = None
    avg_return_14: Optional[float] = None
    median_return_7: Optional[float] = None
    examples: list[AftermathExample] = Field(default_factory=list)


# ──────────────────────────────────────────────
# Pattern Candidates (tagged union on ``type``)
# ──────────────────────────────────────────────

class PatternCandidateBase(BaseModel):
    """Fields shared by every formation family."""
    direction: Direction
    mode: DetectionMode = DetectionMode.COMPLETED
    status: PatternStatus = PatternStatus.FORMING
    completion: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    range: PatternRange
    key_pivots: list[KeyPivot] = Field(default_factory=list)
    breakout_target: Optional[float] = None
    invalidation_price: Optional[float] = None
    pattern_height: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    breakout: Optional[BreakoutInfo] = None
    impact: Optional[ImpactInfo] = None
    aftermath: Optional[Aftermath] = None

    @field_validator("completion", "confidence", mode="before")
    @classmethod
    def _clamp_unit(cls, v: float) -> float:
        return min(1.0, max(0.0, float(v)))

    @property
    def last_pivot_index(self) -> int:
        confirmed = [p.index for p in self.key_pivots if p.confirmed]
        return max(confirmed) if confirmed else self.range.end_index

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class NecklinePattern(PatternCandidateBase):
    """Double/triple tops and bottoms, head-and-shoulders and its inverse."""
    type: Literal[
        PatternType.DOUBLE_TOP,
        PatternType.DOUBLE_BOTTOM,
        PatternType.TRIPLE_TOP,
        PatternType.TRIPLE_BOTTOM,
        PatternType.HEAD_AND_SHOULDERS,
        PatternType.INVERSE_HEAD_AND_SHOULDERS,
    ]
    neckline: TrendLine


class TrianglePattern(PatternCandidateBase):
    """Ascending, descending and symmetrical triangles."""
    type: Literal[
        PatternType.TRIANGLE_ASCENDING,
        PatternType.TRIANGLE_DESCENDING,
        PatternType.TRIANGLE_SYMMETRICAL,
    ]
    upper_line: TrendLine
    lower_line: TrendLine
    apex_index: Optional[float] = None


class WedgePattern(PatternCandidateBase):
    """Rising and falling wedges found by the sliding-window scan."""
    type: Literal[PatternType.RISING_WEDGE, PatternType.FALLING_WEDGE]
    upper_line: TrendLine
    lower_line: TrendLine
    apex_index: Optional[float] = None
    slope_ratio: float
    score: float = 0.0
    score_components: dict[str, float] = Field(default_factory=dict)


class PoleContinuationPattern(PatternCandidateBase):
    """Pennants and flags: a consolidation after a strong pole."""
    type: Literal[PatternType.PENNANT, PatternType.FLAG]
    upper_line: TrendLine
    lower_line: TrendLine
    pole_start_index: int
    pole_change_pct: float
    apex_index: Optional[float] = None


PatternCandidate = Annotated[
    Union[NecklinePattern, TrianglePattern, WedgePattern, PoleContinuationPattern],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────
# Detection Output
# ──────────────────────────────────────────────

class CandidateRecord(BaseModel):
    """Diagnostics entry for one accepted or rejected candidate."""
    pattern_type: str
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    accepted: bool
    reason: Optional[str] = None


class DetectionDiagnostics(BaseModel):
    """Explicit per-call trace of the detection pipeline."""
    swings: list[Pivot] = Field(default_factory=list)
    candidates: list[CandidateRecord] = Field(default_factory=list)
    params: dict = Field(default_factory=dict)
    raw_count: int = 0
    deduped_count: int = 0
    elapsed_ms: Optional[float] = None

    def accept(self, pattern_type, start: int, end: int) -> None:
        self.candidates.append(CandidateRecord(
            pattern_type=str(getattr(pattern_type, "value", pattern_type)),
            start_index=start, end_index=end, accepted=True,
        ))

    def reject(self, pattern_type, reason: str, start: Optional[int] = None, end: Optional[int] = None) -> None:
        self.candidates.append(CandidateRecord(
            pattern_type=str(getattr(pattern_type, "value", pattern_type)),
            start_index=start, end_index=end, accepted=False, reason=reason,
        ))

    def rejections(self, reason: Optional[str] = None) -> list[CandidateRecord]:
        return [
            c for c in self.candidates
            if not c.accepted and (reason is None or c.reason == reason)
        ]


class PatternGroups(BaseModel):
    """Candidates split into the impact categorizer's buckets."""
    short_term: list[PatternCandidate] = Field(default_factory=list)
    structural: list[PatternCandidate] = Field(default_factory=list)
    watchlist: list[PatternCandidate] = Field(default_factory=list)
    invalidated: list[PatternCandidate] = Field(default_factory=list)


class DetectionResult(BaseModel):
    """Full output of one detection call."""
    patterns: list[PatternCandidate] = Field(default_factory=list)
    groups: Optional[PatternGroups] = None
    statistics: dict[str, HistoricalCaseStats] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    candle_count: int = 0
    diagnostics: DetectionDiagnostics = Field(default_factory=DetectionDiagnostics)

    def of_type(self, pattern_type: PatternType) -> list[PatternCandidate]:
        return [p for p in self.patterns if p.type == pattern_type]

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
