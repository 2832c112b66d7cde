"""
Chart Patterns — Configuration Management

Two layers:
  * ``Settings`` (pydantic-settings): process-wide defaults loaded from the
    environment / ``.env`` (prefix ``CHARTPATTERNS_``).
  * ``DetectionConfig``: plain per-call parameters. ``DetectionConfig.completed``
    and ``DetectionConfig.forming`` build the strict and the early-warning
    parameter sets, auto-scaled to the candle timeframe.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chartpatterns.models import TRIANGLE_TYPES, WEDGE_TYPES, DetectionMode, PatternType


class Settings(BaseSettings):
    """Process-level defaults loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHARTPATTERNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Detection ──
    default_timeframe: str = "1day"
    default_mode: DetectionMode = DetectionMode.COMPLETED
    min_bars: int = 20

    # ── Historical enrichment ──
    history_lookback_bars: int = 750
    history_max_examples: int = 5

    # ── Diagnostics ──
    slow_scan_warning_s: float = 2.0


@lru_cache
def get_settings() -> Settings:
    """Cached singleton for settings."""
    return Settings()


# ──────────────────────────────────────────────
# Timeframe Scaling
# ──────────────────────────────────────────────

_TIMEFRAME_ALIASES = {
    "1m": "1min", "1min": "1min",
    "5m": "5min", "5min": "5min",
    "15m": "15min", "15min": "15min",
    "30m": "30min", "30min": "30min",
    "1h": "1hour", "1hour": "1hour", "60min": "1hour",
    "4h": "4hour", "4hour": "4hour",
    "8h": "8hour", "8hour": "8hour",
    "12h": "12hour", "12hour": "12hour",
    "1d": "1day", "1day": "1day", "daily": "1day",
    "1wk": "1week", "1w": "1week", "1week": "1week", "weekly": "1week",
    "1mo": "1month", "1month": "1month", "monthly": "1month",
}

# (pivot depth, min bars between swings)
_SWING_PARAMS = {
    "1min": (2, 1), "5min": (2, 1),
    "15min": (3, 2), "30min": (3, 2),
    "1hour": (3, 2),
    "4hour": (5, 3), "8hour": (5, 3), "12hour": (5, 3),
    "1day": (6, 4),
    "1week": (7, 5),
    "1month": (8, 6),
}

_TOLERANCE = {
    "15min": 0.06, "30min": 0.06,
    "1hour": 0.05, "4hour": 0.05,
    "8hour": 0.045, "12hour": 0.045,
    "1week": 0.035,
    "1month": 0.03,
}

_TRIANGLE_WINDOW = {
    "1month": 30, "1week": 40, "1day": 50,
    "4hour": 30, "1hour": 40, "30min": 30, "15min": 30,
}

_POLE_MIN_PCT = {"1hour": 0.05, "4hour": 0.05, "1day": 0.08}

_INTRADAY = {"15min", "30min", "1hour", "4hour"}

_UMBRELLAS = {"triangle": TRIANGLE_TYPES, "wedge": WEDGE_TYPES}


def normalize_timeframe(timeframe: Optional[str]) -> str:
    """Map user-facing timeframe spellings onto canonical keys."""
    if not timeframe:
        return "1day"
    return _TIMEFRAME_ALIASES.get(timeframe.strip().lower(), "1day")


def timeframe_defaults(timeframe: Optional[str]) -> dict:
    """Auto-scaled parameters for one timeframe."""
    tf = normalize_timeframe(timeframe)
    depth, spacing = _SWING_PARAMS.get(tf, (6, 4))
    short = tf in ("1hour", "4hour")
    return {
        "timeframe": tf,
        "pivot_depth": depth,
        "min_bars_between_swings": spacing,
        "tolerance_pct": _TOLERANCE.get(tf, 0.04),
        "convergence_factor": 0.6 if tf in _INTRADAY else 0.8,
        "triangle_flat_coef": 1.2 if short else 0.8,
        "triangle_move_coef": 0.8 if short else 1.2,
        "min_line_fit": 0.60 if short else (0.70 if tf == "1day" else 0.75),
        "triangle_window": _TRIANGLE_WINDOW.get(tf, 20),
        "pole_min_pct": _POLE_MIN_PCT.get(tf, 0.06),
        "relevance_bars": {"1month": 60, "1week": 21}.get(tf, 7),
    }


# ──────────────────────────────────────────────
# Per-call Detection Parameters
# ──────────────────────────────────────────────

class DetectionConfig(BaseModel):
    """Every knob the detection pipeline reads. Immutable per call."""

    model_config = ConfigDict(frozen=True)

    mode: DetectionMode = DetectionMode.COMPLETED
    timeframe: str = "1day"
    patterns: Optional[list[str]] = None
    min_bars: int = Field(default=20, ge=3)

    # ── Pivots ──
    pivot_depth: int = Field(default=6, ge=1)
    pivot_vote: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    confirm_bars: int = Field(default=6, ge=1, le=20)
    min_bars_between_swings: int = Field(default=4, ge=1)

    # ── Geometry ──
    tolerance_pct: float = Field(default=0.04, gt=0.0, lt=1.0)
    min_double_spacing: int = 3
    min_pattern_height_pct: float = 0.03
    head_prominence_pct: float = 0.05
    neckline_slope_tolerance: float = 0.02
    triple_valley_spread_pct: float = 0.015
    right_peak_tolerance_pct: float = Field(default=0.2, ge=0.05, le=0.5)
    forming_invalidation_pct: float = 0.012
    min_confidence: dict[str, float] = Field(default_factory=lambda: {
        "double": 0.6, "triple": 0.7, "head_and_shoulders": 0.7,
    })
    min_completion: float = Field(default=0.0, ge=0.0, le=1.0)
    relaxed_passes: bool = True

    # ── Trendlines / triangles ──
    min_r2: float = 0.20
    min_line_fit: float = 0.70
    convergence_factor: float = 0.8
    triangle_flat_coef: float = 0.8
    triangle_move_coef: float = 1.2
    triangle_window: int = 50

    # ── Wedges ──
    wedge_min_window: int = 25
    wedge_max_window: int = 90
    wedge_window_step: int = 5
    wedge_min_r2: float = 0.25
    wedge_slope_ratio_min: float = 1.1
    wedge_slope_ratio_max: float = 3.0
    wedge_touch_pct: float = 0.005
    wedge_max_touch_gap: int = 25
    wedge_first_touch_max_offset: int = 10
    wedge_max_gap_ratio: float = 0.80
    wedge_min_score: float = 0.5

    # ── Pennants / flags ──
    pole_min_pct: float = 0.08
    pole_lookback: int = 12
    consolidation_bars: int = 10

    # ── Breakouts ──
    neckline_breakout_pct: float = 0.02
    atr_period: int = 14
    wedge_breakout_atr: float = 0.5
    wedge_reset_atr: float = 0.2
    max_completed_bars: int = 10
    near_completion_threshold: float = 0.85
    near_apex_bars: int = 5

    # ── Impact / categorization ──
    max_bars_from_last_pivot: int = 30
    coverage_min: float = 0.05
    coverage_max: float = 0.90
    coverage_penalty: float = 0.7
    impact_weights: dict[str, float] = Field(default_factory=lambda: {
        "freshness": 0.35, "completion": 0.30, "type": 0.20, "duration": 0.15,
    })
    long_pattern_bars: int = 60
    structural_threshold: float = 0.65
    short_term_freshness: float = 0.6
    short_term_max_magnitude: float = 0.05
    near_invalidation_pct: float = 0.01
    group_results: bool = True
    include_aftermath: bool = True

    # ── Aftermath ──
    aftermath_horizons: tuple[int, ...] = (3, 7, 14)
    target_horizon: int = 14
    partial_success_move_pct: float = 3.0
    require_current_in_pattern: bool = False
    relevance_bars: int = 7

    @field_validator("patterns")
    @classmethod
    def _check_patterns(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        known = {t.value for t in PatternType} | set(_UMBRELLAS)
        unknown = [p for p in v if p not in known]
        if unknown:
            raise ValueError(f"unknown pattern types: {unknown}")
        return v

    @model_validator(mode="after")
    def _check_windows(self) -> "DetectionConfig":
        if self.wedge_min_window > self.wedge_max_window:
            raise ValueError("wedge_min_window exceeds wedge_max_window")
        if self.wedge_slope_ratio_min > self.wedge_slope_ratio_max:
            raise ValueError("wedge slope ratio bounds are inverted")
        if self.coverage_min > self.coverage_max:
            raise ValueError("coverage band is inverted")
        return self

    # ── Factories ──

    @classmethod
    def completed(cls, timeframe: Optional[str] = None, **overrides) -> "DetectionConfig":
        """Strict, confirmatory defaults."""
        params = timeframe_defaults(timeframe or get_settings().default_timeframe)
        params["min_bars"] = get_settings().min_bars
        params.update(overrides)
        params.setdefault("confirm_bars", params["pivot_depth"])
        return cls(mode=DetectionMode.COMPLETED, **params)

    @classmethod
    def forming(cls, timeframe: Optional[str] = None, **overrides) -> "DetectionConfig":
        """Looser, early-warning defaults: shallower pivots, wider tolerance."""
        params = timeframe_defaults(timeframe or get_settings().default_timeframe)
        params["pivot_depth"] = max(2, params["pivot_depth"] // 2)
        params["confirm_bars"] = 3
        params["min_bars_between_swings"] = max(2, params["min_bars_between_swings"] - 1)
        params["tolerance_pct"] = round(params["tolerance_pct"] * 1.5, 4)
        params["min_completion"] = 0.4
        params["min_confidence"] = {"double": 0.4, "triple": 0.5, "head_and_shoulders": 0.5}
        params["min_bars"] = get_settings().min_bars
        params.update(overrides)
        return cls(mode=DetectionMode.FORMING, **params)

    @classmethod
    def for_mode(cls, mode: DetectionMode, timeframe: Optional[str] = None, **overrides) -> "DetectionConfig":
        if DetectionMode(mode) == DetectionMode.FORMING:
            return cls.forming(timeframe, **overrides)
        return cls.completed(timeframe, **overrides)

    # ── Queries ──

    def allows(self, pattern_type: PatternType) -> bool:
        """Allow-list check. ``triangle`` and ``wedge`` act as umbrellas."""
        if not self.patterns:
            return True
        if pattern_type.value in self.patterns:
            return True
        return any(pattern_type in _UMBRELLAS.get(p, ()) for p in self.patterns)

    def min_confidence_for(self, family: str) -> float:
        return self.min_confidence.get(family, 0.0)

    @property
    def is_forming(self) -> bool:
        return self.mode == DetectionMode.FORMING
