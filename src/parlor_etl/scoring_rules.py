"""parlor_etl.scoring_rules

YAML-backed heuristic constants for the scoring engine and the normalizers.

Responsibilities:
  - Load and validate config/scoring/*.yml
  - Provide built-in defaults identical to config/scoring/default.yml so the
    scoring engine stays usable without a file
  - Resolve free-text event types and weather labels to canonical keys
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from parlor_etl.scoring_rules import load_scoring_config

    config = load_scoring_config(Path("config/scoring/default.yml"))
    config.event_type_increment("新台入替")   # → 5.0
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "scoring" / "default.yml"

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "walking_meters_per_minute",
    "theoretical_games_per_unit",
    "neutral_utilization",
    "history_limit",
    "event_type_increments",
    "weather_adjustments",
    "recommendation",
    "popularity",
})

REQUIRED_RECOMMENDATION_KEYS = frozenset({
    "unit_difference_threshold",
    "max_machines",
    "avoid_average_difference",
})

REQUIRED_POPULARITY_KEYS = frozenset({"base", "ceiling", "keywords"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ScoringConfigValidationError(ValueError):
    """Raised when a scoring YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# ScoringConfig dataclass
# ---------------------------------------------------------------------------

def _default_event_increments() -> dict[str, float]:
    return {"new_machine": 5.0, "special_day": 3.0, "campaign": 2.0}


def _default_event_aliases() -> dict[str, list[str]]:
    return {
        "new_machine": ["new_machine", "新台", "新台入替", "新台導入"],
        "special_day": ["special_day", "特定日", "周年", "記念日", "ゾロ目"],
        "campaign": ["campaign", "キャンペーン", "取材"],
    }


def _default_weather_adjustments() -> dict[str, float]:
    return {"sunny": 1.0, "rainy": 2.0, "snow": -1.0}


def _default_weather_aliases() -> dict[str, list[str]]:
    return {
        "sunny": ["sunny", "clear", "晴れ", "晴"],
        "rainy": ["rain", "rainy", "雨"],
        "snow": ["snow", "snowy", "雪"],
    }


def _default_popularity_keywords() -> dict[str, float]:
    return {
        "ゴッドイーター": 85.0,
        "To LOVEる": 80.0,
        "バイオハザード": 90.0,
        "ディスクアップ": 75.0,
        "政宗": 70.0,
        "ガールズパンツァー": 75.0,
        "エヴァンゲリオン": 85.0,
        "北斗": 85.0,
        "まどマギ": 80.0,
        "リゼロ": 75.0,
        "アクエリオン": 70.0,
        "コードギアス": 80.0,
    }


@dataclass
class ScoringConfig:
    """Validated heuristic constants.  Defaults mirror config/scoring/default.yml."""

    version: str = "builtin"
    yaml_hash: str = ""
    walking_meters_per_minute: float = 80.0
    theoretical_games_per_unit: float = 8000.0
    neutral_utilization: float = 70.0
    history_limit: int = 7
    event_type_increments: dict[str, float] = field(default_factory=_default_event_increments)
    event_type_aliases: dict[str, list[str]] = field(default_factory=_default_event_aliases)
    weather_adjustments: dict[str, float] = field(default_factory=_default_weather_adjustments)
    weather_aliases: dict[str, list[str]] = field(default_factory=_default_weather_aliases)
    unit_difference_threshold: int = 1000
    max_recommended_machines: int = 3
    avoid_average_difference: int = -500
    popularity_base: float = 50.0
    popularity_ceiling: float = 95.0
    popularity_keywords: dict[str, float] = field(default_factory=_default_popularity_keywords)
    popularity_bonus_keywords: dict[str, float] = field(default_factory=lambda: {"スマスロ": 5.0})

    def canonical_event_type(self, event_type: str | None) -> str | None:
        """Map a free-text event type to a key of event_type_increments, or None."""
        return _match_alias(event_type, self.event_type_aliases, self.event_type_increments)

    def event_type_increment(self, event_type: str | None) -> float:
        key = self.canonical_event_type(event_type)
        return self.event_type_increments.get(key, 0.0) if key else 0.0

    def canonical_weather(self, weather: str | None) -> str | None:
        return _match_alias(weather, self.weather_aliases, self.weather_adjustments)

    def weather_adjustment(self, weather: str | None) -> float:
        key = self.canonical_weather(weather)
        return self.weather_adjustments.get(key, 0.0) if key else 0.0


def _match_alias(
    label: str | None,
    aliases: dict[str, list[str]],
    known: dict[str, float],
) -> str | None:
    if label is None:
        return None
    needle = label.strip().lower()
    if not needle:
        return None
    if needle in known:
        return needle
    for key, names in aliases.items():
        if any(needle == name.lower() for name in names):
            return key
    # Japanese labels are often compound ("雨のち曇り"); match those by substring.
    for key, names in aliases.items():
        if any(name in needle for name in names if not name.isascii()):
            return key
    return None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_scoring_config(yaml_path: Path) -> ScoringConfig:
    """Load, validate, and return a ScoringConfig from a YAML file.

    Raises:
        ScoringConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_scoring_config(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    rec = data["recommendation"]
    pop = data["popularity"]
    defaults = ScoringConfig()
    return ScoringConfig(
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        walking_meters_per_minute=float(data["walking_meters_per_minute"]),
        theoretical_games_per_unit=float(data["theoretical_games_per_unit"]),
        neutral_utilization=float(data["neutral_utilization"]),
        history_limit=int(data["history_limit"]),
        event_type_increments={k: float(v) for k, v in data["event_type_increments"].items()},
        event_type_aliases={
            k: [str(n) for n in v]
            for k, v in (data.get("event_type_aliases") or defaults.event_type_aliases).items()
        },
        weather_adjustments={k: float(v) for k, v in data["weather_adjustments"].items()},
        weather_aliases={
            k: [str(n) for n in v]
            for k, v in (data.get("weather_aliases") or defaults.weather_aliases).items()
        },
        unit_difference_threshold=int(rec["unit_difference_threshold"]),
        max_recommended_machines=int(rec["max_machines"]),
        avoid_average_difference=int(rec["avoid_average_difference"]),
        popularity_base=float(pop["base"]),
        popularity_ceiling=float(pop["ceiling"]),
        popularity_keywords={str(k): float(v) for k, v in pop["keywords"].items()},
        popularity_bonus_keywords={
            str(k): float(v) for k, v in (pop.get("bonus_keywords") or {}).items()
        },
    )


def load_default_config() -> ScoringConfig:
    """Load config/scoring/default.yml when it ships with the checkout, else built-ins."""
    if DEFAULT_CONFIG_PATH.exists():
        return load_scoring_config(DEFAULT_CONFIG_PATH)
    return ScoringConfig()


def validate_scoring_config(data: dict[str, Any]) -> None:
    """Raise ScoringConfigValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - walking speed, capacity and history limit positive
      - neutral utilization in [0, 100]
      - increments, adjustments and keyword scores numeric
      - popularity base <= ceiling <= 100
    """
    if not isinstance(data, dict):
        raise ScoringConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ScoringConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    for key in ("walking_meters_per_minute", "theoretical_games_per_unit", "history_limit"):
        val = _numeric(key, data[key])
        if val <= 0:
            raise ScoringConfigValidationError(f"'{key}' value {val} must be > 0.")

    neutral = _numeric("neutral_utilization", data["neutral_utilization"])
    if not (0.0 <= neutral <= 100.0):
        raise ScoringConfigValidationError(
            f"'neutral_utilization' value {neutral} must be in [0, 100]."
        )

    for section in ("event_type_increments", "weather_adjustments"):
        mapping = data.get(section)
        if not isinstance(mapping, dict) or not mapping:
            raise ScoringConfigValidationError(f"'{section}' must be a non-empty mapping.")
        for k, v in mapping.items():
            _numeric(f"{section}.{k}", v)

    rec = data.get("recommendation")
    if not isinstance(rec, dict):
        raise ScoringConfigValidationError("'recommendation' must be a mapping.")
    missing_rec = REQUIRED_RECOMMENDATION_KEYS - set(rec.keys())
    if missing_rec:
        raise ScoringConfigValidationError(f"Missing recommendation keys: {sorted(missing_rec)}")
    for k in REQUIRED_RECOMMENDATION_KEYS:
        _numeric(f"recommendation.{k}", rec[k])

    pop = data.get("popularity")
    if not isinstance(pop, dict):
        raise ScoringConfigValidationError("'popularity' must be a mapping.")
    missing_pop = REQUIRED_POPULARITY_KEYS - set(pop.keys())
    if missing_pop:
        raise ScoringConfigValidationError(f"Missing popularity keys: {sorted(missing_pop)}")
    base = _numeric("popularity.base", pop["base"])
    ceiling = _numeric("popularity.ceiling", pop["ceiling"])
    if not (0.0 <= base <= ceiling <= 100.0):
        raise ScoringConfigValidationError(
            f"popularity base ({base}) and ceiling ({ceiling}) must satisfy 0 <= base <= ceiling <= 100."
        )
    keywords = pop.get("keywords")
    if not isinstance(keywords, dict):
        raise ScoringConfigValidationError("'popularity.keywords' must be a mapping.")
    for k, v in keywords.items():
        _numeric(f"popularity.keywords.{k}", v)
    for k, v in (pop.get("bonus_keywords") or {}).items():
        _numeric(f"popularity.bonus_keywords.{k}", v)


def _numeric(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ScoringConfigValidationError(f"'{name}' value '{value}' is not numeric.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ScoringConfigValidationError(f"'{name}' value '{value}' is not numeric.")
