"""parlor_etl.scoring

Deterministic store scoring engine.

``score()`` turns one store's recent performance history plus event and
weather context into a ScoreAnalysis.  It performs no I/O and keeps no state,
so any number of stores can be scored concurrently.

Component ranges (each clamped before summing):
  base_score           0..60   start 30
  event_bonus          0..20   zero unless an event day
  machine_popularity   0..10   5 when no declared machine has data today
  access_score         0..10   start 5
  weather adjustment  -5..+5   folded into the total, not stored
  personal_adjustment  0       reserved

total = clamp(round(sum), 0, 100); win rate 25..90; confidence 50..95.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from parlor_etl.models import (
    DailyPerformance,
    PlayStrategy,
    RecommendedMachine,
    ScoreAnalysis,
    Store,
)
from parlor_etl.normalize import day_of_week, round_half_up
from parlor_etl.scoring_rules import ScoringConfig

HIGHLY_RECOMMENDED = "highly_recommended"
RECOMMENDED = "recommended"
NEUTRAL = "neutral"
NOT_RECOMMENDED = "not_recommended"

RECOMMENDATION_LABELS = {
    HIGHLY_RECOMMENDED: "強くおすすめ",
    RECOMMENDED: "おすすめ",
    NEUTRAL: "普通",
    NOT_RECOMMENDED: "非推奨",
}

_DEFAULT_CONFIG = ScoringConfig()


@dataclass
class EventContext:
    is_event_day: bool = False
    event_type: str = ""
    bonus_multiplier: float = 1.0
    event_name: str = ""


@dataclass
class WeatherContext:
    weather: str | None = None
    day_of_week: int | None = None  # 0=Sunday..6=Saturday
    is_holiday: bool = False


@dataclass
class ScoreComponents:
    base_score: float
    event_bonus: float
    machine_popularity: float
    access_score: float
    weather_adjustment: float
    personal_adjustment: float = 0.0

    def total(self) -> int:
        raw = (
            self.base_score + self.event_bonus + self.machine_popularity
            + self.access_score + self.weather_adjustment + self.personal_adjustment
        )
        return int(clamp(round_half_up(raw), 0, 100))


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _population_variance(values: list[float]) -> float:
    if not values:
        return 0.0
    m = _mean(values)
    return sum((v - m) ** 2 for v in values) / len(values)


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def utilization_rate(current: DailyPerformance, config: ScoringConfig = _DEFAULT_CONFIG) -> float:
    """Average games as a percentage of one unit's theoretical daily capacity."""
    if current.average_games <= 0:
        return config.neutral_utilization
    return min(100.0, current.average_games / config.theoretical_games_per_unit * 100.0)


def base_score(
    current: DailyPerformance,
    historical: list[DailyPerformance],
    config: ScoringConfig = _DEFAULT_CONFIG,
) -> float:
    score = 30.0
    score += clamp(current.average_difference / 10, -20, 20)
    score += clamp((utilization_rate(current, config) - 70) / 3, -10, 10)
    if current.total_visitors > 0:
        score += clamp((current.total_visitors - 200) / 20, -10, 10)
    if historical:
        hist_avg = _mean([p.average_difference for p in historical])
        score += clamp((current.average_difference - hist_avg) / 5, -10, 10)
    return clamp(score, 0, 60)


def event_bonus(
    event: EventContext,
    store: Store,
    config: ScoringConfig = _DEFAULT_CONFIG,
) -> float:
    if not event.is_event_day:
        return 0.0
    bonus = 10.0 + config.event_type_increment(event.event_type)
    bonus *= event.bonus_multiplier
    bonus *= clamp(store.event_frequency / 10, 0.8, 1.2)
    return clamp(bonus, 0, 20)


def machine_popularity_score(store: Store, current: DailyPerformance) -> float:
    """Average of clamp(avgDiff / 100, 0, 10) over declared popular machines with data today."""
    if not store.popular_machines or not current.machines:
        return 5.0
    by_name = {m.machine_name: m for m in current.machines.values() if m.machine_name}
    scores: list[float] = []
    for declared in store.popular_machines:
        machine = current.machines.get(declared) or by_name.get(declared)
        if machine is None:
            continue
        scores.append(clamp(machine.average_difference / 100, 0, 10))
    if not scores:
        return 5.0
    return clamp(_mean(scores), 0, 10)


def access_score(store: Store) -> float:
    score = 5.0
    score += clamp((200 - store.walk_distance_meters) / 50, -3, 3)
    if store.parking_available:
        score += 1
    if store.smoking_allowed:
        score += 1
    return clamp(score, 0, 10)


def weather_adjustment(
    weather: WeatherContext,
    config: ScoringConfig = _DEFAULT_CONFIG,
) -> float:
    adj = config.weather_adjustment(weather.weather)
    if weather.day_of_week in (0, 6):
        adj += 1
    if weather.is_holiday:
        adj += 2
    return clamp(adj, -5, 5)


def predicted_win_rate(total_score: int, current: DailyPerformance) -> int:
    diff_bonus = min(10.0, max(0, current.average_difference) / 20)
    return int(clamp(round_half_up(30 + total_score * 0.6 + diff_bonus), 25, 90))


def confidence_score(historical: list[DailyPerformance]) -> int:
    confidence = 70.0
    if historical:
        confidence += min(20, len(historical) * 2)
        variance = _population_variance([p.average_difference for p in historical])
        if variance < 50:
            confidence += 5
        elif variance > 200:
            confidence -= 10
    return int(clamp(confidence, 50, 95))


def recommendation_tier(total_score: int, confidence: int) -> str:
    """Ordered cascade; the first matching tier wins."""
    if total_score >= 80 and confidence >= 80:
        return HIGHLY_RECOMMENDED
    if total_score >= 65 and confidence >= 70:
        return RECOMMENDED
    if total_score >= 45:
        return NEUTRAL
    return NOT_RECOMMENDED


def score_to_rank(score: int) -> str:
    if score >= 90:
        return "S"
    if score >= 80:
        return "A"
    if score >= 70:
        return "B"
    if score >= 60:
        return "C"
    if score >= 50:
        return "D"
    return "E"


def build_rationale(
    components: ScoreComponents,
    event: EventContext,
    weather: WeatherContext,
    config: ScoringConfig = _DEFAULT_CONFIG,
) -> list[str]:
    rationale: list[str] = []
    if components.base_score >= 50:
        rationale.append("過去の実績データから高い期待値を算出")
    elif components.base_score <= 30:
        rationale.append("実績データから慎重な評価が必要")
    else:
        rationale.append("標準的な実績レベルで安定した期待値")
    if event.is_event_day and components.event_bonus > 0:
        rationale.append(f"{event.event_name or 'イベント'}でボーナス期待値追加")
    if components.access_score >= 8:
        rationale.append("アクセス良好で通いやすい立地")
    if config.canonical_weather(weather.weather) == "rainy":
        rationale.append("雨天時の来店増加パターンを考慮")
    return rationale


# ---------------------------------------------------------------------------
# Recommendations and strategy
# ---------------------------------------------------------------------------

def _unit_range(unit_ids: list[str]) -> str:
    if all(u.isdigit() for u in unit_ids):
        numbers = sorted(int(u) for u in unit_ids)
        if len(numbers) == 1 or numbers[0] == numbers[-1]:
            return str(numbers[0])
        return f"{numbers[0]}-{numbers[-1]}"
    return ", ".join(sorted(unit_ids))


def recommend_machines(
    current: DailyPerformance,
    config: ScoringConfig = _DEFAULT_CONFIG,
    machine_names: dict[str, str] | None = None,
) -> list[RecommendedMachine]:
    """Machines whose units beat the difference threshold on the latest day, best first."""
    names = machine_names or {}
    picks = []
    for machine_id, machine in current.machines.items():
        hot = [u for u in machine.units.values() if u.difference > config.unit_difference_threshold]
        if not hot:
            continue
        best = max(hot, key=lambda u: u.difference)
        picks.append((best, machine_id, machine, hot))
    picks.sort(key=lambda p: (-p[0].difference, p[1]))

    out: list[RecommendedMachine] = []
    for best, machine_id, machine, hot in picks[:config.max_recommended_machines]:
        reason = f"前回差枚{best.difference:,}枚"
        if best.payout_rate:
            reason += f"、機械割{best.payout_rate}"
        out.append(RecommendedMachine(
            machine_id=machine_id,
            machine_name=names.get(machine_id) or machine.machine_name or machine_id,
            unit_range=_unit_range([u.unit_id for u in hot]),
            expected_difference=round_half_up(_mean([u.difference for u in hot])),
            reason=reason,
        ))
    return out


def _strategy_text(total_score: int) -> str:
    if total_score >= 80:
        return "積極的に打ち込んでOK。人気機種を中心に狙いましょう。"
    if total_score >= 65:
        return "様子を見ながら、調子の良い台を見つけて勝負。"
    if total_score >= 50:
        return "慎重に台選び。短時間で見切りをつけることが重要。"
    return "今日は見送りも一つの選択肢。他店舗も検討してください。"


def build_play_strategy(
    total_score: int,
    history: list[DailyPerformance],
    current: DailyPerformance,
    event: EventContext,
    recommended: list[RecommendedMachine],
    config: ScoringConfig = _DEFAULT_CONFIG,
    machine_names: dict[str, str] | None = None,
) -> PlayStrategy:
    names = machine_names or {}
    cold = sorted(
        (m for m in current.machines.values()
         if m.average_difference < config.avoid_average_difference),
        key=lambda m: (m.average_difference, m.machine_id),
    )
    warnings: list[str] = []
    if len(history) < 5:
        warnings.append("データが不足しており、予測精度が低い可能性があります")
    if not event.is_event_day:
        warnings.append("イベント情報が未確認です")
    else:
        warnings.append("イベント日は混雑が予想されます。早めの来店をおすすめします")
    return PlayStrategy(
        entry_time="09:30-10:00" if event.is_event_day else "10:30-11:00",
        target_machines=[r.machine_name for r in recommended][:3],
        avoid_machines=[
            names.get(m.machine_id) or m.machine_name or m.machine_id for m in cold
        ][:3],
        strategy=_strategy_text(total_score),
        warnings=warnings,
    )


def build_comment(total_score: int, event_bonus_value: float, popularity: float) -> str:
    if total_score >= 80:
        comment = "おすすめ！高い出玉期待度。"
    elif total_score >= 65:
        comment = "安定した出玉が期待できる。"
    elif total_score >= 50:
        comment = "平均的な店舗。"
    else:
        comment = "様子見推奨。"
    if event_bonus_value > 0:
        comment += "イベント開催中でボーナスあり！"
    if popularity >= 7:
        comment += "人気機種が好調です。"
    return comment


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def score(
    performance_history: list[DailyPerformance],
    store: Store,
    event: EventContext | None = None,
    weather: WeatherContext | None = None,
    config: ScoringConfig | None = None,
    analysis_date: date | None = None,
    machine_names: dict[str, str] | None = None,
) -> ScoreAnalysis:
    """Score one store.

    ``performance_history`` is ordered most-recent-first: its first element is
    the current day and the rest is the historical baseline.  An empty history
    scores as an all-zero day.  ``analysis_date`` defaults to the current
    day's date; weekday falls back to that date when the weather context does
    not carry one.
    """
    config = config or _DEFAULT_CONFIG
    event = event or EventContext()
    weather = weather or WeatherContext()
    if performance_history:
        current, historical = performance_history[0], list(performance_history[1:])
    else:
        current = DailyPerformance(store_id=store.store_id, date=analysis_date or date.min)
        historical = []
    analysis_date = analysis_date or current.date
    if weather.day_of_week is None:
        weather = WeatherContext(weather.weather, day_of_week(analysis_date), weather.is_holiday)

    components = ScoreComponents(
        base_score=base_score(current, historical, config),
        event_bonus=event_bonus(event, store, config),
        machine_popularity=machine_popularity_score(store, current),
        access_score=access_score(store),
        weather_adjustment=weather_adjustment(weather, config),
    )
    total = components.total()
    win_rate = predicted_win_rate(total, current)
    confidence = confidence_score(historical)
    recommended = recommend_machines(current, config, machine_names)

    return ScoreAnalysis(
        store_id=store.store_id,
        analysis_date=analysis_date,
        total_score=total,
        base_score=round(components.base_score, 2),
        event_bonus=round(components.event_bonus, 2),
        machine_popularity=round(components.machine_popularity, 2),
        access_score=round(components.access_score, 2),
        personal_adjustment=components.personal_adjustment,
        predicted_win_rate=win_rate,
        confidence=confidence,
        recommendation=recommendation_tier(total, confidence),
        rationale=build_rationale(components, event, weather, config),
        recommended_machines=recommended,
        play_strategy=build_play_strategy(
            total, performance_history, current, event, recommended, config, machine_names,
        ),
        comment=build_comment(total, components.event_bonus, components.machine_popularity),
    )
