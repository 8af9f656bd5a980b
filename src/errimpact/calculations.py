"""Cohort classification and impact computation for one analysed error."""
from __future__ import annotations

from datetime import date
from typing import Dict, Iterable, List, Sequence, Tuple

from .config import AnalysisConfig
from .data_models import Cohorts, ImpactResult, ImpactStats, Session
from .utils import local_day


def classify_sessions(sessions: Iterable[Session], target_error: str, conversion_action: str) -> Cohorts:
    """Split sessions into abandoned, converted-with-error and converted-without-error.

    Sessions that neither hit ``target_error`` nor converted are dropped. The
    converted-without-error cohort is not scoped to the target error; it is the
    pool used to decide whether an abandoning user came back later.
    """
    cohorts = Cohorts([], [], [])
    for session in sessions:
        converted = session.converted(conversion_action)
        if session.error == target_error:
            if converted:
                cohorts.converted_with_error.append(session)
            else:
                cohorts.abandoned.append(session)
        elif converted:
            cohorts.converted_without_error.append(session)
    return cohorts


def latest_conversions(recovery_pool: Iterable[Session]) -> Dict[str, int]:
    latest: Dict[str, int] = {}
    for session in recovery_pool:
        if session.user_id not in latest or session.start_time > latest[session.user_id]:
            latest[session.user_id] = session.start_time
    return latest


def day_breakdown(lost_times: Iterable[int]) -> List[Tuple[date, int]]:
    breakdown: List[Tuple[date, int]] = []
    for millis in sorted(lost_times):
        day = local_day(millis)
        if breakdown and breakdown[-1][0] == day:
            breakdown[-1] = (day, breakdown[-1][1] + 1)
        else:
            breakdown.append((day, 1))
    return breakdown


def aggregate_impact(
    abandoned: Iterable[Session],
    recovery_pool: Iterable[Session],
    track_basket: bool = False,
) -> ImpactStats:
    """Count abandoning users who never converted afterwards.

    A user is saved when the recovery pool holds one of their sessions that
    started strictly after the abandoned session.
    """
    latest = latest_conversions(recovery_pool)
    stats = ImpactStats()
    for session in abandoned:
        last_conversion = latest.get(session.user_id)
        if last_conversion is not None and last_conversion > session.start_time:
            stats.saved_users += 1
            if track_basket:
                stats.saved_basket_total += session.basket_value
            continue
        stats.lost_users += 1
        stats.lost_times.append(session.start_time)
        if track_basket:
            stats.lost_basket_total += session.basket_value
        if session.channel in stats.lost_by_channel:
            stats.lost_by_channel[session.channel] += 1
    stats.day_breakdown = day_breakdown(stats.lost_times)
    return stats


def compute_impact(error: str, cohorts: Cohorts, stats: ImpactStats, config: AnalysisConfig) -> ImpactResult:
    result = ImpactResult(
        error=error,
        impacted_users=len(cohorts.abandoned) + len(cohorts.converted_with_error),
        unconverted_users=len(cohorts.abandoned),
        lost_users=stats.lost_users,
        user_breakdown=stats.channel_breakdown(),
        date_breakdown=list(stats.day_breakdown),
    )
    total_impact = 0
    lost_users = stats.lost_users

    basket = config.lost_basket
    if basket is not None:
        lost_baskets = stats.lost_basket_total * basket.multiplication_factor
        lost_money = int(lost_baskets / (100.0 / basket.margin))
        result.lost_basket = int(lost_baskets)
        result.lost_money = lost_money
        result.lost_money_14d, result.lost_money_21d, result.lost_money_28d = _projections(lost_money)
        total_impact += lost_money

    agents = config.agent_hours
    if agents is not None:
        callers = (lost_users // 100) * agents.users_calling_in
        hours = callers * agents.length_of_call // 60
        result.lost_agent_hours = hours
        result.lost_agent_hours_14d, result.lost_agent_hours_21d, result.lost_agent_hours_28d = _projections(hours)
        if agents.cost_of_call != 0:
            cost = callers * agents.cost_of_call
            result.hours_lost_cost = cost
            result.hours_lost_cost_14d, result.hours_lost_cost_21d, result.hours_lost_cost_28d = _projections(cost)
            total_impact += int(cost)

    incurred = config.incurred_costs
    if incurred is not None:
        costs = lost_users * int(incurred.cost_of_error)
        result.costs_incurred = costs
        result.costs_incurred_14d, result.costs_incurred_21d, result.costs_incurred_28d = _projections(costs)
        total_impact += costs

    result.total_impact = total_impact
    return result


def _projections(value):
    # 7-day figure scaled to 14, 21 and 28 days
    return value * 2, value * 3, value * 4


def analyse_sessions(sessions: Sequence[Session], error: str, config: AnalysisConfig) -> ImpactResult:
    cohorts = classify_sessions(sessions, error, config.conversion)
    stats = aggregate_impact(
        cohorts.abandoned,
        cohorts.converted_without_error,
        track_basket=config.lost_basket is not None,
    )
    return compute_impact(error, cohorts, stats, config)


def rank_results(results: Dict[str, ImpactResult]) -> List[ImpactResult]:
    return sorted(results.values(), key=lambda result: (-result.total_impact, result.error))

