"""Core data structures for the error impact analysis."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .utils import MalformedResponse


class Channel(str, Enum):
    MOBILE = "Mobile"
    DESKTOP = "Desktop"
    TABLET = "Tablet"
    UNKNOWN = "Unknown"

    @classmethod
    def from_browser_type(cls, value: Optional[str]) -> "Channel":
        return _BROWSER_TYPES.get(value or "", cls.UNKNOWN)


_BROWSER_TYPES = {
    "Mobile Browser": Channel.MOBILE,
    "Desktop Browser": Channel.DESKTOP,
    "Tablet Browser": Channel.TABLET,
}


@dataclass(frozen=True)
class Session:
    user_id: str
    error: str
    start_time: int
    end_time: int
    actions: Tuple[str, ...]
    channel: Channel = Channel.UNKNOWN

    @property
    def basket_value(self) -> float:
        return 0.0

    def converted(self, conversion_action: str) -> bool:
        return conversion_action in self.actions


@dataclass(frozen=True)
class BasketSession(Session):
    """Session fetched with the basket value column."""

    basket_value: float = 0.0  # type: ignore[assignment]


class Cohorts(NamedTuple):
    abandoned: List[Session]
    converted_with_error: List[Session]
    converted_without_error: List[Session]


@dataclass(frozen=True)
class QueryWindow:
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"window end {self.end} precedes start {self.start}")

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass
class ImpactStats:
    lost_users: int = 0
    saved_users: int = 0
    lost_basket_total: float = 0.0
    saved_basket_total: float = 0.0
    lost_by_channel: Dict[Channel, int] = field(
        default_factory=lambda: {Channel.MOBILE: 0, Channel.DESKTOP: 0, Channel.TABLET: 0}
    )
    lost_times: List[int] = field(default_factory=list)
    day_breakdown: List[Tuple[date, int]] = field(default_factory=list)

    def channel_breakdown(self) -> List[Tuple[str, int]]:
        return [(channel.value, self.lost_by_channel[channel]) for channel in (Channel.MOBILE, Channel.DESKTOP, Channel.TABLET)]


@dataclass
class ImpactResult:
    error: str
    impacted_users: int
    unconverted_users: int
    lost_users: int
    user_breakdown: List[Tuple[str, int]]
    date_breakdown: List[Tuple[date, int]]
    total_impact: int = 0
    lost_basket: Optional[int] = None
    lost_money: Optional[int] = None
    lost_money_14d: Optional[int] = None
    lost_money_21d: Optional[int] = None
    lost_money_28d: Optional[int] = None
    lost_agent_hours: Optional[int] = None
    lost_agent_hours_14d: Optional[int] = None
    lost_agent_hours_21d: Optional[int] = None
    lost_agent_hours_28d: Optional[int] = None
    hours_lost_cost: Optional[float] = None
    hours_lost_cost_14d: Optional[float] = None
    hours_lost_cost_21d: Optional[float] = None
    hours_lost_cost_28d: Optional[float] = None
    costs_incurred: Optional[int] = None
    costs_incurred_14d: Optional[int] = None
    costs_incurred_21d: Optional[int] = None
    costs_incurred_28d: Optional[int] = None

    def as_dict(self) -> Dict[str, object]:
        record: Dict[str, object] = {
            "impacted_users": self.impacted_users,
            "unconverted_users": self.unconverted_users,
            "lost_users": self.lost_users,
            "user_breakdown": list(self.user_breakdown),
            "date_breakdown": [(day.strftime("%d %b"), count) for day, count in self.date_breakdown],
        }
        for name in USE_CASE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                record[name] = value
        record["total_impact"] = self.total_impact
        return record


USE_CASE_FIELDS = [
    "lost_basket",
    "lost_money",
    "lost_money_14d",
    "lost_money_21d",
    "lost_money_28d",
    "lost_agent_hours",
    "lost_agent_hours_14d",
    "lost_agent_hours_21d",
    "lost_agent_hours_28d",
    "hours_lost_cost",
    "hours_lost_cost_14d",
    "hours_lost_cost_21d",
    "hours_lost_cost_28d",
    "costs_incurred",
    "costs_incurred_14d",
    "costs_incurred_21d",
    "costs_incurred_28d",
]


def _text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _millis(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _amount(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def parse_session_row(row: object, with_basket: bool) -> Session:
    """Decode one positional result row of the session query.

    Rows are ``[userId, error, startTime, endTime, actions, basket, browserType]``
    when the basket column was requested and ``[userId, error, startTime, endTime,
    actions, browserType]`` otherwise. Null cells decode to empty values; a row of
    the wrong shape raises :class:`MalformedResponse`.
    """
    expected = 7 if with_basket else 6
    if not isinstance(row, (list, tuple)) or len(row) < expected:
        raise MalformedResponse(f"session row {row!r} does not have {expected} columns")
    raw_actions = row[4]
    if raw_actions is None:
        raw_actions = []
    if not isinstance(raw_actions, (list, tuple)):
        raise MalformedResponse(f"session actions {raw_actions!r} are not a list")
    actions = tuple(_text(action) for action in raw_actions)
    common = dict(
        user_id=_text(row[0]),
        error=_text(row[1]),
        start_time=_millis(row[2]),
        end_time=_millis(row[3]),
        actions=actions,
    )
    if with_basket:
        return BasketSession(
            channel=Channel.from_browser_type(_text(row[6])),
            basket_value=_amount(row[5]),
            **common,
        )
    return Session(channel=Channel.from_browser_type(_text(row[5])), **common)


def parse_session_rows(rows: Sequence[object], with_basket: bool) -> List[Session]:
    return [parse_session_row(row, with_basket) for row in rows]


def breakdown_json(pairs: Sequence[Tuple[object, int]]) -> str:
    return json.dumps([[str(label), count] for label, count in pairs])
