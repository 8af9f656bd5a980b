"""Configuration models for the error impact analysis."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Type, Union
from urllib.parse import urlparse

from .utils import ConfigurationError

VERSION = "0.3.0"

SESSION_WINDOW_DAYS = 7
ERROR_WINDOW_DAYS = 1
MAX_CANDIDATE_ERRORS = 10
ERROR_COUNT_CEILING = 4000
SINGLE_QUERY_CEILING = 4999
ROWS_PER_QUERY = 5000
MAX_RATE_LIMIT_RETRIES = 5
MIN_RATE_LIMIT_WAIT = 5.0
MAX_RATE_LIMIT_WAIT = 60.0


@dataclass(frozen=True)
class LostBasket:
    """Revenue at risk from the basket values of lost users."""

    name = "lost_basket"

    basket_prop: str
    margin: float = 15.0
    multiplication_factor: int = 1

    def __post_init__(self) -> None:
        if self.margin <= 0:
            raise ConfigurationError(f"margin must be positive, got {self.margin}")
        if self.multiplication_factor < 0:
            raise ConfigurationError(
                f"multiplication_factor must not be negative, got {self.multiplication_factor}"
            )


@dataclass(frozen=True)
class AgentHours:
    """Call-centre time spent on lost users calling in."""

    name = "agent_hours"

    users_calling_in: int
    length_of_call: int
    cost_of_call: float = 0.0


@dataclass(frozen=True)
class IncurredCosts:
    """Flat cost incurred per lost user."""

    name = "incurred_costs"

    cost_of_error: float


UseCase = Union[LostBasket, AgentHours, IncurredCosts]

USE_CASES: Dict[str, Type] = {
    LostBasket.name: LostBasket,
    AgentHours.name: AgentHours,
    IncurredCosts.name: IncurredCosts,
}

_MANDATORY: Dict[str, Tuple[str, ...]] = {
    LostBasket.name: ("basket_prop",),
    AgentHours.name: ("users_calling_in", "length_of_call"),
    IncurredCosts.name: ("cost_of_error",),
}

_STRING_PROPS = {"error_prop", "application", "conversion", "basket_prop"}
_INT_PROPS = {"multiplication_factor", "users_calling_in", "length_of_call"}
_FLOAT_PROPS = {"margin", "cost_of_call", "cost_of_error"}


@dataclass(frozen=True)
class AnalysisConfig:
    """One analysis configuration: what to query and which impact formulas apply."""

    config_id: str
    error_prop: str
    conversion: str
    name: str = ""
    application: str = ""
    environments: Tuple[str, ...] = ()
    use_cases: Tuple[UseCase, ...] = ()

    def use_case(self, kind: Type) -> Optional[UseCase]:
        for use_case in self.use_cases:
            if isinstance(use_case, kind):
                return use_case
        return None

    @property
    def lost_basket(self) -> Optional[LostBasket]:
        return self.use_case(LostBasket)

    @property
    def agent_hours(self) -> Optional[AgentHours]:
        return self.use_case(AgentHours)

    @property
    def incurred_costs(self) -> Optional[IncurredCosts]:
        return self.use_case(IncurredCosts)


def _coerce(key: str, value: object):
    if key in _STRING_PROPS:
        if not isinstance(value, str):
            raise ConfigurationError(f"property {key} must be a string, got {value!r}")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"property {key} must be numeric, got {value!r}")
    if key in _INT_PROPS:
        return int(value)
    return float(value)


def build_config(
    config_id: str,
    name: str,
    use_case_names: List[str],
    properties: Mapping[str, object],
    environments: List[str],
) -> AnalysisConfig:
    """Validate raw properties and build an :class:`AnalysisConfig`."""
    props: Dict[str, object] = {}
    for key, value in properties.items():
        if key not in _STRING_PROPS | _INT_PROPS | _FLOAT_PROPS:
            raise ConfigurationError(f"configuration {config_id}: unknown property {key}")
        if value is None:
            continue
        props[key] = _coerce(key, value)

    for key in ("error_prop", "conversion"):
        if not props.get(key):
            raise ConfigurationError(f"configuration {config_id} is missing mandatory property {key}")

    use_cases: List[UseCase] = []
    for use_case_name in use_case_names:
        kind = USE_CASES.get(use_case_name)
        if kind is None:
            raise ConfigurationError(f"configuration {config_id}: {use_case_name!r} is not a valid use case")
        missing = [prop for prop in _MANDATORY[use_case_name] if prop not in props]
        if missing:
            raise ConfigurationError(
                f"use case {use_case_name} of configuration {config_id} is missing mandatory properties: {missing}"
            )
        params = {f: props[f] for f in kind.__dataclass_fields__ if f in props}
        try:
            use_cases.append(kind(**params))
        except ConfigurationError as exc:
            raise ConfigurationError(f"use case {use_case_name} of configuration {config_id}: {exc}") from exc

    return AnalysisConfig(
        config_id=config_id,
        name=name,
        error_prop=str(props["error_prop"]),
        conversion=str(props["conversion"]),
        application=str(props.get("application", "")),
        environments=tuple(environments),
        use_cases=tuple(use_cases),
    )


@dataclass(frozen=True)
class Environment:
    """A monitored environment and the credential used to query it."""

    env_id: str
    name: str
    url: str
    token: str = ""
    token_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "url", self.url.rstrip("/"))

    def get_token(self, environ: Optional[Mapping[str, str]] = None) -> str:
        if self.token:
            return self.token
        environ = os.environ if environ is None else environ
        value = environ.get(self.token_name) if self.token_name else None
        if not value:
            raise ConfigurationError(
                f"no token value found for environment {self.name}, "
                f"and environment variable {self.token_name or '<unset>'} also not found"
            )
        return value


def validate_environment_url(url: str) -> str:
    parsed = urlparse(url or "")
    if not url:
        raise ConfigurationError("no environment url")
    if parsed.scheme != "https" or not parsed.netloc:
        raise ConfigurationError(f"environment url {url} was not valid")
    return url.rstrip("/")


def is_new_token_format(token: str) -> bool:
    return token.startswith("dt0c01.") and token.count(".") == 2
