"""Loading and parsing of the configuration and environment YAML files."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from .config import AnalysisConfig, Environment, build_config
from .utils import ConfigurationError


_CONFIG_KEYS = {"name", "environments", "use_cases", "properties"}
_ENVIRONMENT_KEYS = {"name", "env-url", "env-token", "env-token-name"}


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that rejects repeated mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ConfigurationError(
                    f"key {key!r} is defined more than once (line {key_node.start_mark.line + 1}), "
                    "please use unique names"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _read_yaml(path: Path, kind: str) -> Dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"could not read {kind} file {path}: {exc}") from exc
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {kind} file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{kind} file {path} must map ids to definitions")
    return data


def _string_list(config_id: str, key: str, value: object) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"configuration {config_id}: {key} must be a list")
    return [str(item) for item in value]


def parse_config(config_id: str, details: object) -> AnalysisConfig:
    if not isinstance(details, dict):
        raise ConfigurationError(f"configuration {config_id} must be a mapping")
    unknown = set(details).difference(_CONFIG_KEYS)
    if unknown:
        raise ConfigurationError(f"configuration {config_id}: invalid keys {sorted(map(str, unknown))}")
    name = details.get("name") or ""
    if not isinstance(name, str):
        raise ConfigurationError(f"configuration {config_id}: name must be a string")
    properties = details.get("properties") or {}
    if not isinstance(properties, dict):
        raise ConfigurationError(f"configuration {config_id}: properties must be a mapping")
    bad_keys = [key for key in properties if not isinstance(key, str)]
    if bad_keys:
        raise ConfigurationError(f"configuration {config_id}: property keys may only be strings, got {bad_keys!r}")
    return build_config(
        config_id=config_id,
        name=name,
        use_case_names=_string_list(config_id, "use_cases", details.get("use_cases")),
        properties=properties,
        environments=_string_list(config_id, "environments", details.get("environments")),
    )


def parse_environment(env_id: str, details: object) -> Environment:
    if not isinstance(details, dict):
        raise ConfigurationError(f"environment {env_id} must be a mapping")
    issues = []
    unknown = set(details).difference(_ENVIRONMENT_KEYS)
    if unknown:
        issues.append(f"unknown properties {sorted(map(str, unknown))}")
    for key in ("name", "env-url"):
        if not details.get(key):
            issues.append(f"property {key} was not available")
    if not details.get("env-token") and not details.get("env-token-name"):
        issues.append("one of env-token or env-token-name is required")
    if issues:
        raise ConfigurationError(
            f"failed to parse config for environment {env_id}. issues found: " + "; ".join(issues)
        )
    return Environment(
        env_id=env_id,
        name=str(details["name"]),
        url=str(details["env-url"]),
        token=str(details.get("env-token") or ""),
        token_name=str(details.get("env-token-name") or ""),
    )


def read_configs(path: Path) -> Tuple[Dict[str, AnalysisConfig], List[Exception]]:
    """Parse every configuration in ``path``, collecting problems instead of stopping at the first."""
    errors: List[Exception] = []
    configs: Dict[str, AnalysisConfig] = {}
    try:
        raw = _read_yaml(path, "configurations")
    except ConfigurationError as exc:
        return configs, [exc]
    for config_id, details in raw.items():
        try:
            configs[str(config_id)] = parse_config(str(config_id), details)
        except ConfigurationError as exc:
            errors.append(exc)
    if not configs and not errors:
        errors.append(ConfigurationError(f"no configurations loaded from file {path}"))
    return configs, errors


def read_environments(
    path: Path, specific_environment: Optional[str] = None
) -> Tuple[Dict[str, Environment], List[Exception]]:
    errors: List[Exception] = []
    environments: Dict[str, Environment] = {}
    try:
        raw = _read_yaml(path, "environments")
    except ConfigurationError as exc:
        return environments, [exc]
    for env_id, details in raw.items():
        try:
            environments[str(env_id)] = parse_environment(str(env_id), details)
        except ConfigurationError as exc:
            errors.append(exc)
    if not environments and not errors:
        errors.append(ConfigurationError(f"no environments loaded from file {path}"))
    if specific_environment:
        if specific_environment not in environments:
            errors.append(ConfigurationError(f"environment {specific_environment} not found in file {path}"))
            return {}, errors
        environments = {specific_environment: environments[specific_environment]}
    return environments, errors


def select_environments(
    config: AnalysisConfig, environments: Mapping[str, Environment], restricted: bool = False
) -> List[Environment]:
    """Environments referenced by ``config``.

    With ``restricted`` set, references to environments that were filtered out
    are skipped instead of reported.
    """
    selected = []
    for env_id in config.environments:
        environment = environments.get(env_id)
        if environment is None:
            if restricted:
                continue
            raise ConfigurationError(
                f"configuration {config.config_id} references unknown environment {env_id}"
            )
        selected.append(environment)
    return selected
