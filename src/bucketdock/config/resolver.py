"""Configuration resolution helpers."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from copy import deepcopy
from typing import Any, Dict, Mapping

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError, UnknownProfileError
from .models import BucketDockConfig

ENV_PREFIX = "BUCKETDOCK__"
_SECRET_FIELDS = frozenset({"secret_access_key", "api_token"})


def resolve_with_precedence(
    *,
    defaults: BucketDockConfig,
    file_overrides: Mapping[str, Any] | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> BucketDockConfig:
    """Merge configuration sources; later sources win (file, environment, CLI).

    Args:
        defaults: Baseline configuration.
        file_overrides: Values parsed from the YAML file.
        env_overrides: Nested values extracted from ``BUCKETDOCK__`` variables.
        cli_overrides: Dotted-key overrides supplied on the command line.

    Returns:
        BucketDockConfig: Validated, merged configuration.

    Raises:
        ConfigError: If a source is malformed or the merged values are invalid.
    """
    merged = defaults.model_dump(mode="python")
    sources = (("file", file_overrides), ("environment", env_overrides), ("cli", cli_overrides))
    for name, source in sources:
        if source:
            merged = _deep_merge(merged, _expand_dotted(source, source_name=name))

    try:
        return BucketDockConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration values: {exc}") from exc


def resolve_profile(config: BucketDockConfig, name: str | None):
    """Return the storage profile called ``name`` (or the configured default).

    Raises:
        UnknownProfileError: If no profile name is available or it is undefined.
    """
    selected = name or config.cli.default_profile
    if not selected:
        raise UnknownProfileError("No profile selected; pass --profile or set cli.default_profile.")
    try:
        return config.profiles[selected]
    except KeyError:
        known = ", ".join(sorted(config.profiles)) or "none defined"
        raise UnknownProfileError(f"Unknown profile '{selected}' (known: {known}).") from None


def flatten_for_env(config: BucketDockConfig, *, redact: bool = True) -> Dict[str, str]:
    """Flatten the config into ``BUCKETDOCK__SECTION__KEY`` mappings.

    Args:
        config: Configuration to flatten.
        redact: Replace credential values with ``***``.
    """
    flat: Dict[str, str] = {}

    def _walk(path: list[str], value: Any) -> None:
        if isinstance(value, dict):
            for key, child in value.items():
                _walk([*path, str(key)], child)
            return
        if redact and path[-1] in _SECRET_FIELDS and value:
            rendered = "***"
        elif isinstance(value, list):
            rendered = yaml.safe_dump(value, default_flow_style=True).strip()
        else:
            rendered = "null" if value is None else str(value)
        flat[ENV_PREFIX + "__".join(part.upper() for part in path)] = rendered

    _walk([], config.model_dump(mode="python"))
    return flat


def _expand_dotted(source: Mapping[str, Any], *, source_name: str) -> dict[str, Any]:
    if not isinstance(source, MappingABC):
        raise ConfigError(f"{source_name.capitalize()} overrides must be a mapping.")

    expanded: dict[str, Any] = {}
    for key, value in source.items():
        if not isinstance(key, str):
            raise ConfigError(f"{source_name.capitalize()} override keys must be strings.")
        segments = key.split(".")
        node = expanded
        for segment in segments[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"{source_name.capitalize()} override for {key} conflicts with existing value."
                )
            node = child
        leaf = segments[-1]
        if isinstance(value, MappingABC):
            nested = _expand_dotted(value, source_name=source_name)
            existing = node.get(leaf)
            node[leaf] = _deep_merge(existing, nested) if isinstance(existing, dict) else nested
        else:
            node[leaf] = value
    return expanded


def _deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = {key: deepcopy(value) for key, value in base.items()}
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, MappingABC) and isinstance(current, MappingABC):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged


__all__ = ["ENV_PREFIX", "resolve_with_precedence", "resolve_profile", "flatten_for_env"]
