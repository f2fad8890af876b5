"""Configuration loading & validation.

Each top-level section is validated by its own schema
(`core.config.schemas.*`); unknown sections and unknown keys are rejected.

Precedence (last wins): base.yaml → overrides.local.yaml → ENV (CMP__*).
``CMP__COMPARE__HEARTBEAT_INTERVAL_S=2`` sets ``compare.heartbeat_interval_s``.
"""
from __future__ import annotations

import logging
import os
import pathlib
import threading
from functools import lru_cache
from typing import Any, Dict, Type

import yaml
from core import metrics
from core.errors import validate_error_type
from pydantic import BaseModel, ConfigDict, ValidationError

from .schemas.compare import CompareConfig
from .schemas.gateway import GatewayConfig
from .schemas.observability import LoggingConfig
from .schemas.plans import PlanConfig, PlansConfig
from .schemas.storage import StorageConfig

log = logging.getLogger("core.config")


def _default_plans() -> PlansConfig:
    return PlansConfig({"free": PlanConfig()})


class AggregatedConfig(BaseModel):
    schema_version: int = 1
    compare: CompareConfig = CompareConfig()
    gateway: GatewayConfig = GatewayConfig()
    plans: PlansConfig = _default_plans()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = ConfigDict(extra="forbid")


DEFAULT_CONFIG_DIR = "configs"
ENV_PREFIX = "CMP__"
CONFIG_DIR_ENV = "CMP_CONFIG_DIR"

SUB_SCHEMA_CLASSES: Dict[str, Type[BaseModel]] = {
    "compare": CompareConfig,
    "gateway": GatewayConfig,
    "plans": PlansConfig,
    "storage": StorageConfig,
    "logging": LoggingConfig,
}


class ConfigError(Exception):
    pass


def _load_yaml_if_exists(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _merge_dict(
    base: Dict[str, Any], override: Dict[str, Any]
) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def _cast_env_value(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        try:
            return float(value)
        except ValueError:
            return value


def _apply_env(cfg: Dict[str, Any]) -> None:
    prefix_len = len(ENV_PREFIX)
    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        path_parts = env_key[prefix_len:].lower().split("__")
        target = cfg
        for part in path_parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        target[path_parts[-1]] = _cast_env_value(value)
        dotted_path = ".".join(path_parts)
        metrics.inc("env_override_total", {"path": dotted_path})
        log.info("config env override path=%s source=env", dotted_path)


_lock = threading.Lock()


def _resolve_config_dir() -> pathlib.Path:
    """Resolve config directory each call honoring env var changes."""
    return pathlib.Path(os.getenv(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR))


def _validate_sub_schemas(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate each known section via its schema class."""
    unknown = sorted(
        k for k in raw if k not in SUB_SCHEMA_CLASSES and k != "schema_version"
    )
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")
    validated: Dict[str, Any] = {}
    for name, cls in SUB_SCHEMA_CLASSES.items():
        if name in raw:
            try:
                validated[name] = cls.model_validate(raw[name])
            except ValidationError as e:
                raise ConfigError(
                    f"Validation failed for section '{name}': {e}"
                ) from e
    return validated


def _cross_validate(cfg: AggregatedConfig) -> None:
    """Rules spanning more than one field or section.

    - compare.heartbeat_interval_s < compare.request_timeout_s
    - every plan model is present in gateway.models (when a catalog is set)
    """
    errors: list[tuple[str, str, str]] = []  # (path, code, msg)
    cmp_cfg = cfg.compare
    if cmp_cfg.heartbeat_interval_s >= cmp_cfg.request_timeout_s:
        errors.append(
            (
                "compare.heartbeat_interval_s",
                "config-out-of-range",
                "must be shorter than request_timeout_s",
            )
        )
    catalog = cfg.gateway.models
    if catalog:
        for plan_name in cfg.plans.names():
            plan = cfg.plans.get(plan_name)
            missing = [m for m in plan.models if m not in catalog]
            if missing:
                errors.append(
                    (
                        f"plans.{plan_name}.models",
                        "config-invalid",
                        "not in gateway catalog: " + ",".join(missing),
                    )
                )
    if errors:
        for path, code, _ in errors:
            validate_error_type(code)
            metrics.inc(
                "config_validation_errors_total",
                {"path": path, "code": code},
            )
        details = ", ".join(f"{p}:{c}:{m}" for p, c, m in errors)
        raise ConfigError(f"config validation failed: {details}")


@lru_cache(maxsize=1)
def get_config() -> AggregatedConfig:  # noqa: D401
    with _lock:
        cfg_dir = _resolve_config_dir()
        base_cfg = _load_yaml_if_exists(cfg_dir / "base.yaml")
        overrides_cfg = _load_yaml_if_exists(cfg_dir / "overrides.local.yaml")
        merged = _merge_dict(base_cfg, overrides_cfg)
        _apply_env(merged)
        validated_sub = _validate_sub_schemas(merged)
        try:
            agg = AggregatedConfig(
                schema_version=merged.get("schema_version", 1),
                **validated_sub,
            )
        except ValidationError as e:
            raise ConfigError(str(e)) from e
        _cross_validate(agg)
        return agg


def clear_config_cache() -> None:
    """Clear cached config (primarily for tests)."""
    get_config.cache_clear()


def as_dict() -> Dict[str, Any]:
    return get_config().model_dump()
