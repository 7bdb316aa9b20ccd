#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
PM Intelligence Configuration Reader

Reads project-specific thresholds from the consuming repository's
.pm/config.yaml. The engine has defaults for every setting and the file is
optional; each section is read independently so a partial file only
overrides what it names.

Example .pm/config.yaml:

    database:
      path: .pm/state.db
    workflow:
      wip_limit: 1
      stale_days: {Active: 7, Review: 5, Rework: 3}
    analytics:
      window_days: 14
      trend_threshold: 0.10
      bottleneck_hours: {Review: 24, Rework: 8, Ready: 48, Active: 72}
    predict:
      min_samples: 3
      area_label_prefix: "area:"
    simulate:
      propagation_factor: 0.9
      min_delay_days: 0.5
    calibration:
      false_positive_rate: 0.4
    history:
      timeout_seconds: 10
    logging:
      level: INFO
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from .models import EngineConfig

logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".pm") / "config.yaml"


class ConfigError(ValueError):
    """Raised when .pm/config.yaml holds an unusable value."""

    def __init__(self, key: str, value: Any, reason: str):
        self.key = key
        self.value = value
        super().__init__(f"Invalid config value for '{key}': {value!r} ({reason})")


# ---------------------------------------------------------------------------
# Section helpers
# ---------------------------------------------------------------------------


def _section(doc: dict[str, Any], name: str) -> dict[str, Any]:
    value = doc.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(name, value, "expected a mapping")
    return value


def _positive(key: str, value: Any, cast=float):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(key, value, "expected a number") from None
    if number <= 0:
        raise ConfigError(key, value, "must be positive")
    return number


def _fraction(key: str, value: Any) -> float:
    number = _positive(key, value)
    if number > 1:
        raise ConfigError(key, value, "must be within (0, 1]")
    return number


def _merge_hours(key: str, defaults: dict[str, float], override: Any) -> dict[str, float]:
    merged = dict(defaults)
    if override is None:
        return merged
    if not isinstance(override, dict):
        raise ConfigError(key, override, "expected a mapping of state -> number")
    for state, hours in override.items():
        merged[str(state)] = _positive(f"{key}.{state}", hours)
    return merged


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------


def load_engine_config(
    project_root: str | Path,
    config_yaml_path: str | Path | None = None,
) -> EngineConfig:
    """
    Load EngineConfig from .pm/config.yaml.

    Args:
        project_root: Root of the consuming repository.
        config_yaml_path: Override path for config.yaml (default: .pm/config.yaml).

    Returns:
        EngineConfig with all settings resolved (defaults applied where missing).

    Raises:
        ConfigError: if a value is present but unusable.
    """
    project_root = Path(project_root)
    config_path = Path(config_yaml_path) if config_yaml_path else project_root / CONFIG_RELATIVE_PATH

    config_doc: dict[str, Any] = {}
    if config_path.exists():
        config_doc = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(config_doc, dict):
            raise ConfigError(str(config_path), config_doc, "top level must be a mapping")
    else:
        logger.debug("No config at %s, using defaults", config_path)

    defaults = EngineConfig()

    # Database settings
    db_path = _section(config_doc, "database").get("path", defaults.db_path)
    if not Path(db_path).is_absolute():
        db_path = str(project_root / db_path)

    # Workflow settings
    workflow_section = _section(config_doc, "workflow")
    wip_limit = _positive(
        "workflow.wip_limit", workflow_section.get("wip_limit", defaults.wip_limit), int
    )
    stale_days = _merge_hours(
        "workflow.stale_days", defaults.stale_days, workflow_section.get("stale_days")
    )

    # Analytics settings
    analytics_section = _section(config_doc, "analytics")
    window_days = _positive(
        "analytics.window_days", analytics_section.get("window_days", defaults.window_days), int
    )
    trend_threshold = _fraction(
        "analytics.trend_threshold",
        analytics_section.get("trend_threshold", defaults.trend_threshold),
    )
    bottleneck_hours = _merge_hours(
        "analytics.bottleneck_hours",
        defaults.bottleneck_hours,
        analytics_section.get("bottleneck_hours"),
    )

    # Prediction settings
    predict_section = _section(config_doc, "predict")
    min_samples = _positive(
        "predict.min_samples", predict_section.get("min_samples", defaults.min_samples), int
    )
    max_cycle_days = _positive(
        "predict.max_cycle_days", predict_section.get("max_cycle_days", defaults.max_cycle_days)
    )
    area_label_prefix = str(predict_section.get("area_label_prefix", defaults.area_label_prefix))

    # Simulation settings
    simulate_section = _section(config_doc, "simulate")
    propagation_factor = _fraction(
        "simulate.propagation_factor",
        simulate_section.get("propagation_factor", defaults.propagation_factor),
    )
    min_delay_days = _positive(
        "simulate.min_delay_days", simulate_section.get("min_delay_days", defaults.min_delay_days)
    )
    max_waves = _positive(
        "simulate.max_waves", simulate_section.get("max_waves", defaults.max_waves), int
    )
    default_iterations = _positive(
        "simulate.default_iterations",
        simulate_section.get("default_iterations", defaults.default_iterations),
        int,
    )
    max_iterations = _positive(
        "simulate.max_iterations",
        simulate_section.get("max_iterations", defaults.max_iterations),
        int,
    )
    step_days = _positive(
        "simulate.step_days", simulate_section.get("step_days", defaults.step_days)
    )

    # Calibration settings
    calibration_section = _section(config_doc, "calibration")
    false_positive_rate = _fraction(
        "calibration.false_positive_rate",
        calibration_section.get("false_positive_rate", defaults.false_positive_rate),
    )
    calibration_min_samples = _positive(
        "calibration.min_samples",
        calibration_section.get("min_samples", defaults.calibration_min_samples),
        int,
    )
    area_share = _fraction(
        "calibration.area_share", calibration_section.get("area_share", defaults.area_share)
    )
    decay_report_score = _positive(
        "calibration.decay_report_score",
        calibration_section.get("decay_report_score", defaults.decay_report_score),
        int,
    )

    # Git history settings
    history_section = _section(config_doc, "history")
    git_timeout_seconds = _positive(
        "history.timeout_seconds",
        history_section.get("timeout_seconds", defaults.git_timeout_seconds),
    )
    git_max_output_bytes = _positive(
        "history.max_output_bytes",
        history_section.get("max_output_bytes", defaults.git_max_output_bytes),
        int,
    )
    churn_days = _positive(
        "history.churn_days", history_section.get("churn_days", defaults.churn_days), int
    )

    log_level = str(_section(config_doc, "logging").get("level", defaults.log_level)).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError("logging.level", log_level, "unknown logging level")

    return EngineConfig(
        db_path=db_path,
        project_root=str(project_root),
        wip_limit=wip_limit,
        stale_days=stale_days,
        window_days=window_days,
        trend_threshold=trend_threshold,
        bottleneck_hours=bottleneck_hours,
        min_samples=min_samples,
        max_cycle_days=max_cycle_days,
        area_label_prefix=area_label_prefix,
        propagation_factor=propagation_factor,
        min_delay_days=min_delay_days,
        max_waves=max_waves,
        default_iterations=default_iterations,
        max_iterations=max_iterations,
        step_days=step_days,
        false_positive_rate=false_positive_rate,
        calibration_min_samples=calibration_min_samples,
        area_share=area_share,
        decay_report_score=decay_report_score,
        git_timeout_seconds=git_timeout_seconds,
        git_max_output_bytes=git_max_output_bytes,
        churn_days=churn_days,
        log_level=log_level,
    )


def configure_logging(level: str = "WARNING") -> None:
    """Install a basic stderr handler for the pmintel logger hierarchy.

    Library code never calls this; it is for process entry points.
    """
    root = logging.getLogger("pmintel")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(handler)
