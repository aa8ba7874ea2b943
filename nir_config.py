"""
NIR Configuration — tunables for the compiler, runtime engine and run logging.

Provides a single ``NIRConfig`` dataclass with three sections.  Configuration
can be loaded from a dict of overrides, a JSON file, or left at defaults.

Usage::

    from nir_config import NIRConfig, load_nir_config

    # Defaults
    cfg = load_nir_config()

    # With overrides
    cfg = load_nir_config({"runtime": {"default_seed": 7}})

    # From JSON file
    cfg = load_nir_config(config_path="~/.nir/config.json")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("nir.config")


# ── Section dataclasses ────────────────────────────────────────────────


@dataclass
class RuntimeConfig:
    """Configuration for the simulation engine.

    ``default_seed`` is used when a ``runtime.simulate.run`` op carries no
    ``seed`` attribute.  ``progress_log_steps`` of 0 disables periodic
    debug progress lines.
    """

    default_seed: int = 42
    max_recorded_spikes: int = 1_000_000
    progress_log_steps: int = 0


@dataclass
class CompilerConfig:
    """Configuration for lowering a Module to a Program."""

    # Referencing a neuron id no lif op declares is an error instead of
    # materializing it with default parameters.
    strict_neuron_refs: bool = False
    # Upper bound on the neuron table; any referenced id must be below it.
    max_neurons: int = 1_000_000


@dataclass
class MonitoringConfig:
    """Configuration for the JSON-lines run logger."""

    log_dir: str = "~/.nir/logs/"
    max_log_size_mb: int = 10
    backup_count: int = 5


# ── Top-level config ───────────────────────────────────────────────────


@dataclass
class NIRConfig:
    """Top-level toolchain configuration.

    Use ``load_nir_config()`` to create an instance with user overrides
    applied.
    """

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    compiler: CompilerConfig = field(default_factory=CompilerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


# ── Factory ────────────────────────────────────────────────────────────


def _coerce(current: Any, value: Any, where: str) -> Any:
    """Convert ``value`` to the type of the field's current value."""
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise TypeError(f"{where} must be true or false, got {value!r}")
        return value
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{where} must be an integer, got {value!r}")
        return value
    if isinstance(current, str):
        return str(value)
    return value


def _merge(cfg: NIRConfig, data: Dict[str, Any], source: str) -> None:
    """Apply ``{section: {field: value}}`` onto ``cfg`` in place.

    Unknown sections and fields are skipped (logged at debug); a value of
    the wrong type raises ``TypeError`` naming ``section.field``.
    """
    sections = {f.name for f in fields(cfg)}
    for name, values in data.items():
        if name not in sections:
            logger.debug("%s: ignoring unknown config section %r", source, name)
            continue
        section = getattr(cfg, name)
        known = {f.name for f in fields(section)}
        for key, value in values.items():
            if key not in known:
                logger.debug("%s: ignoring unknown key %s.%s", source, name, key)
                continue
            setattr(section, key, _coerce(getattr(section, key), value, f"{name}.{key}"))


def load_nir_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
) -> NIRConfig:
    """Create a ``NIRConfig`` with defaults, optionally overridden.

    Override precedence (highest wins):
        1. ``overrides`` dict argument
        2. ``config_path`` JSON file
        3. Built-in defaults

    A file that cannot be read or holds ill-typed values is logged and
    skipped as a whole; ill-typed ``overrides`` raise ``TypeError``.

    Args:
        overrides: Dict keyed by section name (``runtime``, ``compiler``,
            ``monitoring``) whose values are dicts of field→value pairs.
        config_path: Path to a JSON file with the same structure as
            ``overrides``.

    Returns:
        Fully populated ``NIRConfig``.
    """
    cfg = NIRConfig()

    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            staged = NIRConfig()
            try:
                with open(p) as f:
                    _merge(staged, json.load(f), str(p))
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                logger.warning("Failed to load NIR config from %s: %s", p, exc)
            else:
                cfg = staged

    if overrides is not None:
        _merge(cfg, overrides, "overrides")

    return cfg
