"""
NIR Monitoring — run summaries and a rotating JSON-lines event log.

Two layers:

1. ``run_summary()``: one-line human-readable description of a finished
   run (e.g. "SNN run: 10 steps of 100000 ns, 3 neurons, 4 spikes").
2. ``RunLogger``: rotating file logger writing one JSON object per engine
   event to ``<log_dir>/runs.log``.

Usage::

    from nir_monitoring import RunLogger, run_summary

    run_log = RunLogger(load_nir_config())
    run_log.attach(program)
    result = program.run()
    print(run_summary(result))
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import time
from pathlib import Path
from typing import Any, Dict, Optional

from nir_config import NIRConfig
from snn_runtime import SimulationResult, Telemetry

logger = logging.getLogger("nir.monitoring")


# ── Run summary (Layer 1) ──────────────────────────────────────────────


def run_summary(result: SimulationResult, telemetry: Optional[Telemetry] = None) -> str:
    """Generate a one-line status for a finished run.

    Args:
        result: Result returned by ``Program.run()``.
        telemetry: Optional network snapshot taken after the run.

    Returns:
        Human-readable status string.
    """
    parts = [
        f"SNN run: {result.steps_executed:,} steps of {result.dt_ns:,} ns",
        f"{result.num_neurons:,} neurons",
        f"{result.spike_count:,} spikes",
    ]
    if result.spike_count:
        parts.append(f"{result.average_firing_rate():.1f} Hz mean rate")
    if telemetry is not None and telemetry.num_synapses:
        parts.append(
            f"{telemetry.num_synapses:,} synapses "
            f"(w {telemetry.mean_weight:.3f} ± {telemetry.std_weight:.3f})"
        )
    return ", ".join(parts)


# ── Rotating logger (Layer 2) ─────────────────────────────────────────


class RunLogger:
    """Rotating file logger for simulation events.

    Writes structured JSON-line events to ``runs.log`` with automatic
    rotation based on file size.

    Args:
        nir_config: ``NIRConfig`` with monitoring parameters.
    """

    def __init__(self, nir_config: NIRConfig) -> None:
        self._cfg = nir_config.monitoring
        self._logger = logging.getLogger("nir.events")
        self._handler: Optional[logging.Handler] = None
        self._setup_handler()

    @property
    def log_path(self) -> Path:
        return Path(self._cfg.log_dir).expanduser() / "runs.log"

    def _setup_handler(self) -> None:
        """Configure rotating file handler."""
        log_path = self.log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=self._cfg.max_log_size_mb * 1024 * 1024,
            backupCount=self._cfg.backup_count,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)
        self._handler = handler

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write a structured event to the run log."""
        event = {
            "timestamp": time.time(),
            "event": event_type,
            "data": data,
        }
        self._logger.info(json.dumps(event, default=str))

    def attach(self, target: Any) -> None:
        """Subscribe to the events of a ``Program`` or ``SimulationEngine``."""
        target.register_event_handler(
            "run_started", lambda **kw: self.log_event("run_started", kw)
        )
        target.register_event_handler(
            "spikes", lambda **kw: self.log_event("spikes", kw)
        )
        target.register_event_handler(
            "run_completed",
            lambda result: self.log_event("run_completed", {
                "steps": result.steps_executed,
                "spikes": result.spike_count,
                "summary": run_summary(result),
            }),
        )

    def close(self) -> None:
        """Detach and close the file handler."""
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
            logger.debug("closed run log %s", self.log_path)
