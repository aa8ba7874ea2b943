"""
NIR Compiler - lowers a verified, canonical, current-version Module to a
runnable ``Program``.

    compile_module(module)        lower as-is (no passes)
    compile_with_passes(module)   verify → canonicalize → upgrade → lower

Neuron ids form the contiguous table ``0..max referenced id``, bounded by
``CompilerConfig.max_neurons``.  A ``neuron.lif`` op with a ``neurons``
range declares those ids; one without a range declares every id with
network-wide parameters.  Later lif ops override earlier ones (a warning
is logged).  Ids that nothing declares are materialized with the built-in
defaults (a warning is logged), or rejected when
``CompilerConfig.strict_neuron_refs`` is set.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from nir_config import CompilerConfig, RuntimeConfig
from nir_errors import CompileError, SimulationError
from nir_ir import (
    LAYER_FULLY_CONNECTED,
    LIF,
    POISSON,
    SIMULATE_RUN,
    STDP,
    SYNAPSE_CONNECT,
    Module,
    Operation,
)
from nir_passes import DEFAULT_PASSES, Pass, PassManager
from nir_registry import Registry, resolve_registry
from nir_verify import verify_module
from nir_weights import WeightTriple, apply_weight_updates, snapshot_weights
from snn_runtime import (
    DEFAULT_NEURON_PARAMS,
    Network,
    NeuronParams,
    PoissonStimulus,
    SimulationEngine,
    SimulationParams,
    SimulationResult,
    STDPRule,
    Telemetry,
)

logger = logging.getLogger("nir.compiler")


class Program:
    """Executable form of a Module: a Network plus its run parameters.

    A Program runs once; its network keeps the post-run state (including
    learned weights) for inspection through the weight bridge.
    """

    def __init__(self, network: Network, params: SimulationParams):
        self.network = network
        self.params = params
        self._event_handlers: List[Tuple[str, Callable]] = []
        self._has_run = False

    @property
    def num_steps(self) -> int:
        return self.params.num_steps

    def register_event_handler(self, event_type: str, callback: Callable) -> None:
        """Subscribe to engine events for the upcoming run."""
        self._event_handlers.append((event_type, callback))

    def run(self, config: Optional[RuntimeConfig] = None) -> SimulationResult:
        """Execute the simulation.

        Raises:
            SimulationError: If the Program has already run, or the run
                itself fails.
        """
        if self._has_run:
            raise SimulationError("program has already been run")
        self._has_run = True
        engine = SimulationEngine(self.network, self.params, config)
        for event_type, callback in self._event_handlers:
            engine.register_event_handler(event_type, callback)
        return engine.run()

    def snapshot_weights(self) -> List[WeightTriple]:
        return snapshot_weights(self.network)

    def apply_weight_updates(self, updates: Iterable[WeightTriple]) -> int:
        return apply_weight_updates(self.network, updates)

    def get_telemetry(self) -> Telemetry:
        return self.network.get_telemetry()


# ---------------------------------------------------------------------------
# Lowering helpers
# ---------------------------------------------------------------------------

def _check_schema(op: Operation, index: int, registry: Registry) -> None:
    current = registry.current_version(op.dialect, op.name)
    if current is None:
        raise CompileError(f"unknown op {op.header}", index)
    if op.version != current:
        raise CompileError(
            f"{op.header} is not the current version v{current}; "
            "run the upgrade_versions pass first",
            index,
        )
    if op.key == LAYER_FULLY_CONNECTED:
        raise CompileError(
            f"{op.header} is an aggregate op; run the canonicalize pass first", index
        )
    schema = registry.lookup(op.dialect, op.name, op.version)
    for key, value in op.attrs.items():
        slot = schema.attr(key)
        if slot is None:
            raise CompileError(f"{op.header} has unknown attribute '{key}'", index)
        if value.kind is not slot.kind:
            raise CompileError(
                f"{op.header} attribute '{key}' must be {slot.kind.value}", index
            )
    for slot in schema.attrs:
        if slot.required and slot.name not in op.attrs:
            raise CompileError(f"{op.header} missing required attribute '{slot.name}'", index)


def _lif_params(op: Operation) -> NeuronParams:
    a = op.attrs
    return NeuronParams(
        tau_m_ns=a["tau_m"].value,
        v_rest=a["v_rest"].value,
        v_reset=a["v_reset"].value,
        v_thresh=a["v_thresh"].value,
        t_refrac_ns=a["t_refrac"].value,
        r_m=a["r_m"].value,
        c_m=a["c_m"].value,
    )


def _stdp_rule(op: Operation) -> STDPRule:
    a = op.attrs
    return STDPRule(
        a_plus=a["a_plus"].value,
        a_minus=a["a_minus"].value,
        tau_plus_ns=a["tau_plus"].value,
        tau_minus_ns=a["tau_minus"].value,
        w_min=a["w_min"].value,
        w_max=a["w_max"].value,
    )


def _poisson(op: Operation) -> PoissonStimulus:
    a = op.attrs
    return PoissonStimulus(
        neuron_id=a["neuron"].value,
        rate_hz=a["rate"].value,
        amplitude_na=a["amplitude"].value,
        start_ns=a["start"].value,
        duration_ns=a["duration"].value,
    )


def _simulation_params(op: Operation) -> SimulationParams:
    a = op.attrs
    seed = a.get("seed")
    return SimulationParams(
        dt_ns=a["dt"].value,
        duration_ns=a["duration"].value,
        record_potentials=a["record_potentials"].value,
        seed=seed.value if seed is not None else None,
    )


def _check_neuron_ids(ids: Iterable[int], index: int, config: CompilerConfig) -> None:
    """Reject ids the neuron table cannot hold before anything is allocated."""
    for nid in ids:
        if nid < 0:
            raise CompileError(f"negative neuron id {nid}", index)
        if nid >= config.max_neurons:
            raise CompileError(
                f"neuron id {nid} exceeds the neuron table limit of {config.max_neurons:,}",
                index,
            )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compile_module(
    module: Module,
    registry: Optional[Registry] = None,
    config: Optional[CompilerConfig] = None,
) -> Program:
    """Lower ``module`` to a Program.

    The module must already be verified, canonicalized and upgraded.

    Raises:
        CompileError: Structural fault (non-current or aggregate op, more
            than one plasticity rule, duplicate synapse, missing or
            repeated simulate.run, negative neuron id or one beyond
            ``max_neurons``, undeclared neuron in strict mode).
    """
    registry = resolve_registry(registry)
    config = config or CompilerConfig()

    default_lif: Optional[NeuronParams] = None
    ranged: Dict[int, NeuronParams] = {}
    plasticity: Optional[STDPRule] = None
    synapses: List[Tuple[int, int, float, int]] = []
    seen_pairs: Set[Tuple[int, int]] = set()
    stimuli: List[PoissonStimulus] = []
    sim: Optional[SimulationParams] = None
    referenced: Set[int] = set()

    for index, op in enumerate(module):
        _check_schema(op, index, registry)
        key = op.key
        if key == LIF:
            params = _lif_params(op)
            neurons = op.attrs.get("neurons")
            if neurons is None:
                if default_lif is not None:
                    logger.warning(
                        "op #%d: neuron.lif replaces the earlier network-wide parameters", index
                    )
                default_lif = params
            elif len(neurons):
                _check_neuron_ids((neurons.start, neurons.end), index, config)
                redeclared = [nid for nid in neurons if nid in ranged]
                if redeclared:
                    logger.warning(
                        "op #%d: neuron.lif redeclares %d neuron(s) (first id %d)",
                        index, len(redeclared), redeclared[0],
                    )
                for nid in neurons:
                    ranged[nid] = params
                referenced.update((neurons.start, neurons.end))
        elif key == STDP:
            if plasticity is not None:
                raise CompileError("at most one plasticity.stdp op is allowed", index)
            plasticity = _stdp_rule(op)
        elif key == SYNAPSE_CONNECT:
            pre = op.attrs["pre"].value
            post = op.attrs["post"].value
            _check_neuron_ids((pre, post), index, config)
            if (pre, post) in seen_pairs:
                raise CompileError(f"duplicate synapse {pre} -> {post}", index)
            seen_pairs.add((pre, post))
            synapses.append((pre, post, op.attrs["weight"].value, op.attrs["delay"].value))
            referenced.update((pre, post))
        elif key == POISSON:
            stim = _poisson(op)
            _check_neuron_ids((stim.neuron_id,), index, config)
            stimuli.append(stim)
            referenced.add(stim.neuron_id)
        elif key == SIMULATE_RUN:
            if sim is not None:
                raise CompileError("module has more than one runtime.simulate.run op", index)
            sim = _simulation_params(op)
        else:
            raise CompileError(f"no lowering for {op.header}", index)

    if sim is None:
        raise CompileError("module has no runtime.simulate.run op")
    if sim.dt_ns <= 0:
        raise CompileError("simulate.run 'dt' must be > 0")

    num_neurons = max(referenced) + 1 if referenced else 0
    table: List[NeuronParams] = []
    undeclared: List[int] = []
    for nid in range(num_neurons):
        if nid in ranged:
            table.append(ranged[nid])
        elif default_lif is not None:
            table.append(default_lif)
        else:
            undeclared.append(nid)
            table.append(DEFAULT_NEURON_PARAMS)

    if undeclared:
        if config.strict_neuron_refs:
            raise CompileError(
                f"neuron {undeclared[0]} is referenced but not declared by any neuron.lif op"
            )
        logger.warning(
            "%d undeclared neuron(s) materialized with default parameters (first id %d)",
            len(undeclared), undeclared[0],
        )

    network = Network(table, plasticity=plasticity)
    for pre, post, weight, delay_ns in synapses:
        network.add_synapse(pre, post, weight, delay_ns)
    for stim in stimuli:
        network.add_stimulus(stim)

    logger.debug(
        "compiled %d ops: %d neurons, %d synapses, %d stimuli, plastic=%s",
        len(module), network.num_neurons, network.num_synapses,
        len(stimuli), plasticity is not None,
    )
    return Program(network, sim)


def compile_with_passes(
    module: Module,
    registry: Optional[Registry] = None,
    config: Optional[CompilerConfig] = None,
    passes: Sequence[Pass] = DEFAULT_PASSES,
) -> Program:
    """Verify, run the pass pipeline, then lower."""
    registry = resolve_registry(registry)
    verify_module(module, registry)
    lowered = PassManager(passes, registry).run(module)
    return compile_module(lowered, registry, config)
