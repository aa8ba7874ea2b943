"""
SNN Runtime - fixed-step discrete-time simulation of compiled networks.

Leaky integrate-and-fire neurons over a contiguous integer id range,
directed delayed synapses, an optional pair-based STDP rule and Poisson
current sources.  Time is integer nanoseconds throughout; the membrane
equation is integrated in milliseconds.

Per step k at t = k·dt, in this order:
    1. Deliver synaptic arrivals scheduled for step k, then sample each
       Poisson source whose window contains t
    2. Integrate neurons in ascending id (refractory, Euler, threshold)
    3. Schedule spikes along outgoing synapses
    4. Apply plasticity for neurons that spiked
    5. Advance the clock

Given the same network, parameters and seed, a run produces an identical
spike sequence.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Tuple,
)

import numpy as np

from nir_config import RuntimeConfig
from nir_errors import SimulationError

logger = logging.getLogger("nir.runtime")

NS_PER_MS = 1_000_000
NS_PER_S = 1_000_000_000


# ---------------------------------------------------------------------------
# Parameters and state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NeuronParams:
    """LIF parameters for one neuron.

    Attributes:
        tau_m_ns: Membrane time constant.
        v_rest: Resting potential (mV); also the initial potential.
        v_reset: Potential after a spike (mV).
        v_thresh: Firing threshold (mV).
        t_refrac_ns: Refractory period after a spike.
        r_m: Membrane resistance (MΩ).
        c_m: Membrane capacitance (nF).  Carried for completeness; the
            Euler update uses tau_m directly.
    """

    tau_m_ns: int = 20 * NS_PER_MS
    v_rest: float = -70.0
    v_reset: float = -70.0
    v_thresh: float = -50.0
    t_refrac_ns: int = 2 * NS_PER_MS
    r_m: float = 10.0
    c_m: float = 1.0


DEFAULT_NEURON_PARAMS = NeuronParams()


@dataclass
class Neuron:
    """Mutable per-neuron state."""

    neuron_id: int
    params: NeuronParams
    v: float = 0.0
    input_current: float = 0.0
    last_spike_ns: Optional[int] = None

    def is_refractory(self, t_ns: int) -> bool:
        return (
            self.last_spike_ns is not None
            and t_ns - self.last_spike_ns < self.params.t_refrac_ns
        )


@dataclass
class Synapse:
    """Directed, weighted, delayed connection between two neurons."""

    pre: int
    post: int
    weight: float
    delay_ns: int


@dataclass
class PoissonStimulus:
    """Poisson current source bound to one neuron.

    Active on the half-open window ``[start_ns, start_ns + duration_ns)``.
    """

    neuron_id: int
    rate_hz: float
    amplitude_na: float
    start_ns: int
    duration_ns: int

    def active(self, t_ns: int) -> bool:
        return self.start_ns <= t_ns < self.start_ns + self.duration_ns

    def spike_probability(self, dt_ns: int) -> float:
        return min(1.0, self.rate_hz * dt_ns / NS_PER_S)


@dataclass(frozen=True)
class SimulationParams:
    """Horizon and sampling of one run."""

    dt_ns: int
    duration_ns: int
    record_potentials: bool = False
    seed: Optional[int] = None

    @property
    def num_steps(self) -> int:
        # Truncating: a trailing partial step is not simulated.
        return self.duration_ns // self.dt_ns


# ---------------------------------------------------------------------------
# Plasticity
# ---------------------------------------------------------------------------

class PlasticityRule:
    """Base class for plasticity rules applied after spike delivery."""

    def apply(self, network: "Network", fired_ids: List[int], t_ns: int) -> None:
        raise NotImplementedError


class STDPRule(PlasticityRule):
    """Pair-based spike-timing-dependent plasticity.

    For each neuron that spiked at t:
        incoming synapses, pre spiked at t_pre (Δt = t − t_pre):
            Δt > 0  →  Δw = a_plus · exp(−Δt / tau_plus)
            Δt = 0  →  Δw = a_plus / 2
        outgoing synapses, post spiked earlier at t_post (Δt = t_post − t < 0):
            Δw = −a_minus · exp(Δt / tau_minus)

    Weights are clamped into [w_min, w_max] after every update.
    """

    def __init__(
        self,
        a_plus: float = 0.01,
        a_minus: float = 0.012,
        tau_plus_ns: int = 20 * NS_PER_MS,
        tau_minus_ns: int = 20 * NS_PER_MS,
        w_min: float = 0.0,
        w_max: float = 1.0,
    ):
        self.a_plus = a_plus
        self.a_minus = a_minus
        self.tau_plus_ns = tau_plus_ns
        self.tau_minus_ns = tau_minus_ns
        self.w_min = w_min
        self.w_max = w_max

    def _clamp(self, w: float) -> float:
        return max(self.w_min, min(w, self.w_max))

    def apply(self, network: "Network", fired_ids: List[int], t_ns: int) -> None:
        for post_id in fired_ids:
            for syn in network.incoming(post_id):
                t_pre = network.neurons[syn.pre].last_spike_ns
                if t_pre is None:
                    continue
                dt = t_ns - t_pre
                if dt > 0:
                    dw = self.a_plus * math.exp(-dt / self.tau_plus_ns)
                elif dt == 0:
                    # Same-step pre/post: weak potentiation at half strength
                    dw = self.a_plus * 0.5
                else:
                    continue
                syn.weight = self._clamp(syn.weight + dw)

            for syn in network.outgoing(post_id):
                t_other = network.neurons[syn.post].last_spike_ns
                if t_other is None:
                    continue
                dt = t_other - t_ns
                if dt >= 0:
                    continue  # Δt = 0 handled by the incoming pass
                dw = -self.a_minus * math.exp(dt / self.tau_minus_ns)
                syn.weight = self._clamp(syn.weight + dw)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

@dataclass
class Telemetry:
    """Network statistics snapshot.

    Attributes:
        num_neurons: Size of the neuron table.
        num_synapses: Number of synapses.
        num_stimuli: Number of Poisson sources.
        plastic: Whether a plasticity rule is attached.
        mean_weight: Mean synapse weight.
        std_weight: Standard deviation of synapse weights.
        min_weight: Smallest synapse weight.
        max_weight: Largest synapse weight.
    """

    num_neurons: int = 0
    num_synapses: int = 0
    num_stimuli: int = 0
    plastic: bool = False
    mean_weight: float = 0.0
    std_weight: float = 0.0
    min_weight: float = 0.0
    max_weight: float = 0.0


class Network:
    """Neuron table, synapses, plasticity and stimulus bindings.

    Neuron ids are the contiguous range ``0..num_neurons-1``.  At most one
    synapse exists per ordered (pre, post) pair; self-connections are
    allowed.
    """

    def __init__(
        self,
        neuron_params: List[NeuronParams],
        plasticity: Optional[PlasticityRule] = None,
    ):
        self.neurons: List[Neuron] = [
            Neuron(neuron_id=i, params=p, v=p.v_rest)
            for i, p in enumerate(neuron_params)
        ]
        self.synapses: Dict[Tuple[int, int], Synapse] = {}
        self._outgoing: Dict[int, List[Synapse]] = {}
        self._incoming: Dict[int, List[Synapse]] = {}
        self.plasticity = plasticity
        self.stimuli: List[PoissonStimulus] = []

    @property
    def num_neurons(self) -> int:
        return len(self.neurons)

    @property
    def num_synapses(self) -> int:
        return len(self.synapses)

    def _check_id(self, neuron_id: int) -> None:
        if not 0 <= neuron_id < len(self.neurons):
            raise KeyError(f"Neuron {neuron_id} not found")

    def add_synapse(self, pre: int, post: int, weight: float, delay_ns: int) -> Synapse:
        """Create a synapse.

        Raises:
            KeyError: If either endpoint is not in the neuron table.
            ValueError: If a synapse (pre, post) already exists.
        """
        self._check_id(pre)
        self._check_id(post)
        if (pre, post) in self.synapses:
            raise ValueError(f"duplicate synapse {pre} -> {post}")
        syn = Synapse(pre=pre, post=post, weight=float(weight), delay_ns=int(delay_ns))
        self.synapses[(pre, post)] = syn
        self._outgoing.setdefault(pre, []).append(syn)
        self._incoming.setdefault(post, []).append(syn)
        return syn

    def get_synapse(self, pre: int, post: int) -> Optional[Synapse]:
        return self.synapses.get((pre, post))

    def outgoing(self, neuron_id: int) -> List[Synapse]:
        return self._outgoing.get(neuron_id, [])

    def incoming(self, neuron_id: int) -> List[Synapse]:
        return self._incoming.get(neuron_id, [])

    def add_stimulus(self, stimulus: PoissonStimulus) -> None:
        self._check_id(stimulus.neuron_id)
        self.stimuli.append(stimulus)

    def get_telemetry(self) -> Telemetry:
        weights = np.array([s.weight for s in self.synapses.values()], dtype=np.float64)
        has_weights = weights.size > 0
        return Telemetry(
            num_neurons=self.num_neurons,
            num_synapses=self.num_synapses,
            num_stimuli=len(self.stimuli),
            plastic=self.plasticity is not None,
            mean_weight=float(np.mean(weights)) if has_weights else 0.0,
            std_weight=float(np.std(weights)) if has_weights else 0.0,
            min_weight=float(np.min(weights)) if has_weights else 0.0,
            max_weight=float(np.max(weights)) if has_weights else 0.0,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Spike:
    neuron_id: int
    time_ns: int


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of one run.

    Attributes:
        spikes: Spikes in emission order (time, then ascending id).
        potentials: ``(steps, neurons)`` membrane trace in mV, or None when
            recording was off.
        steps_executed: Number of steps simulated.
        dt_ns: Step size.
        duration_ns: Requested horizon.
        num_neurons: Size of the neuron table.
    """

    spikes: Tuple[Spike, ...]
    potentials: Optional[np.ndarray]
    steps_executed: int
    dt_ns: int
    duration_ns: int
    num_neurons: int = 0

    @property
    def spike_count(self) -> int:
        return len(self.spikes)

    @property
    def simulated_ns(self) -> int:
        return self.steps_executed * self.dt_ns

    def export_spikes(self) -> Iterator[Tuple[int, int]]:
        """Yield ``(time_ns, neuron_id)`` pairs in emission order."""
        for s in self.spikes:
            yield (s.time_ns, s.neuron_id)

    def spikes_for_neuron(self, neuron_id: int) -> List[int]:
        return [s.time_ns for s in self.spikes if s.neuron_id == neuron_id]

    def firing_rate(self, neuron_id: int) -> float:
        """Mean firing rate of one neuron in Hz over the simulated time."""
        if self.simulated_ns == 0:
            return 0.0
        return len(self.spikes_for_neuron(neuron_id)) * NS_PER_S / self.simulated_ns

    def average_firing_rate(self) -> float:
        """Mean firing rate across all neurons in Hz."""
        if self.simulated_ns == 0 or self.num_neurons == 0:
            return 0.0
        return self.spike_count * NS_PER_S / (self.simulated_ns * self.num_neurons)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def delay_steps(delay_ns: int, dt_ns: int) -> int:
    """Steps a spike travels along a synapse: ceil(delay/dt), at least 1."""
    return max(1, -(-delay_ns // dt_ns))


class SimulationEngine:
    """Runs one Network for one SimulationParams horizon.

    An engine is single-use: the network state it advances (potentials,
    spike times, plastic weights) is not rewound.

    Events (subscribe with ``register_event_handler``):
        run_started    steps, num_neurons, seed
        spikes         step, time_ns, neuron_ids
        run_completed  result
    """

    def __init__(
        self,
        network: Network,
        params: SimulationParams,
        config: Optional[RuntimeConfig] = None,
    ):
        if params.dt_ns <= 0:
            raise ValueError("dt_ns must be > 0")
        self.network = network
        self.params = params
        self.config = config or RuntimeConfig()
        self.seed = params.seed if params.seed is not None else self.config.default_seed
        self._event_handlers: Dict[str, List[Callable]] = {}
        # step → list of (post_id, weight)
        self._delay_buffer: Dict[int, List[Tuple[int, float]]] = {}
        self._rngs = [
            np.random.default_rng(np.random.SeedSequence([self.seed, i]))
            for i in range(len(network.stimuli))
        ]
        self._spikes: List[Spike] = []
        self._has_run = False

    # -- events ------------------------------------------------------------

    def register_event_handler(self, event_type: str, callback: Callable) -> None:
        """Subscribe to ``run_started``, ``spikes`` or ``run_completed``."""
        self._event_handlers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs: Any) -> None:
        for cb in self._event_handlers.get(event_type, []):
            cb(**kwargs)

    # -- stepping ----------------------------------------------------------

    def _inject_inputs(self, step: int, t_ns: int) -> None:
        neurons = self.network.neurons
        for post, weight in self._delay_buffer.pop(step, []):
            neurons[post].input_current += weight

        dt_ns = self.params.dt_ns
        for stim, rng in zip(self.network.stimuli, self._rngs):
            if not stim.active(t_ns):
                continue
            if rng.random() < stim.spike_probability(dt_ns):
                neurons[stim.neuron_id].input_current += stim.amplitude_na

    def _integrate(self, step: int, t_ns: int) -> List[int]:
        dt_ms = self.params.dt_ns / NS_PER_MS
        fired: List[int] = []
        for neuron in self.network.neurons:
            p = neuron.params
            if neuron.is_refractory(t_ns):
                neuron.input_current = 0.0
                continue
            tau_ms = p.tau_m_ns / NS_PER_MS
            neuron.v += ((p.v_rest - neuron.v) + p.r_m * neuron.input_current) / tau_ms * dt_ms
            if not math.isfinite(neuron.v):
                raise SimulationError(
                    "membrane potential became non-finite",
                    step=step, neuron_id=neuron.neuron_id,
                )
            if neuron.v >= p.v_thresh:
                neuron.v = p.v_reset
                neuron.last_spike_ns = t_ns
                fired.append(neuron.neuron_id)
            # Input is consumed by a single step
            neuron.input_current = 0.0
        return fired

    def _propagate(self, step: int, fired: List[int]) -> None:
        dt_ns = self.params.dt_ns
        for nid in fired:
            for syn in self.network.outgoing(nid):
                arrival = step + delay_steps(syn.delay_ns, dt_ns)
                self._delay_buffer.setdefault(arrival, []).append((syn.post, syn.weight))

    def _record_spikes(self, step: int, t_ns: int, fired: List[int]) -> None:
        limit = self.config.max_recorded_spikes
        if len(self._spikes) + len(fired) > limit:
            raise SimulationError(f"recorded spike limit of {limit} exceeded", step=step)
        self._spikes.extend(Spike(nid, t_ns) for nid in fired)

    def run(self) -> SimulationResult:
        """Simulate the full horizon.

        Returns:
            SimulationResult with spikes and, if requested, potentials.

        Raises:
            SimulationError: Non-finite membrane potential, spike limit
                exceeded, or the engine has already run.
        """
        if self._has_run:
            raise SimulationError("engine has already run")
        self._has_run = True

        params = self.params
        network = self.network
        steps = params.num_steps
        n = network.num_neurons
        potentials = np.zeros((steps, n), dtype=np.float64) if params.record_potentials else None
        progress_every = self.config.progress_log_steps

        logger.info(
            "run started: %d steps of %d ns, %d neurons, %d synapses, seed %d",
            steps, params.dt_ns, n, network.num_synapses, self.seed,
        )
        self._emit("run_started", steps=steps, num_neurons=n, seed=self.seed)

        for step in range(steps):
            t_ns = step * params.dt_ns

            self._inject_inputs(step, t_ns)
            fired = self._integrate(step, t_ns)
            if potentials is not None:
                potentials[step, :] = [neuron.v for neuron in network.neurons]

            if fired:
                self._record_spikes(step, t_ns, fired)
                self._propagate(step, fired)
                if network.plasticity is not None:
                    network.plasticity.apply(network, fired, t_ns)
                self._emit("spikes", step=step, time_ns=t_ns, neuron_ids=list(fired))

            if progress_every and (step + 1) % progress_every == 0:
                logger.debug("step %d/%d, %d spikes so far", step + 1, steps, len(self._spikes))

        if potentials is not None:
            potentials.setflags(write=False)
        result = SimulationResult(
            spikes=tuple(self._spikes),
            potentials=potentials,
            steps_executed=steps,
            dt_ns=params.dt_ns,
            duration_ns=params.duration_ns,
            num_neurons=n,
        )
        logger.info("run completed: %d steps, %d spikes", steps, result.spike_count)
        self._emit("run_completed", result=result)
        return result
