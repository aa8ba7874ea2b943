"""
NIR Core - typed, versioned operations for spiking-network experiments.

A program is a ``Module``: an ordered list of ``Operation`` instances, each
identified by ``(dialect, name, version)`` and carrying a unique-keyed
mapping of unit-tagged attributes.

Attribute values form a closed tagged union (one frozen dataclass per
``AttrKind``).  Times are integer nanoseconds; electrical quantities are
floats in fixed units (mV, MΩ, nF, nA, Hz).

Usage::

    from nir_ir import Module, lif_neuron, simulate_run

    m = Module()
    m.push(lif_neuron(20.0, -70.0, -70.0, -50.0, 2.0, 10.0, 1.0))
    m.push(simulate_run(dt_ms=0.1, duration_ms=1.0, seed=42))
    print(m.to_text())
"""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    ClassVar,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)


# ---------------------------------------------------------------------------
# Dialects and well-known ops
# ---------------------------------------------------------------------------

NEURON = "neuron"
PLASTICITY = "plasticity"
CONNECTIVITY = "connectivity"
STIMULUS = "stimulus"
RUNTIME = "runtime"

LIF = (NEURON, "lif")
STDP = (PLASTICITY, "stdp")
LAYER_FULLY_CONNECTED = (CONNECTIVITY, "layer_fully_connected")
SYNAPSE_CONNECT = (CONNECTIVITY, "synapse_connect")
POISSON = (STIMULUS, "poisson")
SIMULATE_RUN = (RUNTIME, "simulate.run")

NS_PER_MS = 1_000_000
NS_PER_S = 1_000_000_000


# ---------------------------------------------------------------------------
# Attribute kinds (closed set)
# ---------------------------------------------------------------------------

class AttrKind(Enum):
    """Physical-quantity kind of an attribute slot."""
    DURATION = "duration"
    TIME = "time"
    VOLTAGE = "voltage"
    RESISTANCE = "resistance"
    CAPACITANCE = "capacitance"
    CURRENT = "current"
    RATE = "rate"
    WEIGHT = "weight"
    RANGE = "range"
    NEURON_REF = "neuron_ref"
    FLOAT = "float"
    INT = "int"
    BOOL = "bool"


def _as_int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{what} must be an integer, got bool")
    try:
        return operator.index(value)
    except TypeError:
        raise TypeError(f"{what} must be an integer, got {value!r}") from None


def _as_finite_float(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{what} must be a number, got bool")
    f = float(value)
    if not math.isfinite(f):
        raise ValueError(f"{what} must be finite, got {value!r}")
    return f


@dataclass(frozen=True)
class _IntAttr:
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _as_int(self.value, type(self).__name__))


@dataclass(frozen=True)
class _FloatAttr:
    value: float

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "value", _as_finite_float(self.value, type(self).__name__)
        )


@dataclass(frozen=True)
class Duration(_IntAttr):
    """Time span in integer nanoseconds."""
    kind: ClassVar[AttrKind] = AttrKind.DURATION

    @property
    def ms(self) -> float:
        return self.value / NS_PER_MS


@dataclass(frozen=True)
class Time(_IntAttr):
    """Absolute simulation time in integer nanoseconds."""
    kind: ClassVar[AttrKind] = AttrKind.TIME


@dataclass(frozen=True)
class Voltage(_FloatAttr):
    """Membrane voltage in mV."""
    kind: ClassVar[AttrKind] = AttrKind.VOLTAGE


@dataclass(frozen=True)
class Resistance(_FloatAttr):
    """Membrane resistance in MΩ."""
    kind: ClassVar[AttrKind] = AttrKind.RESISTANCE


@dataclass(frozen=True)
class Capacitance(_FloatAttr):
    """Membrane capacitance in nF."""
    kind: ClassVar[AttrKind] = AttrKind.CAPACITANCE


@dataclass(frozen=True)
class Current(_FloatAttr):
    """Injected current in nA."""
    kind: ClassVar[AttrKind] = AttrKind.CURRENT


@dataclass(frozen=True)
class Rate(_FloatAttr):
    """Event rate in Hz."""
    kind: ClassVar[AttrKind] = AttrKind.RATE


@dataclass(frozen=True)
class Weight(_FloatAttr):
    """Dimensionless synaptic weight (clamped by whoever consumes it)."""
    kind: ClassVar[AttrKind] = AttrKind.WEIGHT


@dataclass(frozen=True)
class Float(_FloatAttr):
    """Raw unitless float."""
    kind: ClassVar[AttrKind] = AttrKind.FLOAT


@dataclass(frozen=True)
class Int(_IntAttr):
    """Raw integer (e.g. RNG seeds)."""
    kind: ClassVar[AttrKind] = AttrKind.INT


@dataclass(frozen=True)
class Bool:
    """Boolean flag."""
    value: bool
    kind: ClassVar[AttrKind] = AttrKind.BOOL

    def __post_init__(self) -> None:
        if not isinstance(self.value, bool):
            raise TypeError(f"Bool must be a bool, got {self.value!r}")


@dataclass(frozen=True)
class NeuronRef(_IntAttr):
    """Reference to a neuron by integer id (printed ``%n<id>``)."""
    kind: ClassVar[AttrKind] = AttrKind.NEURON_REF


@dataclass(frozen=True)
class Range:
    """Inclusive integer range ``start..end``.

    ``start <= end`` is checked by the verifier, not here, so that invalid
    programs can still be built, printed and diagnosed.
    """
    start: int
    end: int
    kind: ClassVar[AttrKind] = AttrKind.RANGE

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _as_int(self.start, "Range.start"))
        object.__setattr__(self, "end", _as_int(self.end, "Range.end"))

    def __len__(self) -> int:
        return max(0, self.end - self.start + 1)

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))


Attribute = Union[
    Duration, Time, Voltage, Resistance, Capacitance, Current, Rate,
    Weight, Range, NeuronRef, Float, Int, Bool,
]

# One concrete type per kind; consumers dispatch on this table.
ATTRIBUTE_TYPES: Dict[AttrKind, type] = {
    AttrKind.DURATION: Duration,
    AttrKind.TIME: Time,
    AttrKind.VOLTAGE: Voltage,
    AttrKind.RESISTANCE: Resistance,
    AttrKind.CAPACITANCE: Capacitance,
    AttrKind.CURRENT: Current,
    AttrKind.RATE: Rate,
    AttrKind.WEIGHT: Weight,
    AttrKind.RANGE: Range,
    AttrKind.NEURON_REF: NeuronRef,
    AttrKind.FLOAT: Float,
    AttrKind.INT: Int,
    AttrKind.BOOL: Bool,
}
assert set(ATTRIBUTE_TYPES) == set(AttrKind), "every AttrKind needs a value type"

_ATTRIBUTE_CLASSES = tuple(ATTRIBUTE_TYPES.values())


def is_attribute(value: Any) -> bool:
    return isinstance(value, _ATTRIBUTE_CLASSES)


# ---------------------------------------------------------------------------
# Operation and Module
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Operation:
    """One instance of a ``(dialect, name, version)`` schema.

    Attributes:
        dialect: Op grouping, e.g. ``neuron`` or ``connectivity``.
        name: Op name within the dialect (may contain dots).
        version: Schema version number (printed ``@vN``).
        attrs: Read-only name → Attribute mapping.
    """

    dialect: str
    name: str
    version: int
    attrs: Mapping[str, Attribute] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "version", _as_int(self.version, "version"))
        attrs = dict(self.attrs)
        for key, value in attrs.items():
            if not isinstance(key, str) or not key:
                raise TypeError(f"attribute names must be non-empty strings, got {key!r}")
            if not is_attribute(value):
                raise TypeError(
                    f"attribute '{key}' of {self.dialect}.{self.name} must be an "
                    f"Attribute, got {type(value).__name__}"
                )
        object.__setattr__(self, "attrs", MappingProxyType(attrs))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.dialect, self.name)

    @property
    def header(self) -> str:
        """Op header as printed: ``dialect.name@vN``."""
        return f"{self.dialect}.{self.name}@v{self.version}"

    def get(self, key: str) -> Optional[Attribute]:
        return self.attrs.get(key)

    def with_attr(self, key: str, value: Attribute) -> "Operation":
        attrs = dict(self.attrs)
        attrs[key] = value
        return replace(self, attrs=attrs)

    def with_version(self, version: int) -> "Operation":
        return replace(self, version=version, attrs=dict(self.attrs))

    def __repr__(self) -> str:
        return f"Operation({self.header}, attrs={dict(self.attrs)!r})"


class Module:
    """Ordered sequence of operations; the unit of compilation.

    The op list only grows through ``push``.  Passes never edit a Module in
    place: they build a new one from a whole replacement list.
    """

    def __init__(self, ops: Optional[Iterable[Operation]] = None):
        self._ops: List[Operation] = []
        for op in ops or ():
            self.push(op)

    def push(self, op: Operation) -> None:
        if not isinstance(op, Operation):
            raise TypeError(f"Module.push expects an Operation, got {type(op).__name__}")
        self._ops.append(op)

    @property
    def ops(self) -> Tuple[Operation, ...]:
        return tuple(self._ops)

    def count(self, dialect: str, name: str) -> int:
        return sum(1 for op in self._ops if op.key == (dialect, name))

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[Operation]:
        return iter(tuple(self._ops))

    def __getitem__(self, index: int) -> Operation:
        return self._ops[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Module):
            return NotImplemented
        return self._ops == other._ops

    def __repr__(self) -> str:
        return f"Module(ops={len(self._ops)})"

    def to_text(self, registry: Any = None) -> str:
        """Canonical textual form (see ``nir_text``)."""
        from nir_text import print_module
        return print_module(self, registry)

    @classmethod
    def parse_text(cls, text: str, registry: Any = None) -> "Module":
        from nir_text import parse_text
        return parse_text(text, registry)


# ---------------------------------------------------------------------------
# Convenience constructors (current schema versions)
# ---------------------------------------------------------------------------

def ms_to_ns(ms: float) -> int:
    """Convert milliseconds to integer nanoseconds (rounded)."""
    return int(round(ms * NS_PER_MS))


def lif_neuron(
    tau_m_ms: float = 20.0,
    v_rest_mv: float = -70.0,
    v_reset_mv: float = -70.0,
    v_thresh_mv: float = -50.0,
    t_refrac_ms: float = 2.0,
    r_m_mohm: float = 10.0,
    c_m_nf: float = 1.0,
    neurons: Optional[Tuple[int, int]] = None,
) -> Operation:
    """``neuron.lif@v1``.

    Without ``neurons`` the parameters become the network-wide default;
    with an inclusive ``(start, end)`` id range they apply to (and
    declare) exactly those neurons.
    """
    attrs: Dict[str, Attribute] = {
        "tau_m": Duration(ms_to_ns(tau_m_ms)),
        "v_rest": Voltage(v_rest_mv),
        "v_reset": Voltage(v_reset_mv),
        "v_thresh": Voltage(v_thresh_mv),
        "t_refrac": Duration(ms_to_ns(t_refrac_ms)),
        "r_m": Resistance(r_m_mohm),
        "c_m": Capacitance(c_m_nf),
    }
    if neurons is not None:
        attrs["neurons"] = Range(*neurons)
    return Operation(NEURON, "lif", 1, attrs)


def stdp_rule(
    a_plus: float = 0.01,
    a_minus: float = 0.012,
    tau_plus_ms: float = 20.0,
    tau_minus_ms: float = 20.0,
    w_min: float = 0.0,
    w_max: float = 1.0,
) -> Operation:
    """``plasticity.stdp@v1``."""
    return Operation(PLASTICITY, "stdp", 1, {
        "a_plus": Float(a_plus),
        "a_minus": Float(a_minus),
        "tau_plus": Duration(ms_to_ns(tau_plus_ms)),
        "tau_minus": Duration(ms_to_ns(tau_minus_ms)),
        "w_min": Weight(w_min),
        "w_max": Weight(w_max),
    })


def layer_fully_connected(
    in_start: int,
    in_end: int,
    out_start: int,
    out_end: int,
    weight: float,
    delay_ms: float,
) -> Operation:
    """``connectivity.layer_fully_connected@v1`` (aggregate, canonicalized away)."""
    return Operation(CONNECTIVITY, "layer_fully_connected", 1, {
        "in": Range(in_start, in_end),
        "out": Range(out_start, out_end),
        "weight": Weight(weight),
        "delay": Duration(ms_to_ns(delay_ms)),
    })


def synapse_connect(pre: int, post: int, weight: float, delay_ms: float) -> Operation:
    """``connectivity.synapse_connect@v1``."""
    return Operation(CONNECTIVITY, "synapse_connect", 1, {
        "pre": NeuronRef(pre),
        "post": NeuronRef(post),
        "weight": Weight(weight),
        "delay": Duration(ms_to_ns(delay_ms)),
    })


def stimulus_poisson(
    neuron: int,
    rate_hz: float,
    amplitude_na: float,
    start_ms: float,
    duration_ms: float,
) -> Operation:
    """``stimulus.poisson@v1``."""
    return Operation(STIMULUS, "poisson", 1, {
        "neuron": NeuronRef(neuron),
        "rate": Rate(rate_hz),
        "amplitude": Current(amplitude_na),
        "start": Time(ms_to_ns(start_ms)),
        "duration": Duration(ms_to_ns(duration_ms)),
    })


def simulate_run(
    dt_ms: float,
    duration_ms: float,
    record_potentials: bool = False,
    seed: Optional[int] = None,
) -> Operation:
    """``runtime.simulate.run@v1``."""
    attrs: Dict[str, Attribute] = {
        "dt": Duration(ms_to_ns(dt_ms)),
        "duration": Duration(ms_to_ns(duration_ms)),
        "record_potentials": Bool(record_potentials),
    }
    if seed is not None:
        attrs["seed"] = Int(seed)
    return Operation(RUNTIME, "simulate.run", 1, attrs)
