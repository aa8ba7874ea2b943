"""
NIR Op Registry — the single catalogue of operation schemas.

Every ``(dialect, name, version)`` the toolchain understands is described
here once.  The parser, verifier, passes and compiler all read the same
``Registry`` instance, so ``list_ops()`` is by construction what those
stages accept.

Schema Version History:
    neuron.lif          v0  legacy, no refractory period
                        v1  + t_refrac (default 2 ms), optional neurons range
    plasticity.stdp     v0  legacy, unbounded weights
                        v1  + w_min (default 0.0), w_max (default 1.0)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from nir_ir import (
    ATTRIBUTE_TYPES,
    AttrKind,
    Attribute,
    Duration,
    Weight,
    ms_to_ns,
)


@dataclass(frozen=True)
class AttributeSpec:
    """One attribute slot of an op schema.

    Attributes:
        name: Attribute key.
        kind: Required value kind.
        required: Whether the attribute must be present.
        doc: One-line description with units.
        default: Value inserted when upgrading an op from an older version
            that lacked this slot.  ``None`` means no default exists.
    """

    name: str
    kind: AttrKind
    required: bool
    doc: str
    default: Optional[Attribute] = None

    def __post_init__(self) -> None:
        if self.default is not None and not isinstance(
            self.default, ATTRIBUTE_TYPES[self.kind]
        ):
            raise TypeError(
                f"default for '{self.name}' must be {ATTRIBUTE_TYPES[self.kind].__name__}"
            )


@dataclass(frozen=True)
class OpSpec:
    """Schema for one version of one operation."""

    dialect: str
    name: str
    version: int
    attrs: Tuple[AttributeSpec, ...]
    doc: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.dialect, self.name)

    @property
    def header(self) -> str:
        return f"{self.dialect}.{self.name}@v{self.version}"

    @property
    def attr_names(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.attrs)

    def attr(self, name: str) -> Optional[AttributeSpec]:
        for a in self.attrs:
            if a.name == name:
                return a
        return None


class Registry:
    """Read-only index of ``OpSpec`` entries."""

    def __init__(self, specs: Iterable[OpSpec]):
        self._specs: Tuple[OpSpec, ...] = tuple(specs)
        self._index: Dict[Tuple[str, str, int], OpSpec] = {}
        self._versions: Dict[Tuple[str, str], List[int]] = {}
        for schema in self._specs:
            ident = (schema.dialect, schema.name, schema.version)
            if ident in self._index:
                raise ValueError(f"duplicate op schema {schema.header}")
            names = schema.attr_names
            if len(set(names)) != len(names):
                raise ValueError(f"duplicate attribute in schema {schema.header}")
            self._index[ident] = schema
            self._versions.setdefault(schema.key, []).append(schema.version)
        for versions in self._versions.values():
            versions.sort()

    # -- lookups -----------------------------------------------------------

    def lookup(self, dialect: str, name: str, version: int) -> Optional[OpSpec]:
        return self._index.get((dialect, name, version))

    def versions(self, dialect: str, name: str) -> Tuple[int, ...]:
        return tuple(self._versions.get((dialect, name), ()))

    def current_version(self, dialect: str, name: str) -> Optional[int]:
        """Highest registered version of ``dialect.name``, or None."""
        versions = self._versions.get((dialect, name))
        return versions[-1] if versions else None

    def current(self, dialect: str, name: str) -> Optional[OpSpec]:
        version = self.current_version(dialect, name)
        if version is None:
            return None
        return self._index[(dialect, name, version)]

    def has_dialect(self, dialect: str) -> bool:
        return any(d == dialect for d, _ in self._versions)

    def has_op(self, dialect: str, name: str) -> bool:
        return (dialect, name) in self._versions

    def dialects(self) -> Tuple[str, ...]:
        return tuple(sorted({d for d, _ in self._versions}))

    def list_ops(self) -> Tuple[OpSpec, ...]:
        """Every registered schema, all versions, in registration order."""
        return self._specs

    def __iter__(self) -> Iterator[OpSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def describe(self) -> str:
        """Human-readable listing of the catalogue."""
        lines: List[str] = []
        for schema in self._specs:
            current = self.current_version(schema.dialect, schema.name)
            tag = "" if schema.version == current else "  (legacy)"
            lines.append(f"{schema.header}{tag}")
            if schema.doc:
                lines.append(f"    {schema.doc}")
            for a in schema.attrs:
                flag = "required" if a.required else "optional"
                lines.append(f"    {a.name:<18} {a.kind.value:<12} {flag:<9} {a.doc}")
        return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Built-in catalogue
# ---------------------------------------------------------------------------

def _a(
    name: str,
    kind: AttrKind,
    doc: str,
    required: bool = True,
    default: Optional[Attribute] = None,
) -> AttributeSpec:
    return AttributeSpec(name, kind, required, doc, default)


_LIF_V0 = (
    _a("tau_m", AttrKind.DURATION, "Membrane time constant (ns)"),
    _a("v_rest", AttrKind.VOLTAGE, "Resting potential (mV)"),
    _a("v_reset", AttrKind.VOLTAGE, "Reset potential (mV)"),
    _a("v_thresh", AttrKind.VOLTAGE, "Threshold potential (mV)"),
    _a("r_m", AttrKind.RESISTANCE, "Membrane resistance (MΩ)"),
    _a("c_m", AttrKind.CAPACITANCE, "Capacitance (nF)"),
)

_LIF_V1 = _LIF_V0[:4] + (
    _a("t_refrac", AttrKind.DURATION, "Refractory period (ns)",
       default=Duration(ms_to_ns(2.0))),
) + _LIF_V0[4:] + (
    _a("neurons", AttrKind.RANGE,
       "Inclusive neuron id range these parameters apply to "
       "(absent: network-wide default)", required=False),
)

_STDP_V0 = (
    _a("a_plus", AttrKind.FLOAT, "Potentiation amplitude"),
    _a("a_minus", AttrKind.FLOAT, "Depression amplitude"),
    _a("tau_plus", AttrKind.DURATION, "Potentiation time constant (ns)"),
    _a("tau_minus", AttrKind.DURATION, "Depression time constant (ns)"),
)

_STDP_V1 = _STDP_V0 + (
    _a("w_min", AttrKind.WEIGHT, "Minimum weight", default=Weight(0.0)),
    _a("w_max", AttrKind.WEIGHT, "Maximum weight", default=Weight(1.0)),
)

BUILTIN_OPS: Tuple[OpSpec, ...] = (
    OpSpec("neuron", "lif", 0, _LIF_V0, "Leaky integrate-and-fire neuron (legacy)"),
    OpSpec("neuron", "lif", 1, _LIF_V1, "Leaky integrate-and-fire neuron"),
    OpSpec("plasticity", "stdp", 0, _STDP_V0, "Pair-based STDP rule (legacy)"),
    OpSpec("plasticity", "stdp", 1, _STDP_V1, "Pair-based STDP rule with weight bounds"),
    OpSpec("connectivity", "layer_fully_connected", 1, (
        _a("in", AttrKind.RANGE, "Inclusive input neuron range"),
        _a("out", AttrKind.RANGE, "Inclusive output neuron range"),
        _a("weight", AttrKind.WEIGHT, "Initial weight (unitless)"),
        _a("delay", AttrKind.DURATION, "Synaptic delay (ns)"),
    ), "All-to-all projection between two id ranges"),
    OpSpec("connectivity", "synapse_connect", 1, (
        _a("pre", AttrKind.NEURON_REF, "Pre-synaptic neuron id"),
        _a("post", AttrKind.NEURON_REF, "Post-synaptic neuron id"),
        _a("weight", AttrKind.WEIGHT, "Synaptic weight (unitless)"),
        _a("delay", AttrKind.DURATION, "Synaptic delay (ns)"),
    ), "Single directed synapse"),
    OpSpec("stimulus", "poisson", 1, (
        _a("neuron", AttrKind.NEURON_REF, "Target neuron id"),
        _a("rate", AttrKind.RATE, "Firing rate (Hz)"),
        _a("amplitude", AttrKind.CURRENT, "Current per spike (nA)"),
        _a("start", AttrKind.TIME, "Start time (ns)"),
        _a("duration", AttrKind.DURATION, "Duration (ns)"),
    ), "Poisson spike source injecting current into one neuron"),
    OpSpec("runtime", "simulate.run", 1, (
        _a("dt", AttrKind.DURATION, "Timestep (ns)"),
        _a("duration", AttrKind.DURATION, "Total duration (ns)"),
        _a("record_potentials", AttrKind.BOOL, "Record membrane potentials"),
        _a("seed", AttrKind.INT, "Optional RNG seed", required=False),
    ), "Fixed-step simulation horizon"),
)

DEFAULT_REGISTRY = Registry(BUILTIN_OPS)


def resolve_registry(registry: Optional[Registry]) -> Registry:
    return DEFAULT_REGISTRY if registry is None else registry


def list_ops(registry: Optional[Registry] = None) -> Tuple[OpSpec, ...]:
    """Op catalogue for tooling; the same entries every stage consults."""
    return resolve_registry(registry).list_ops()
