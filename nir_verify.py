"""
NIR Verifier — fail-fast semantic checks on a Module.

Operations are checked in append order.  Within one op the checks run as:
known schema, no unknown attributes, required attributes present, kinds
match, then the numeric rules in schema order.  The first violation is
raised as a ``VerifyError``; verification never mutates the Module.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from nir_errors import VerifyError
from nir_ir import (
    LAYER_FULLY_CONNECTED,
    LIF,
    POISSON,
    SIMULATE_RUN,
    STDP,
    SYNAPSE_CONNECT,
    Attribute,
    Module,
    Operation,
)
from nir_registry import Registry, resolve_registry

logger = logging.getLogger("nir.verify")

# (reported attribute, attributes read, predicate, message).  A rule is
# skipped when any attribute it reads is absent.
Rule = Tuple[str, Tuple[str, ...], Callable[..., bool], str]


def _gt0(attr: str, unit: str = "") -> Rule:
    return (attr, (attr,), lambda a: a.value > 0, f"'{attr}' must be > 0{unit}")


def _ge0(attr: str, unit: str = "") -> Rule:
    return (attr, (attr,), lambda a: a.value >= 0, f"'{attr}' must be >= 0{unit}")


def _range_rules(attr: str) -> List[Rule]:
    return [
        (attr, (attr,), lambda r: r.start <= r.end,
         f"'{attr}' range must satisfy start <= end"),
        (attr, (attr,), lambda r: r.start >= 0 and r.end >= 0,
         f"'{attr}' range ids must be >= 0"),
    ]


RULES: Dict[Tuple[str, str], List[Rule]] = {
    LIF: [
        _gt0("tau_m", " ns"),
        ("v_thresh", ("v_thresh", "v_rest"), lambda th, rest: th.value > rest.value,
         "'v_thresh' must be > v_rest"),
        _ge0("t_refrac", " ns"),
        _gt0("r_m", " MΩ"),
        _gt0("c_m", " nF"),
        *_range_rules("neurons"),
    ],
    STDP: [
        _ge0("a_plus"),
        _ge0("a_minus"),
        _gt0("tau_plus", " ns"),
        _gt0("tau_minus", " ns"),
        ("w_min", ("w_min", "w_max"), lambda lo, hi: lo.value <= hi.value,
         "'w_min' must be <= w_max"),
    ],
    LAYER_FULLY_CONNECTED: [
        *_range_rules("in"),
        *_range_rules("out"),
        _ge0("delay", " ns"),
    ],
    SYNAPSE_CONNECT: [
        _ge0("pre"),
        _ge0("post"),
        _ge0("delay", " ns"),
    ],
    POISSON: [
        _ge0("neuron"),
        _ge0("rate", " Hz"),
        _ge0("amplitude", " nA"),
        _ge0("start", " ns"),
        _ge0("duration", " ns"),
    ],
    SIMULATE_RUN: [
        ("dt", ("dt",), lambda a: a.value > 0, "'dt' must be > 0"),
        ("duration", ("duration",), lambda a: a.value > 0, "'duration' must be > 0"),
        ("duration", ("duration", "dt"), lambda d, dt: d.value >= dt.value,
         "'duration' must be >= dt"),
        _ge0("seed"),
    ],
}


def _check_rules(op: Operation, index: int, attrs: Mapping[str, Attribute]) -> None:
    for attr, reads, predicate, message in RULES.get(op.key, ()):
        if not all(name in attrs for name in reads):
            continue
        if not predicate(*(attrs[name] for name in reads)):
            raise VerifyError(index, op.header, message, attr)


def verify_operation(op: Operation, index: int = 0, registry: Optional[Registry] = None) -> None:
    """Check one op against its schema and numeric rules."""
    registry = resolve_registry(registry)
    schema = registry.lookup(op.dialect, op.name, op.version)
    if schema is None:
        raise VerifyError(index, op.header, "unknown operation schema")

    for key in op.attrs:
        if schema.attr(key) is None:
            raise VerifyError(index, op.header, f"unknown attribute '{key}'", key)

    for slot in schema.attrs:
        if slot.required and slot.name not in op.attrs:
            raise VerifyError(index, op.header, f"missing required attribute '{slot.name}'", slot.name)

    for slot in schema.attrs:
        value = op.attrs.get(slot.name)
        if value is not None and value.kind is not slot.kind:
            raise VerifyError(
                index, op.header,
                f"'{slot.name}' must be {slot.kind.value}, got {value.kind.value}",
                slot.name,
            )

    _check_rules(op, index, op.attrs)


def verify_module(module: Module, registry: Optional[Registry] = None) -> None:
    """Verify every op in append order.

    Raises:
        VerifyError: The first violation found.
    """
    registry = resolve_registry(registry)
    for index, op in enumerate(module):
        verify_operation(op, index, registry)
    logger.debug("verified %d ops", len(module))
