"""
NIR Text Format — canonical printer and strict parser.

One operation per line::

    neuron.lif@v1 { tau_m: 20000000 ns, v_rest: -70.0 mV, ... }
    connectivity.synapse_connect@v1 { pre: %n0, post: %n1, weight: 0.5, delay: 1000000 ns }
    runtime.simulate.run@v1 { dt: 100000 ns, duration: 1000000 ns, record_potentials: false }

Attributes are printed in schema order; floats use the shortest positional
form that reproduces the same value, so ``parse_text(print_module(m)) == m``
for every Module the registry accepts.  Blank lines and lines starting
with ``#`` are ignored when parsing.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from nir_errors import ParseError
from nir_ir import (
    ATTRIBUTE_TYPES,
    AttrKind,
    Attribute,
    Module,
    Operation,
)
from nir_registry import Registry, resolve_registry

logger = logging.getLogger("nir.text")

_UNIT = {
    AttrKind.VOLTAGE: "mV",
    AttrKind.RESISTANCE: "MΩ",
    AttrKind.CAPACITANCE: "nF",
    AttrKind.CURRENT: "nA",
    AttrKind.RATE: "Hz",
}


# ---------------------------------------------------------------------------
# Printing
# ---------------------------------------------------------------------------

def format_fixed(value: float) -> str:
    """Shortest positional decimal that parses back to ``value``."""
    return np.format_float_positional(value, unique=True, trim="0")


def _fmt_ns(a: Attribute) -> str:
    return f"{a.value} ns"


def _fmt_unit(a: Attribute) -> str:
    return f"{format_fixed(a.value)} {_UNIT[a.kind]}"


def _fmt_plain(a: Attribute) -> str:
    return format_fixed(a.value)


_FORMATTERS: Dict[AttrKind, Callable[[Attribute], str]] = {
    AttrKind.DURATION: _fmt_ns,
    AttrKind.TIME: _fmt_ns,
    AttrKind.VOLTAGE: _fmt_unit,
    AttrKind.RESISTANCE: _fmt_unit,
    AttrKind.CAPACITANCE: _fmt_unit,
    AttrKind.CURRENT: _fmt_unit,
    AttrKind.RATE: _fmt_unit,
    AttrKind.WEIGHT: _fmt_plain,
    AttrKind.FLOAT: _fmt_plain,
    AttrKind.RANGE: lambda a: f"{a.start}..{a.end}",
    AttrKind.NEURON_REF: lambda a: f"%n{a.value}",
    AttrKind.INT: lambda a: str(a.value),
    AttrKind.BOOL: lambda a: "true" if a.value else "false",
}
assert set(_FORMATTERS) == set(AttrKind), "printer must handle every AttrKind"


def format_attribute(value: Attribute) -> str:
    return _FORMATTERS[value.kind](value)


def _ordered_keys(op: Operation, registry: Registry) -> List[str]:
    schema = registry.lookup(op.dialect, op.name, op.version)
    schema_order = [n for n in schema.attr_names if n in op.attrs] if schema else []
    rest = sorted(k for k in op.attrs if k not in schema_order)
    return schema_order + rest


def print_operation(op: Operation, registry: Optional[Registry] = None) -> str:
    registry = resolve_registry(registry)
    keys = _ordered_keys(op, registry)
    if not keys:
        return f"{op.header} {{}}"
    body = ", ".join(f"{k}: {format_attribute(op.attrs[k])}" for k in keys)
    return f"{op.header} {{ {body} }}"


def print_module(module: Module, registry: Optional[Registry] = None) -> str:
    """Canonical text for ``module``: one line per op, newline-terminated."""
    return "".join(print_operation(op, registry) + "\n" for op in module)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_LINE_RE = re.compile(
    rf"^(?P<dialect>{_IDENT})\.(?P<name>{_IDENT}(?:\.{_IDENT})*)@v(?P<version>\d+)"
    r"\s*\{(?P<body>.*)\}$"
)
_KEY_RE = re.compile(rf"^{_IDENT}$")

_INT = r"-?\d+"
_FIXED = r"-?\d+\.\d+"
_INT_RE = re.compile(rf"^{_INT}$")
_FIXED_RE = re.compile(rf"^{_FIXED}$")
_NS_RE = re.compile(rf"^({_INT}) ns$")
_UNIT_RE = re.compile(rf"^({_FIXED}) (mV|MΩ|nF|nA|Hz)$")
_RANGE_RE = re.compile(rf"^({_INT})\.\.({_INT})$")
_REF_RE = re.compile(rf"^%n({_INT})$")


def _parse_ns(lit: str, kind: AttrKind) -> Optional[Attribute]:
    m = _NS_RE.match(lit)
    return ATTRIBUTE_TYPES[kind](int(m.group(1))) if m else None


def _parse_unit(lit: str, kind: AttrKind) -> Optional[Attribute]:
    m = _UNIT_RE.match(lit)
    if m and m.group(2) == _UNIT[kind]:
        return ATTRIBUTE_TYPES[kind](float(m.group(1)))
    return None


def _parse_plain(lit: str, kind: AttrKind) -> Optional[Attribute]:
    if _FIXED_RE.match(lit):
        return ATTRIBUTE_TYPES[kind](float(lit))
    return None


def _parse_range(lit: str, kind: AttrKind) -> Optional[Attribute]:
    m = _RANGE_RE.match(lit)
    return ATTRIBUTE_TYPES[kind](int(m.group(1)), int(m.group(2))) if m else None


def _parse_ref(lit: str, kind: AttrKind) -> Optional[Attribute]:
    m = _REF_RE.match(lit)
    return ATTRIBUTE_TYPES[kind](int(m.group(1))) if m else None


def _parse_int(lit: str, kind: AttrKind) -> Optional[Attribute]:
    return ATTRIBUTE_TYPES[kind](int(lit)) if _INT_RE.match(lit) else None


def _parse_bool(lit: str, kind: AttrKind) -> Optional[Attribute]:
    if lit in ("true", "false"):
        return ATTRIBUTE_TYPES[kind](lit == "true")
    return None


_PARSERS: Dict[AttrKind, Callable[[str, AttrKind], Optional[Attribute]]] = {
    AttrKind.DURATION: _parse_ns,
    AttrKind.TIME: _parse_ns,
    AttrKind.VOLTAGE: _parse_unit,
    AttrKind.RESISTANCE: _parse_unit,
    AttrKind.CAPACITANCE: _parse_unit,
    AttrKind.CURRENT: _parse_unit,
    AttrKind.RATE: _parse_unit,
    AttrKind.WEIGHT: _parse_plain,
    AttrKind.FLOAT: _parse_plain,
    AttrKind.RANGE: _parse_range,
    AttrKind.NEURON_REF: _parse_ref,
    AttrKind.INT: _parse_int,
    AttrKind.BOOL: _parse_bool,
}
assert set(_PARSERS) == set(AttrKind), "parser must handle every AttrKind"


def _literal_shape(lit: str) -> Optional[str]:
    """Describe a well-formed literal of some kind, or None if malformed."""
    if lit in ("true", "false"):
        return "bool"
    if _NS_RE.match(lit):
        return "ns duration"
    m = _UNIT_RE.match(lit)
    if m:
        return f"{m.group(2)} quantity"
    if _RANGE_RE.match(lit):
        return "range"
    if _REF_RE.match(lit):
        return "neuron reference"
    if _FIXED_RE.match(lit):
        return "unitless float"
    if _INT_RE.match(lit):
        return "integer"
    return None


def _parse_value(lit: str, kind: AttrKind, line: int) -> Attribute:
    try:
        value = _PARSERS[kind](lit, kind)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid {kind.value} literal: {exc}", line, lit) from None
    if value is not None:
        return value
    shape = _literal_shape(lit)
    if shape is not None:
        raise ParseError(f"expected {kind.value} literal, got {shape}", line, lit)
    if kind is AttrKind.RANGE or ".." in lit:
        raise ParseError("malformed range literal", line, lit)
    raise ParseError("malformed numeric literal", line, lit)


def _split_header(header_text: str, registry: Registry, line: int) -> Tuple[str, str, int]:
    m = _LINE_RE.match(header_text)
    if m is None:
        token = header_text.split("{", 1)[0].strip() or header_text
        raise ParseError("malformed operation header", line, token)
    dialect, name, version = m.group("dialect"), m.group("name"), int(m.group("version"))
    header = f"{dialect}.{name}@v{version}"
    if not registry.has_dialect(dialect):
        raise ParseError(f"unknown dialect '{dialect}'", line, header)
    if not registry.has_op(dialect, name):
        raise ParseError(f"unknown op '{dialect}.{name}'", line, header)
    if registry.lookup(dialect, name, version) is None:
        raise ParseError(f"unknown version v{version} of '{dialect}.{name}'", line, header)
    return dialect, name, version


def parse_operation(text: str, line: int = 1, registry: Optional[Registry] = None) -> Operation:
    """Parse a single op line."""
    registry = resolve_registry(registry)
    text = text.strip()
    dialect, name, version = _split_header(text, registry, line)
    schema = registry.lookup(dialect, name, version)
    body = _LINE_RE.match(text).group("body").strip()

    attrs: Dict[str, Attribute] = {}
    if body:
        for item in body.split(","):
            key, sep, lit = item.partition(":")
            key, lit = key.strip(), lit.strip()
            if not sep or not _KEY_RE.match(key) or not lit:
                raise ParseError("malformed attribute, expected 'key: value'", line, item.strip())
            if key in attrs:
                raise ParseError(f"duplicate attribute '{key}'", line, key)
            slot = schema.attr(key)
            if slot is None:
                raise ParseError(f"unknown attribute '{key}' for {schema.header}", line, key)
            attrs[key] = _parse_value(lit, slot.kind, line)

    for slot in schema.attrs:
        if slot.required and slot.name not in attrs:
            raise ParseError(f"missing required attribute '{slot.name}'", line, schema.header)

    return Operation(dialect, name, version, attrs)


def parse_text(text: str, registry: Optional[Registry] = None) -> Module:
    """Parse textual IR into a Module.

    Raises:
        ParseError: On the first malformed line; no partial Module is
            returned.
    """
    registry = resolve_registry(registry)
    ops: List[Operation] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        ops.append(parse_operation(stripped, lineno, registry))
    logger.debug("parsed %d ops", len(ops))
    return Module(ops)
