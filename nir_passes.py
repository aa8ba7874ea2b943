"""
NIR Pass Pipeline — Module → Module rewrites run before compilation.

A pass is a named function ``fn(module, registry) -> Module``.  Passes never
mutate their input; each returns a fresh Module built from a whole
replacement op list.

Built-in passes (``DEFAULT_PASSES`` order):
    canonicalize      expand connectivity.layer_fully_connected into one
                      connectivity.synapse_connect per (pre, post) pair,
                      pre-major, at the aggregate's position
    upgrade_versions  rewrite ops tagged with an older schema version to
                      the registry's current version, one version step at
                      a time, inserting each newer schema's documented
                      defaults

Usage::

    from nir_passes import PassManager

    upgraded = PassManager().run(module)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from nir_errors import NIRError, PassError
from nir_ir import (
    CONNECTIVITY,
    LAYER_FULLY_CONNECTED,
    AttrKind,
    Attribute,
    Module,
    NeuronRef,
    Operation,
)
from nir_registry import OpSpec, Registry, resolve_registry

logger = logging.getLogger("nir.passes")

PassFn = Callable[[Module, Registry], Module]


@dataclass(frozen=True)
class Pass:
    """Named Module → Module rewrite."""

    name: str
    fn: PassFn

    def __call__(self, module: Module, registry: Registry) -> Module:
        return self.fn(module, registry)


# ======================================================================
# Canonicalize
# ======================================================================

def _require(op: Operation, index: int, key: str, kind: AttrKind, pass_name: str) -> Attribute:
    value = op.attrs.get(key)
    if value is None:
        raise PassError(pass_name, f"{op.header} missing '{key}'", index)
    if value.kind is not kind:
        raise PassError(
            pass_name,
            f"{op.header} '{key}' must be {kind.value}, got {value.kind.value}",
            index,
        )
    return value


def expand_layer(op: Operation, index: int, registry: Registry) -> List[Operation]:
    """All-to-all expansion of one ``layer_fully_connected`` op (pre-major)."""
    in_range = _require(op, index, "in", AttrKind.RANGE, "canonicalize")
    out_range = _require(op, index, "out", AttrKind.RANGE, "canonicalize")
    weight = _require(op, index, "weight", AttrKind.WEIGHT, "canonicalize")
    delay = _require(op, index, "delay", AttrKind.DURATION, "canonicalize")

    version = registry.current_version(CONNECTIVITY, "synapse_connect")
    if version is None:
        raise PassError("canonicalize", "registry has no connectivity.synapse_connect", index)

    return [
        Operation(CONNECTIVITY, "synapse_connect", version, {
            "pre": NeuronRef(pre),
            "post": NeuronRef(post),
            "weight": weight,
            "delay": delay,
        })
        for pre in in_range
        for post in out_range
    ]


def canonicalize(module: Module, registry: Registry) -> Module:
    ops: List[Operation] = []
    expanded = 0
    for index, op in enumerate(module):
        if op.key == LAYER_FULLY_CONNECTED:
            synapses = expand_layer(op, index, registry)
            ops.extend(synapses)
            expanded += 1
            logger.debug("op #%d %s -> %d synapses", index, op.header, len(synapses))
        else:
            ops.append(op)
    if expanded:
        logger.debug("canonicalize expanded %d layer ops", expanded)
    return Module(ops)


# ======================================================================
# UpgradeVersions
# ======================================================================

def plan_upgrade(
    registry: Registry, dialect: str, name: str, from_version: int
) -> List[Tuple[int, int]]:
    """Determine the version steps from ``from_version`` to current.

    Returns:
        List of (from_ver, to_ver) pairs, empty when already current.

    Raises:
        ValueError: If ``from_version`` is not a registered schema.
    """
    versions = registry.versions(dialect, name)
    if from_version not in versions:
        raise ValueError(f"no schema {dialect}.{name}@v{from_version}")
    later = [v for v in versions if v > from_version]
    steps = []
    current = from_version
    for v in later:
        steps.append((current, v))
        current = v
    return steps


def _upgrade_step(op: Operation, index: int, target: OpSpec) -> Operation:
    attrs: Dict[str, Attribute] = dict(op.attrs)
    for slot in target.attrs:
        if slot.name in attrs:
            continue
        if slot.default is not None:
            attrs[slot.name] = slot.default
        elif slot.required:
            raise PassError(
                "upgrade_versions",
                f"cannot upgrade {op.header} to v{target.version}: "
                f"required attribute '{slot.name}' is missing and has no default",
                index,
            )
    return Operation(op.dialect, op.name, target.version, attrs)


def upgrade_versions(module: Module, registry: Registry) -> Module:
    ops: List[Operation] = []
    upgraded = 0
    for index, op in enumerate(module):
        try:
            steps = plan_upgrade(registry, op.dialect, op.name, op.version)
        except ValueError as exc:
            raise PassError("upgrade_versions", str(exc), index) from exc
        for _, to_version in steps:
            op = _upgrade_step(op, index, registry.lookup(op.dialect, op.name, to_version))
        if steps:
            upgraded += 1
        ops.append(op)
    if upgraded:
        logger.debug("upgrade_versions rewrote %d ops", upgraded)
    return Module(ops)


CANONICALIZE = Pass("canonicalize", canonicalize)
UPGRADE_VERSIONS = Pass("upgrade_versions", upgrade_versions)

DEFAULT_PASSES: Tuple[Pass, ...] = (CANONICALIZE, UPGRADE_VERSIONS)


# ======================================================================
# Pipeline
# ======================================================================

class PassManager:
    """Runs an ordered list of passes, stopping at the first failure."""

    def __init__(
        self,
        passes: Sequence[Pass] = DEFAULT_PASSES,
        registry: Optional[Registry] = None,
    ) -> None:
        self.passes: Tuple[Pass, ...] = tuple(passes)
        self.registry = resolve_registry(registry)

    def run(self, module: Module) -> Module:
        """Apply every pass in order.

        Raises:
            PassError: Tagged with the name of the failing pass.
        """
        for p in self.passes:
            before = len(module)
            try:
                module = p(module, self.registry)
            except PassError:
                raise
            except (NIRError, ValueError, TypeError, KeyError) as exc:
                raise PassError(p.name, str(exc)) from exc
            logger.debug("pass %s: %d -> %d ops", p.name, before, len(module))
        return module


def run_passes(
    module: Module,
    passes: Sequence[Pass] = DEFAULT_PASSES,
    registry: Optional[Registry] = None,
) -> Module:
    return PassManager(passes, registry).run(module)
