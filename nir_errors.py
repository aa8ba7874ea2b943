"""
NIR error taxonomy.

Every stage of the toolchain reports expected invalid input by raising one
of these exceptions instead of aborting the process:

    ParseError       malformed text (never raised for built Modules)
    VerifyError      violated numeric/structural precondition
    PassError        a rewrite pass cannot complete
    CompileError     structural fault visible only after canonicalization
    SimulationError  non-finite state or hard resource limit during a run
"""

from __future__ import annotations

from typing import Optional


class NIRError(Exception):
    """Base class for all toolchain errors."""

    stage = "nir"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(NIRError):
    """Malformed textual IR.

    Attributes:
        line: 1-based line number of the offending operation.
        token: The offending token (header, attribute key or literal).
    """

    stage = "parse"

    def __init__(self, message: str, line: int, token: Optional[str] = None):
        where = f"line {line}"
        if token is not None:
            where += f" near '{token}'"
        super().__init__(f"{where}: {message}")
        self.line = line
        self.token = token


class VerifyError(NIRError):
    """First violated constraint found by the verifier."""

    stage = "verify"

    def __init__(
        self,
        op_index: int,
        header: str,
        rule: str,
        attr: Optional[str] = None,
    ):
        super().__init__(f"op #{op_index} {header}: {rule}")
        self.op_index = op_index
        self.header = header
        self.attr = attr
        self.rule = rule


class PassError(NIRError):
    """A pass could not rewrite the module."""

    stage = "pass"

    def __init__(self, pass_name: str, message: str, op_index: Optional[int] = None):
        where = f"pass '{pass_name}'"
        if op_index is not None:
            where += f" at op #{op_index}"
        super().__init__(f"{where}: {message}")
        self.pass_name = pass_name
        self.op_index = op_index


class CompileError(NIRError):
    """Lowering failed on a structurally invalid module."""

    stage = "compile"

    def __init__(self, message: str, op_index: Optional[int] = None):
        if op_index is not None:
            message = f"op #{op_index}: {message}"
        super().__init__(message)
        self.op_index = op_index


class SimulationError(NIRError, RuntimeError):
    """Run aborted: non-finite membrane state or a hard resource limit."""

    stage = "runtime"

    def __init__(
        self,
        message: str,
        step: Optional[int] = None,
        neuron_id: Optional[int] = None,
    ):
        parts = []
        if step is not None:
            parts.append(f"step {step}")
        if neuron_id is not None:
            parts.append(f"neuron {neuron_id}")
        if parts:
            message = f"{', '.join(parts)}: {message}"
        super().__init__(message)
        self.step = step
        self.neuron_id = neuron_id
