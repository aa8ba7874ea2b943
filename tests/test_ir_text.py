"""Tests for the IR data model and the canonical text format.

Covers:
- Attribute construction (int/float coercion, non-finite rejection)
- Operation immutability and headers
- Convenience constructors (ms → ns)
- print → parse round-trip
- ParseError cases with line/token reporting
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from nir_errors import NIRError, ParseError
from nir_ir import (
    Bool,
    Duration,
    Float,
    Int,
    Module,
    NeuronRef,
    Operation,
    Range,
    Voltage,
    Weight,
    layer_fully_connected,
    lif_neuron,
    ms_to_ns,
    simulate_run,
    stdp_rule,
    stimulus_poisson,
    synapse_connect,
)
from nir_text import format_fixed, parse_text, print_module, print_operation


LIF_LINE = (
    "neuron.lif@v1 { tau_m: 20000000 ns, v_rest: -70.0 mV, v_reset: -70.0 mV, "
    "v_thresh: -50.0 mV, t_refrac: 2000000 ns, r_m: 10.0 MΩ, c_m: 1.0 nF }"
)
SIM_LINE = (
    "runtime.simulate.run@v1 { dt: 100000 ns, duration: 1000000 ns, "
    "record_potentials: false }"
)


def full_module() -> Module:
    m = Module()
    m.push(lif_neuron())
    m.push(lif_neuron(v_thresh_mv=-55.5, neurons=(4, 7)))
    m.push(stdp_rule())
    m.push(layer_fully_connected(0, 1, 2, 3, 0.3, 1.0))
    m.push(synapse_connect(3, 0, 1.0 / 3.0, 0.25))
    m.push(stimulus_poisson(0, 12.5, 2.0, 0.0, 1.0))
    m.push(simulate_run(0.1, 1.0, record_potentials=True, seed=7))
    return m


class TestAttributes:
    def test_int_kinds_reject_bool_and_fraction(self):
        with pytest.raises(TypeError):
            Duration(True)
        with pytest.raises(TypeError):
            Duration(1.5)

    def test_float_kinds_reject_non_finite(self):
        with pytest.raises(ValueError):
            Voltage(float("nan"))
        with pytest.raises(ValueError):
            Weight(math.inf)

    def test_float_kinds_coerce_ints(self):
        assert Voltage(-70).value == -70.0
        assert isinstance(Voltage(-70).value, float)

    def test_bool_requires_bool(self):
        with pytest.raises(TypeError):
            Bool(1)

    def test_range_iterates_inclusive(self):
        assert list(Range(2, 4)) == [2, 3, 4]
        assert len(Range(2, 4)) == 3
        assert len(Range(4, 2)) == 0

    def test_inverted_range_constructs(self):
        """Range ordering is a verifier concern, not a construction one."""
        r = Range(5, 1)
        assert (r.start, r.end) == (5, 1)


class TestOperation:
    def test_header_with_dotted_name(self):
        op = simulate_run(0.1, 1.0)
        assert op.header == "runtime.simulate.run@v1"
        assert op.key == ("runtime", "simulate.run")

    def test_attrs_read_only(self):
        op = lif_neuron()
        with pytest.raises(TypeError):
            op.attrs["tau_m"] = Duration(1)

    def test_with_attr_returns_copy(self):
        op = lif_neuron()
        changed = op.with_attr("tau_m", Duration(5))
        assert changed.attrs["tau_m"] == Duration(5)
        assert op.attrs["tau_m"] == Duration(20_000_000)

    def test_non_attribute_value_rejected(self):
        with pytest.raises(TypeError):
            Operation("neuron", "lif", 1, {"tau_m": 20})

    def test_module_push_and_equality(self):
        a = Module([lif_neuron()])
        b = Module()
        b.push(lif_neuron())
        assert a == b
        assert len(a) == 1
        assert a.count("neuron", "lif") == 1


class TestConstructors:
    def test_ms_to_ns_rounds(self):
        assert ms_to_ns(0.1) == 100_000
        assert ms_to_ns(0.3) == 300_000
        assert ms_to_ns(20.0) == 20_000_000

    def test_lif_defaults(self):
        op = lif_neuron()
        assert op.attrs["tau_m"] == Duration(20_000_000)
        assert op.attrs["t_refrac"] == Duration(2_000_000)
        assert "neurons" not in op.attrs

    def test_lif_with_range(self):
        op = lif_neuron(neurons=(0, 9))
        assert op.attrs["neurons"] == Range(0, 9)

    def test_simulate_run_optional_seed(self):
        assert "seed" not in simulate_run(0.1, 1.0).attrs
        assert simulate_run(0.1, 1.0, seed=3).attrs["seed"] == Int(3)

    def test_synapse_connect(self):
        op = synapse_connect(0, 1, 0.5, 1.0)
        assert op.attrs["pre"] == NeuronRef(0)
        assert op.attrs["delay"] == Duration(1_000_000)


class TestPrinting:
    def test_lif_line(self):
        assert print_operation(lif_neuron()) == LIF_LINE

    def test_simulate_line(self):
        assert print_operation(simulate_run(0.1, 1.0)) == SIM_LINE

    def test_schema_order_independent_of_insertion(self):
        op = lif_neuron()
        shuffled = Operation("neuron", "lif", 1, dict(reversed(list(op.attrs.items()))))
        assert print_operation(shuffled) == LIF_LINE

    def test_empty_attrs(self):
        assert print_operation(Operation("custom", "noop", 1)) == "custom.noop@v1 {}"

    def test_neuron_ref_and_range_literals(self):
        line = print_operation(layer_fully_connected(0, 3, 4, 5, 0.5, 0.0))
        assert "in: 0..3" in line
        assert "out: 4..5" in line
        line = print_operation(synapse_connect(2, 9, 0.5, 0.0))
        assert "pre: %n2" in line

    def test_fixed_format_is_positional(self):
        assert format_fixed(0.1) == "0.1"
        assert format_fixed(1.0) == "1.0"
        assert format_fixed(1e-7) == "0.0000001"
        assert "e" not in format_fixed(1e22)

    def test_module_text_is_newline_terminated(self):
        text = print_module(Module([lif_neuron(), simulate_run(0.1, 1.0)]))
        assert text == LIF_LINE + "\n" + SIM_LINE + "\n"


class TestRoundTrip:
    def test_full_module_round_trips(self):
        m = full_module()
        assert Module.parse_text(m.to_text()) == m

    def test_text_is_stable(self):
        text = full_module().to_text()
        assert parse_text(text).to_text() == text

    def test_awkward_floats_round_trip(self):
        for w in (1.0 / 3.0, 0.1 + 0.2, -0.0, 123456789.125, 5e-324):
            m = Module([synapse_connect(0, 1, w, 0.0), simulate_run(0.1, 1.0)])
            parsed = Module.parse_text(m.to_text())
            assert parsed[0].attrs["weight"].value == w

    def test_legacy_version_round_trips(self):
        lif = lif_neuron()
        attrs = {k: v for k, v in lif.attrs.items() if k != "t_refrac"}
        m = Module([Operation("neuron", "lif", 0, attrs)])
        assert Module.parse_text(m.to_text()) == m

    def test_comments_and_blank_lines_ignored(self):
        text = "# network\n\n" + LIF_LINE + "\n   \n# run\n" + SIM_LINE + "\n"
        m = parse_text(text)
        assert len(m) == 2
        assert m[1].header == "runtime.simulate.run@v1"

    def test_whitespace_tolerated(self):
        text = "runtime.simulate.run@v1{dt:100000 ns,duration:  1000000 ns , record_potentials: true}"
        op = parse_text(text)[0]
        assert op.attrs["record_potentials"] == Bool(True)


class TestParseErrors:
    def _err(self, text):
        with pytest.raises(ParseError) as exc_info:
            parse_text(text)
        return exc_info.value

    def test_is_nir_error(self):
        assert issubclass(ParseError, NIRError)

    def test_malformed_header(self):
        err = self._err("neuron lif v1 { }")
        assert err.line == 1
        assert "malformed operation header" in str(err)

    def test_missing_braces(self):
        err = self._err("neuron.lif@v1 tau_m: 1 ns")
        assert "malformed operation header" in str(err)

    def test_unknown_dialect(self):
        err = self._err("synth.lif@v1 {}")
        assert "unknown dialect 'synth'" in str(err)

    def test_unknown_op_name(self):
        err = self._err("neuron.izhikevich@v1 {}")
        assert "unknown op 'neuron.izhikevich'" in str(err)

    def test_unknown_version(self):
        err = self._err(LIF_LINE.replace("@v1", "@v9"))
        assert "unknown version v9" in str(err)

    def test_duplicate_attribute(self):
        err = self._err(SIM_LINE.replace("dt: 100000 ns,", "dt: 100000 ns, dt: 100000 ns,"))
        assert "duplicate attribute 'dt'" in str(err)
        assert err.token == "dt"

    def test_unknown_attribute(self):
        err = self._err(SIM_LINE.replace(" }", ", speed: 1.0 }"))
        assert "unknown attribute 'speed'" in str(err)

    def test_missing_required_attribute(self):
        err = self._err("runtime.simulate.run@v1 { dt: 100000 ns, duration: 1000000 ns }")
        assert "missing required attribute 'record_potentials'" in str(err)

    def test_wrong_kind(self):
        err = self._err(LIF_LINE.replace("tau_m: 20000000 ns", "tau_m: 20.0 mV"))
        assert "expected duration literal" in str(err)
        assert err.token == "20.0 mV"

    def test_wrong_unit(self):
        err = self._err(LIF_LINE.replace("r_m: 10.0 MΩ", "r_m: 10.0 nF"))
        assert "expected resistance literal" in str(err)

    def test_integer_where_fixed_required(self):
        line = print_operation(synapse_connect(0, 1, 0.5, 1.0)).replace("weight: 0.5", "weight: 1")
        err = self._err(line)
        assert "expected weight literal" in str(err)

    def test_malformed_numeric_literal(self):
        err = self._err(LIF_LINE.replace("tau_m: 20000000 ns", "tau_m: 2e7 ns"))
        assert "malformed numeric literal" in str(err)

    def test_malformed_range(self):
        line = print_operation(layer_fully_connected(0, 3, 4, 5, 0.5, 0.0)).replace("0..3", "0..")
        err = self._err(line)
        assert "malformed range" in str(err)

    def test_malformed_attribute_item(self):
        err = self._err(SIM_LINE.replace(" }", ", }"))
        assert "malformed attribute" in str(err)

    def test_line_number_counts_comments_and_blanks(self):
        err = self._err("# header\n\n" + LIF_LINE + "\nbogus line\n")
        assert err.line == 4
        assert str(err).startswith("line 4")

    def test_no_partial_module(self):
        with pytest.raises(ParseError):
            Module.parse_text(LIF_LINE + "\n" + "neuron.lif@v2 {}\n")
