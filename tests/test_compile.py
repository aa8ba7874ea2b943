"""Tests for lowering Modules to Programs."""

import json
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from nir_compile import Program, compile_module, compile_with_passes
from nir_config import CompilerConfig, load_nir_config
from nir_errors import CompileError, VerifyError
from nir_ir import (
    Module,
    NeuronRef,
    Operation,
    layer_fully_connected,
    lif_neuron,
    simulate_run,
    stdp_rule,
    stimulus_poisson,
    synapse_connect,
)
from nir_verify import verify_module
from snn_runtime import DEFAULT_NEURON_PARAMS, STDPRule

EXAMPLE_TEXT = """\
# two-layer feed-forward network
neuron.lif@v1 { tau_m: 20000000 ns, v_rest: -70.0 mV, v_reset: -70.0 mV, v_thresh: -50.0 mV, t_refrac: 2000000 ns, r_m: 10.0 MΩ, c_m: 1.0 nF }
plasticity.stdp@v1 { a_plus: 0.01, a_minus: 0.012, tau_plus: 20000000 ns, tau_minus: 20000000 ns, w_min: 0.0, w_max: 1.0 }
connectivity.layer_fully_connected@v1 { in: 0..1, out: 2..3, weight: 0.5, delay: 1000000 ns }
stimulus.poisson@v1 { neuron: %n0, rate: 200.0 Hz, amplitude: 50.0 nA, start: 0 ns, duration: 1000000 ns }
runtime.simulate.run@v1 { dt: 100000 ns, duration: 1000000 ns, record_potentials: true, seed: 42 }
"""


def basic_module() -> Module:
    return Module([
        lif_neuron(),
        layer_fully_connected(0, 1, 2, 3, 0.5, 1.0),
        simulate_run(0.1, 1.0, seed=1),
    ])


class TestEndToEnd:
    def test_text_to_program(self):
        program = compile_with_passes(Module.parse_text(EXAMPLE_TEXT))
        assert isinstance(program, Program)
        assert program.network.num_neurons == 4
        assert program.network.num_synapses == 4
        assert isinstance(program.network.plasticity, STDPRule)
        assert program.num_steps == 10

    def test_run_executes_horizon(self):
        result = compile_with_passes(Module.parse_text(EXAMPLE_TEXT)).run()
        assert result.steps_executed == 10
        assert result.potentials.shape == (10, 4)

    def test_compile_with_passes_verifies_first(self):
        m = basic_module()
        m.push(lif_neuron(tau_m_ms=0.0, neurons=(0, 0)))
        with pytest.raises(VerifyError):
            compile_with_passes(m)

    def test_simulation_params(self):
        program = compile_with_passes(basic_module())
        assert program.params.dt_ns == 100_000
        assert program.params.duration_ns == 1_000_000
        assert program.params.seed == 1
        assert program.params.record_potentials is False


def single_neuron_module() -> Module:
    """One lif, one stdp, a 0..0 → 0..0 layer, one poisson source, 1 ms at 0.1 ms."""
    return Module([
        lif_neuron(),
        stdp_rule(),
        layer_fully_connected(0, 0, 0, 0, 0.5, 1.0),
        stimulus_poisson(0, 500.0, 50.0, 0.0, 1.0),
        simulate_run(0.1, 1.0, record_potentials=True, seed=42),
    ])


class TestSingleNeuronModule:
    def test_verifies(self):
        assert verify_module(single_neuron_module()) is None

    def test_lowers_to_one_self_synapse(self):
        program = compile_with_passes(single_neuron_module())
        assert program.network.num_neurons == 1
        assert list(program.network.synapses) == [(0, 0)]
        assert program.params.seed == 42
        assert program.num_steps == 10

    def test_runs_ten_steps(self):
        result = compile_with_passes(single_neuron_module()).run()
        assert result.steps_executed == 10
        assert result.potentials.shape == (10, 1)

    def test_text_round_trip_reproduces_run(self):
        original = single_neuron_module()
        reparsed = Module.parse_text(original.to_text())
        assert reparsed == original
        first = compile_with_passes(original).run()
        second = compile_with_passes(reparsed).run()
        assert list(first.export_spikes()) == list(second.export_spikes())
        assert (first.potentials == second.potentials).all()


class TestStructuralErrors:
    def test_no_simulate_op(self):
        m = Module([lif_neuron(), synapse_connect(0, 1, 0.5, 1.0)])
        with pytest.raises(CompileError, match="no runtime.simulate.run"):
            compile_with_passes(m)

    def test_two_simulate_ops(self):
        m = Module([simulate_run(0.1, 1.0), simulate_run(0.1, 2.0)])
        with pytest.raises(CompileError) as exc_info:
            compile_with_passes(m)
        assert exc_info.value.op_index == 1

    def test_two_plasticity_rules(self):
        m = Module([stdp_rule(), stdp_rule(a_plus=0.02), simulate_run(0.1, 1.0)])
        with pytest.raises(CompileError, match="at most one plasticity.stdp"):
            compile_with_passes(m)

    def test_duplicate_synapse(self):
        m = Module([
            synapse_connect(0, 1, 0.5, 1.0),
            synapse_connect(0, 1, 0.7, 2.0),
            simulate_run(0.1, 1.0),
        ])
        with pytest.raises(CompileError, match="duplicate synapse 0 -> 1"):
            compile_with_passes(m)

    def test_layer_overlapping_explicit_synapse(self):
        m = Module([
            synapse_connect(0, 2, 0.5, 1.0),
            layer_fully_connected(0, 1, 2, 3, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        with pytest.raises(CompileError) as exc_info:
            compile_with_passes(m)
        assert exc_info.value.op_index == 1

    def test_reverse_and_self_connections_allowed(self):
        m = Module([
            synapse_connect(0, 1, 0.5, 1.0),
            synapse_connect(1, 0, 0.5, 1.0),
            synapse_connect(1, 1, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        assert compile_with_passes(m).network.num_synapses == 3

    def test_aggregate_op_needs_canonicalize(self):
        with pytest.raises(CompileError, match="canonicalize"):
            compile_module(basic_module())

    def test_legacy_op_needs_upgrade(self):
        attrs = {k: v for k, v in lif_neuron().attrs.items() if k != "t_refrac"}
        m = Module([Operation("neuron", "lif", 0, attrs), simulate_run(0.1, 1.0)])
        with pytest.raises(CompileError, match="upgrade_versions"):
            compile_module(m)
        assert compile_with_passes(m).network.num_neurons == 0

    def test_negative_neuron_id(self):
        m = Module([synapse_connect(0, 1, 0.5, 1.0)])
        m.push(Operation("connectivity", "synapse_connect", 1, {
            **synapse_connect(0, 1, 0.5, 1.0).attrs, "pre": NeuronRef(-1),
        }))
        m.push(simulate_run(0.1, 1.0))
        with pytest.raises(CompileError, match="negative neuron id -1") as exc_info:
            compile_module(m)
        assert exc_info.value.op_index == 1


class TestRepeatedLifOps:
    def test_later_network_wide_lif_wins(self, caplog):
        m = Module([
            lif_neuron(),
            lif_neuron(v_thresh_mv=-55.0),
            synapse_connect(0, 1, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        verify_module(m)
        with caplog.at_level(logging.WARNING, logger="nir.compiler"):
            network = compile_with_passes(m).network
        assert [n.params.v_thresh for n in network.neurons] == [-55.0, -55.0]
        assert "op #1: neuron.lif replaces" in caplog.text

    def test_overlapping_ranges_later_wins(self, caplog):
        m = Module([
            lif_neuron(v_thresh_mv=-40.0, neurons=(0, 3)),
            lif_neuron(v_thresh_mv=-60.0, neurons=(3, 5)),
            simulate_run(0.1, 1.0),
        ])
        with caplog.at_level(logging.WARNING, logger="nir.compiler"):
            network = compile_with_passes(m).network
        assert [n.params.v_thresh for n in network.neurons] == [-40.0] * 3 + [-60.0] * 3
        assert "redeclares 1 neuron(s) (first id 3)" in caplog.text


class TestNeuronTableLimit:
    def test_huge_reference_rejected_before_allocation(self):
        m = Module([
            lif_neuron(),
            synapse_connect(0, 4_000_000_000, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        verify_module(m)
        with pytest.raises(CompileError, match="exceeds the neuron table limit") as exc_info:
            compile_with_passes(m)
        assert exc_info.value.op_index == 1

    def test_limit_from_config(self):
        m = Module([lif_neuron(), stimulus_poisson(9, 10.0, 1.0, 0.0, 1.0), simulate_run(0.1, 1.0)])
        with pytest.raises(CompileError, match="limit of 8") as exc_info:
            compile_with_passes(m, config=CompilerConfig(max_neurons=8))
        assert exc_info.value.op_index == 1
        program = compile_with_passes(m, config=CompilerConfig(max_neurons=10))
        assert program.network.num_neurons == 10

    def test_huge_lif_range_rejected(self):
        m = Module([lif_neuron(neurons=(0, 10 ** 12)), simulate_run(0.1, 1.0)])
        with pytest.raises(CompileError) as exc_info:
            compile_with_passes(m)
        assert exc_info.value.op_index == 0

    def test_limit_loaded_from_config_file(self, tmp_path):
        path = tmp_path / "nir.json"
        path.write_text(json.dumps({"compiler": {"max_neurons": 2}}))
        cfg = load_nir_config(config_path=str(path))
        m = Module([lif_neuron(), synapse_connect(0, 2, 0.5, 1.0), simulate_run(0.1, 1.0)])
        with pytest.raises(CompileError, match="neuron id 2"):
            compile_with_passes(m, config=cfg.compiler)


class TestNeuronTable:
    def test_table_spans_max_referenced_id(self):
        m = Module([lif_neuron(), synapse_connect(0, 5, 0.5, 1.0), simulate_run(0.1, 1.0)])
        network = compile_with_passes(m).network
        assert network.num_neurons == 6
        assert [n.neuron_id for n in network.neurons] == list(range(6))

    def test_poisson_target_extends_table(self):
        m = Module([lif_neuron(), stimulus_poisson(7, 10.0, 1.0, 0.0, 1.0), simulate_run(0.1, 1.0)])
        assert compile_with_passes(m).network.num_neurons == 8

    def test_ranged_parameters_override_default(self):
        m = Module([
            lif_neuron(v_thresh_mv=-40.0),
            lif_neuron(v_thresh_mv=-60.0, neurons=(1, 2)),
            synapse_connect(0, 3, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        network = compile_with_passes(m).network
        assert [n.params.v_thresh for n in network.neurons] == [-40.0, -60.0, -60.0, -40.0]

    def test_neurons_start_at_rest(self):
        m = Module([lif_neuron(v_rest_mv=-65.0), synapse_connect(0, 1, 0.5, 1.0), simulate_run(0.1, 1.0)])
        assert [n.v for n in compile_with_passes(m).network.neurons] == [-65.0, -65.0]

    def test_undeclared_neurons_materialized_with_warning(self, caplog):
        m = Module([synapse_connect(0, 2, 0.5, 1.0), simulate_run(0.1, 1.0)])
        with caplog.at_level(logging.WARNING, logger="nir.compiler"):
            network = compile_with_passes(m).network
        assert network.num_neurons == 3
        assert all(n.params == DEFAULT_NEURON_PARAMS for n in network.neurons)
        assert "undeclared neuron" in caplog.text

    def test_partially_declared_ranges(self):
        m = Module([
            lif_neuron(neurons=(0, 1)),
            synapse_connect(0, 3, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        assert compile_with_passes(m).network.num_neurons == 4

    def test_strict_mode_rejects_undeclared(self):
        m = Module([
            lif_neuron(neurons=(0, 1)),
            synapse_connect(0, 3, 0.5, 1.0),
            simulate_run(0.1, 1.0),
        ])
        with pytest.raises(CompileError, match="neuron 2 is referenced"):
            compile_with_passes(m, config=CompilerConfig(strict_neuron_refs=True))

    def test_strict_mode_accepts_network_wide_default(self):
        m = Module([lif_neuron(), synapse_connect(0, 3, 0.5, 1.0), simulate_run(0.1, 1.0)])
        program = compile_with_passes(m, config=CompilerConfig(strict_neuron_refs=True))
        assert program.network.num_neurons == 4
