"""Simple usage example for the NIR toolchain.

Builds a small feed-forward network as IR, prints its text form, compiles
it through the default pass pipeline, runs it, and inspects the learned
weights.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nir_compile import compile_with_passes
from nir_ir import (
    Module,
    layer_fully_connected,
    lif_neuron,
    simulate_run,
    stdp_rule,
    stimulus_poisson,
)
from nir_monitoring import run_summary


def main():
    # Two inputs fully connected to two outputs, with STDP
    m = Module()
    m.push(lif_neuron())
    m.push(stdp_rule(a_plus=5.0, a_minus=6.0, w_min=0.0, w_max=500.0))
    m.push(layer_fully_connected(0, 1, 2, 3, weight=200.0, delay_ms=1.0))
    m.push(stimulus_poisson(0, rate_hz=400.0, amplitude_na=500.0, start_ms=0.0, duration_ms=50.0))
    m.push(stimulus_poisson(1, rate_hz=100.0, amplitude_na=500.0, start_ms=0.0, duration_ms=50.0))
    m.push(simulate_run(dt_ms=0.1, duration_ms=50.0, record_potentials=True, seed=42))

    print("=== IR ===")
    print(m.to_text())

    program = compile_with_passes(m)
    print("=== Initial weights ===")
    for pre, post, w in program.snapshot_weights():
        print(f"{pre}→{post}: {w:.3f}")

    result = program.run()
    print("\n=== Run ===")
    print(run_summary(result, program.get_telemetry()))
    for nid in range(program.network.num_neurons):
        print(f"neuron {nid}: {result.firing_rate(nid):.1f} Hz")

    print("\n=== Learned weights ===")
    for pre, post, w in program.snapshot_weights():
        print(f"{pre}→{post}: {w:.3f}")

    print("\n=== First spikes (time_ns, neuron) ===")
    for pair in list(result.export_spikes())[:10]:
        print(pair)


if __name__ == "__main__":
    main()
