"""
Weight bridge - export and re-import synaptic weights by (pre, post) id.

Lets external tooling inspect or edit the learned weights of a network
without touching its topology::

    triples = snapshot_weights(program.network)
    applied = apply_weight_updates(other.network, triples)
"""

from __future__ import annotations

import logging
from typing import Iterable, List, NamedTuple

from snn_runtime import Network

logger = logging.getLogger("nir.weights")


class WeightTriple(NamedTuple):
    pre: int
    post: int
    weight: float


def snapshot_weights(network: Network) -> List[WeightTriple]:
    """Current weight of every synapse, one triple per (pre, post) pair.

    Triples come out in synapse creation order.
    """
    return [
        WeightTriple(syn.pre, syn.post, syn.weight)
        for syn in network.synapses.values()
    ]


def apply_weight_updates(network: Network, updates: Iterable[WeightTriple]) -> int:
    """Overwrite weights of existing synapses.

    Args:
        network: Network to modify in place.
        updates: ``(pre, post, weight)`` triples; plain tuples are accepted.

    Returns:
        Number of updates applied.  Pairs with no matching synapse are
        skipped; topology is never changed.
    """
    applied = 0
    skipped = 0
    for pre, post, weight in updates:
        syn = network.get_synapse(pre, post)
        if syn is None:
            skipped += 1
            continue
        syn.weight = float(weight)
        applied += 1
    if skipped:
        logger.debug("skipped %d weight updates with no matching synapse", skipped)
    return applied
