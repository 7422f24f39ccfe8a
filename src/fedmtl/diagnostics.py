"""
Inter-client divergence and conflict diagnostics.

Uses encoder checkpoint differences (delta = current - last) as a proxy for the
clients' gradients. Display only: nothing here feeds back into training.
"""

from dataclasses import asdict, dataclass
from typing import Dict, List, Sequence

import torch

from fedmtl.weight_map import (
    DEFAULT_SCHEME,
    EPS,
    KeyScheme,
    WeightMap,
    delta_dict,
    flatten,
    get_encoder_keys,
)


@dataclass(frozen=True)
class InterClientDiagnostics:
    mean_delta_norm: float = 0.0          # ||mean(delta)||
    mean_client_delta_norm: float = 0.0   # mean_i ||delta_i||
    mean_dist_to_mean: float = 0.0        # mean_i ||delta_i - mean(delta)||
    mean_cosine: float = 1.0              # mean_{i<j} cos(delta_i, delta_j)
    frac_negative_cosine: float = 0.0     # fraction of pairs with cos < 0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def compute_gradient_similarity(gradient_a: torch.Tensor, gradient_b: torch.Tensor) -> float:
    """
    Cosine similarity between two flattened deltas, in [-1, 1].

    The denominator carries epsilon, so a zero delta yields 0 instead of failing.
    """
    a = gradient_a.flatten()
    b = gradient_b.flatten()
    dot = torch.dot(a, b)
    return (dot / ((a.norm() + EPS) * (b.norm() + EPS))).item()


def compute_inter_client_diagnostics(
    save_ckpt: Sequence[WeightMap],
    last_ckpt: Sequence[WeightMap],
    scheme: KeyScheme = DEFAULT_SCHEME
) -> InterClientDiagnostics:
    """
    Compute divergence and conflict statistics over per-client encoder deltas.

    Args:
        save_ckpt: Current (post-training) checkpoint of every client
        last_ckpt: Previous checkpoint of every client, same order

    Returns:
        InterClientDiagnostics; the degenerate record when fewer than 2 clients
    """
    n = len(save_ckpt)
    if n < 2:
        return InterClientDiagnostics()

    enc_keys = get_encoder_keys(save_ckpt[0].keys(), scheme)

    with torch.no_grad():
        deltas: List[torch.Tensor] = [
            flatten(delta_dict(save_ckpt[i], last_ckpt[i], enc_keys), enc_keys).double()
            for i in range(n)
        ]
        mean_delta = torch.stack(deltas).mean(dim=0)

        mean_delta_norm = mean_delta.norm().item()
        mean_client_delta_norm = sum(d.norm().item() for d in deltas) / n
        mean_dist_to_mean = sum((d - mean_delta).norm().item() for d in deltas) / n

        pairs = 0
        sum_cos = 0.0
        neg_count = 0
        for i in range(n):
            for j in range(i + 1, n):
                c = compute_gradient_similarity(deltas[i], deltas[j])
                sum_cos += c
                if c < 0:
                    neg_count += 1
                pairs += 1

    return InterClientDiagnostics(
        mean_delta_norm=mean_delta_norm,
        mean_client_delta_norm=mean_client_delta_norm,
        mean_dist_to_mean=mean_dist_to_mean,
        mean_cosine=sum_cos / pairs,
        frac_negative_cosine=neg_count / pairs,
    )
