"""
Hyperweights: learnable aggregation policies

Two policies control how much of an aggregated update each client absorbs:
1. HyperweightEncoder: one scalar alpha per client, blending the global
   conflict-averse delta into the client's own (homogeneous-averaged) delta
2. HyperweightDecoder: one beta vector per decoder layer, blending a
   cross-block attention over decoder deltas into each block's own delta

Both are trained with the same one-round-delayed credit assignment:
- aggregate() of round r caches the inputs of the policy forward pass
- at the start of round r+1 the forward pass is replayed from the cache as a
  function of the hyperweights, and one SGD step is taken on
      sum_i <output_i, last_i - current_i>
  where last is the post-aggregation state of round r and current is the
  post-training state of round r+1

The policies only ever see detached clones; the cache is consumed once and
replaced by the next aggregate().
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from fedmtl.config import HyperweightConfig
from fedmtl.errors import ShapeMismatchError
from fedmtl.weight_map import (
    DEFAULT_SCHEME,
    EPS,
    KeyScheme,
    WeightMap,
    delta_dict,
    flatten,
    from_relative_decoder_key,
    layer_name,
)

logger = logging.getLogger(__name__)


@dataclass
class EncCache:
    enc_keys: List[str]
    enc_shapes: List[Tuple[int, ...]]
    last_enc: List[torch.Tensor]       # [N] each [D]
    local_delta: List[torch.Tensor]    # [N] each [D], homogeneous-averaged
    global_delta: torch.Tensor         # [D], conflict-averse delta


@dataclass
class DecCache:
    rel_keys: List[str]
    task_of_block: List[str]
    client_of_block: List[int]
    last_blocks: List[WeightMap]
    delta_blocks: List[WeightMap]


class DelayedCreditPolicy(nn.Module):
    """
    Base class of a hyperweight policy trained by delayed credit assignment.

    Subclasses provide ``replay(cache)`` (the forward pass recomputed from a
    cache, keyed by output slot) and ``credit_targets(cache, save_ckpt,
    last_ckpt)`` (the observed ``last - current`` difference for the same
    slots). ``meta_update`` pairs them by slot and takes one SGD step.
    """

    def __init__(self, lr: float, scheme: KeyScheme = DEFAULT_SCHEME):
        super().__init__()
        self.lr = lr
        self.scheme = scheme
        self.cache: Optional[Any] = None
        self._optimizer: Optional[torch.optim.Optimizer] = None

    # -- cache ownership --

    def set_cache(self, cache):
        """Replace the cache; the previous one is released first."""
        self.release_cache()
        self.cache = cache

    def release_cache(self):
        self.cache = None

    # -- subclass hooks --

    def replay(self, cache) -> Dict[Hashable, torch.Tensor]:
        raise NotImplementedError

    def credit_targets(
        self,
        cache,
        save_ckpt: Sequence[WeightMap],
        last_ckpt: Sequence[WeightMap]
    ) -> Dict[Hashable, torch.Tensor]:
        raise NotImplementedError

    # -- meta-update --

    @property
    def optimizer(self) -> torch.optim.Optimizer:
        if self._optimizer is None:
            self._optimizer = torch.optim.SGD(self.parameters(), lr=self.lr)
        return self._optimizer

    def meta_update(self, save_ckpt: Sequence[WeightMap], last_ckpt: Sequence[WeightMap]) -> bool:
        """
        Consume the cache of the previous aggregate() with one gradient step.

        Args:
            save_ckpt: This round's post-training checkpoints
            last_ckpt: Previous round's post-aggregation checkpoints

        Returns:
            True if a step was taken
        """
        if self.cache is None or len(list(self.parameters())) == 0:
            return False

        cache = self.cache
        with torch.no_grad():
            targets = self.credit_targets(cache, save_ckpt, last_ckpt)

        with torch.enable_grad():
            outputs = self.replay(cache)
            terms = [torch.sum(outputs[slot] * targets[slot]) for slot in outputs if slot in targets]
            if not terms:
                self.release_cache()
                return False
            objective = torch.stack(terms).sum()
            if not objective.requires_grad:
                self.release_cache()
                return False

            self.optimizer.zero_grad()
            objective.backward()
            self.optimizer.step()

        logger.debug("%s meta-update objective %.6e", type(self).__name__, objective.item())
        self.release_cache()
        return True

    # -- rollback support --

    def snapshot(self) -> Dict[str, Any]:
        return {
            "params": [p.detach().clone() for p in self.parameters()],
            "cache": self.cache,
        }

    def restore(self, snap: Dict[str, Any]):
        with torch.no_grad():
            for p, saved in zip(self.parameters(), snap["params"]):
                p.copy_(saved)
        self.cache = snap["cache"]


class HyperweightEncoder(DelayedCreditPolicy):
    """Per-client scalar alpha personalizing the global conflict-averse update."""

    def __init__(self, num_clients: int, lr: float = 1e-3, init_alpha: float = 0.1,
                 scheme: KeyScheme = DEFAULT_SCHEME):
        super().__init__(lr, scheme)
        self.num_clients = num_clients
        self.alpha = nn.Parameter(torch.full((num_clients,), float(init_alpha)))

    def forward(
        self,
        flatten_last: Sequence[torch.Tensor],
        flatten_delta: Sequence[torch.Tensor],
        flatten_delta_update: torch.Tensor
    ) -> List[torch.Tensor]:
        """
        new_i = last_i + delta_i + clip(alpha_i, 0, 1) * delta_update

        Args:
            flatten_last: Flattened last encoder of each client
            flatten_delta: Flattened (homogeneous-averaged) local delta of each client
            flatten_delta_update: Flattened global conflict-averse delta

        Returns:
            Flattened personalized encoder of each client
        """
        n = len(flatten_last)
        if n != self.num_clients or len(flatten_delta) != n:
            raise ShapeMismatchError(
                f"HyperweightEncoder expects {self.num_clients} clients, got {n}"
            )
        alpha = torch.clamp(self.alpha, 0, 1)
        return [flatten_last[i] + flatten_delta[i] + alpha[i] * flatten_delta_update for i in range(n)]

    def replay(self, cache: EncCache) -> Dict[Hashable, torch.Tensor]:
        outs = self(cache.last_enc, cache.local_delta, cache.global_delta)
        return dict(enumerate(outs))

    def credit_targets(self, cache: EncCache, save_ckpt, last_ckpt) -> Dict[Hashable, torch.Tensor]:
        if len(save_ckpt) != len(cache.last_enc):
            raise ShapeMismatchError(
                f"Encoder cache holds {len(cache.last_enc)} clients, round has {len(save_ckpt)}"
            )
        keys = cache.enc_keys
        return {
            i: flatten(delta_dict(last_ckpt[i], save_ckpt[i], keys), keys)
            for i in range(len(save_ckpt))
        }

    @property
    def values(self) -> List[float]:
        return self.alpha.detach().cpu().tolist()


class HyperweightDecoder(DelayedCreditPolicy):
    """
    Cross-attention over the K decoder blocks, one beta vector per layer.

    Beta vectors are created lazily on the first forward pass, once the
    relative layer names of the architecture are known.
    """

    def __init__(self, num_blocks: int, lr: float = 1e-3, init_beta: float = 0.1,
                 scheme: KeyScheme = DEFAULT_SCHEME):
        super().__init__(lr, scheme)
        self.num_blocks = num_blocks
        self.init_beta = float(init_beta)
        self.layer_names: List[str] = []
        self.betas = nn.ParameterList()

    @property
    def initialized(self) -> bool:
        return len(self.layer_names) > 0

    def _init_from_rel_keys(self, rel_keys: Sequence[str]):
        if self.initialized:
            return
        names = sorted({layer_name(rk, self.scheme) for rk in rel_keys})
        for _ in names:
            self.betas.append(nn.Parameter(torch.full((self.num_blocks,), self.init_beta)))
        self.layer_names = names
        # parameter set changed
        self._optimizer = None
        logger.debug("HyperweightDecoder initialized %d layers x %d blocks", len(names), self.num_blocks)

    def beta_for(self, layer: str) -> Optional[nn.Parameter]:
        if layer not in self.layer_names:
            return None
        return self.betas[self.layer_names.index(layer)]

    def forward(
        self,
        last_blocks: Sequence[WeightMap],
        delta_blocks: Sequence[WeightMap],
        rel_keys: Sequence[str]
    ) -> List[WeightMap]:
        """
        Personalize every block's decoder with attention over all blocks' deltas.

        For each relative key, the deltas of the K blocks are stacked into a
        [K, D] matrix; block i attends with its own delta (query) over all
        deltas (keys/values) with scale 1/sqrt(D), and

            new_i = last_i + delta_i + clip(beta_layer[i], 0, 1) * attention_i

        Args:
            last_blocks: Last decoder parameters of each block (relative keys)
            delta_blocks: Decoder delta (current - last) of each block
            rel_keys: Relative keys to process

        Returns:
            New decoder parameters of each block (relative keys)
        """
        k = len(last_blocks)
        if k != self.num_blocks or len(delta_blocks) != k:
            raise ShapeMismatchError(f"HyperweightDecoder expects K={self.num_blocks} blocks, got {k}")
        self._init_from_rel_keys(rel_keys)

        out: List[WeightMap] = [{} for _ in range(k)]

        layer_to_keys: Dict[str, List[str]] = {}
        for rk in rel_keys:
            layer_to_keys.setdefault(layer_name(rk, self.scheme), []).append(rk)

        for layer, keys in layer_to_keys.items():
            beta_var = self.beta_for(layer)
            if beta_var is None:
                logger.debug("No beta for decoder layer '%s', skipping", layer)
                continue
            layer_beta = torch.clamp(beta_var, 0, 1)  # [K]

            for rk in keys:
                ref = next((b[rk] for b in list(delta_blocks) + list(last_blocks) if rk in b), None)
                if ref is None:
                    continue

                rows = []
                for j in range(k):
                    dj = delta_blocks[j].get(rk)
                    if dj is None:
                        rows.append(torch.zeros(ref.numel(), dtype=ref.dtype, device=ref.device))
                    elif dj.shape != ref.shape:
                        raise ShapeMismatchError(
                            f"Decoder delta '{rk}' of block {j} has shape {tuple(dj.shape)}, "
                            f"expected {tuple(ref.shape)}"
                        )
                    else:
                        rows.append(dj.reshape(-1))
                cross_delta = torch.stack(rows)  # [K, D]

                scale = 1.0 / math.sqrt(cross_delta.shape[1] + EPS)
                attn = torch.softmax(cross_delta.mm(cross_delta.t()) * scale, dim=-1)  # [K, K]
                attended = attn.mm(cross_delta)  # [K, D]

                for i in range(k):
                    base = last_blocks[i].get(rk)
                    if base is None:
                        continue
                    new_delta = cross_delta[i] + layer_beta[i] * attended[i]
                    out[i][rk] = base + new_delta.reshape(base.shape)

        return out

    def replay(self, cache: DecCache) -> Dict[Hashable, torch.Tensor]:
        outs = self(cache.last_blocks, cache.delta_blocks, cache.rel_keys)
        return {(bi, rk): t for bi, block in enumerate(outs) for rk, t in block.items()}

    def credit_targets(self, cache: DecCache, save_ckpt, last_ckpt) -> Dict[Hashable, torch.Tensor]:
        targets = {}
        for bi, (task, ci) in enumerate(zip(cache.task_of_block, cache.client_of_block)):
            if ci >= len(save_ckpt):
                raise ShapeMismatchError(f"Decoder cache refers to client {ci}, round has {len(save_ckpt)}")
            last_m = last_ckpt[ci]
            cur_m = save_ckpt[ci]
            for rk in cache.rel_keys:
                full_key = from_relative_decoder_key(rk, task, self.scheme)
                if full_key not in last_m or full_key not in cur_m:
                    continue
                targets[(bi, rk)] = last_m[full_key] - cur_m[full_key]
        return targets

    @property
    def values(self) -> List[float]:
        """Flat beta values, layer by layer in sorted layer order."""
        flat = []
        for beta in self.betas:
            flat.extend(beta.detach().cpu().tolist())
        return flat

    def snapshot(self) -> Dict[str, Any]:
        snap = super().snapshot()
        snap["layer_names"] = list(self.layer_names)
        return snap

    def restore(self, snap: Dict[str, Any]):
        saved_layers = snap["layer_names"]
        if len(self.layer_names) != len(saved_layers):
            # layers created after the snapshot are dropped again
            self.betas = nn.ParameterList(list(self.betas)[:len(saved_layers)])
            self.layer_names = list(saved_layers)
            self._optimizer = None
        super().restore(snap)


class Hyperweight:
    """
    Container of the optional encoder and decoder policies.

    Either policy may be None (not attached).
    """

    def __init__(self, enc: Optional[HyperweightEncoder] = None, dec: Optional[HyperweightDecoder] = None):
        self.enc = enc
        self.dec = dec

    def policies(self) -> List[DelayedCreditPolicy]:
        return [p for p in (self.enc, self.dec) if p is not None]

    @property
    def alpha(self) -> List[float]:
        return self.enc.values if self.enc is not None else []

    @property
    def beta(self) -> List[float]:
        return self.dec.values if self.dec is not None else []

    @property
    def beta_names(self) -> List[str]:
        return list(self.dec.layer_names) if self.dec is not None else []

    def meta_update(self, save_ckpt: Sequence[WeightMap], last_ckpt: Sequence[WeightMap]) -> int:
        """
        Update every attached policy from the cache of the previous aggregate().

        Returns:
            Number of policies that took a step
        """
        steps = 0
        for policy in self.policies():
            if policy.meta_update(save_ckpt, last_ckpt):
                steps += 1
        return steps

    def snapshot(self) -> List[Dict[str, Any]]:
        return [p.snapshot() for p in self.policies()]

    def restore(self, snaps: List[Dict[str, Any]]):
        for policy, snap in zip(self.policies(), snaps):
            policy.restore(snap)

    def dispose(self):
        for policy in self.policies():
            policy.release_cache()
            policy._optimizer = None


def create_hyperweight(
    clients: Sequence[Any],
    config: Optional[HyperweightConfig] = None,
    scheme: KeyScheme = DEFAULT_SCHEME
) -> Hyperweight:
    """
    Create both policies sized to a client list.

    Args:
        clients: Clients exposing ``tasks``; N = len(clients), K = total enabled tasks
        config: Learning rates and initial values

    Returns:
        Hyperweight with both policies attached
    """
    config = config or HyperweightConfig()
    n = len(clients)
    k = sum(len(c.tasks) for c in clients)
    return Hyperweight(
        enc=HyperweightEncoder(n, lr=config.enc_lr, init_alpha=config.init_alpha, scheme=scheme),
        dec=HyperweightDecoder(k, lr=config.dec_lr, init_beta=config.init_beta, scheme=scheme),
    )
