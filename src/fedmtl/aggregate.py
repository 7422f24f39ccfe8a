"""
Per-round aggregation of client checkpoints.

Encoder strategies:
- none: passthrough
- fedavg: elementwise mean written identically to every client
- conflict_averse: Hyper Conflict-Averse aggregation. A global delta is solved
  over all clients, local deltas are averaged within homogeneous groups, and
  the encoder hyperweight (if attached) personalizes the result per client

Decoder strategies:
- none: passthrough
- fedavg: mean over all (client, task) blocks, keyed by relative decoder name
- cross_attention: the decoder hyperweight attends over all blocks' deltas

The conflict-averse delta follows:
Lu, Y., Huang, S., Yang, Y., Sirejiding, S., Ding, Y., & Lu, H. (2024).
FedHCA2: Towards Hetero-Client Federated Multi-Task Learning. CVPR 2024.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import torch

from fedmtl.config import DecoderAgg, EncoderAgg, Solver, parse_option
from fedmtl.errors import AggregationError, ShapeMismatchError, UnsupportedStrategyError
from fedmtl.hyperweight import DecCache, EncCache, Hyperweight
from fedmtl.simplex import solve_simplex_projected_gd, solve_simplex_slsqp
from fedmtl.weight_map import (
    DEFAULT_SCHEME,
    EPS,
    KeyScheme,
    WeightMap,
    delta_dict,
    flatten_param,
    from_relative_decoder_key,
    get_decoder_keys_for_task,
    get_encoder_keys,
    mean_soup,
    pick,
    to_relative_decoder_key,
    unflatten,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Block:
    client_idx: int
    task: str


def group_signature(client: Any) -> Tuple[str, Tuple[str, ...]]:
    """(dataset, ordered enabled tasks) - clients sharing it may be averaged directly."""
    return (client.dataname, tuple(client.tasks))


def check_strategies(
    hyperweight: Optional[Hyperweight],
    encoder_agg,
    decoder_agg
) -> Tuple[EncoderAgg, DecoderAgg]:
    """
    Parse strategy names and reject combinations that cannot run.

    Raises:
        UnsupportedStrategyError: Unknown strategy, or cross_attention without
            an attached decoder hyperweight.
    """
    encoder_agg = parse_option(EncoderAgg, encoder_agg)
    decoder_agg = parse_option(DecoderAgg, decoder_agg)
    if decoder_agg == DecoderAgg.CROSS_ATTENTION and (hyperweight is None or hyperweight.dec is None):
        raise UnsupportedStrategyError("decoder_agg='cross_attention' requires a decoder hyperweight")
    return encoder_agg, decoder_agg


# ------------------------------------------------------------------
# Encoder helpers
# ------------------------------------------------------------------

def homo_average_deltas(deltas: List[torch.Tensor], signatures: Sequence[Any]) -> List[torch.Tensor]:
    """
    Average deltas within each maximal run of consecutive equal signatures.

    Args:
        deltas: Flattened delta of each client
        signatures: Grouping signature of each client, same order

    Returns:
        New list where every member of a run holds the run's average
    """
    n = len(deltas)
    out = list(deltas)
    start = 0
    while start < n:
        end = start + 1
        while end < n and signatures[end] == signatures[start]:
            end += 1
        if end - start > 1:
            avg = torch.stack(deltas[start:end]).mean(dim=0)
            for i in range(start, end):
                out[i] = avg
        start = end
    return out


def get_ca_delta(
    flatten_delta_list: Sequence[torch.Tensor],
    ca_c: float,
    solver: Solver = Solver.PROJECTED_GD
) -> torch.Tensor:
    """
    Solve for the aggregated conflict-averse delta.

    Args:
        flatten_delta_list: Flattened delta of each client, each [D]
        ca_c: Conflict-averse coefficient C; 0 degenerates to the plain mean
        solver: Simplex solver for the combination weights

    Returns:
        The conflict-averse update, [D]
    """
    n = len(flatten_delta_list)
    grads = torch.stack(list(flatten_delta_list)).t()  # [D, N]

    if not torch.isfinite(grads).all():
        raise AggregationError("NaN or Inf detected in client deltas before conflict-averse aggregation")

    gg = grads.t().double().mm(grads.double()).cpu()  # [N, N]
    g0_norm = (gg.mean() + EPS).sqrt().item()
    c = ca_c * g0_norm + EPS

    A = gg.numpy()
    if solver == Solver.SLSQP:
        ww = solve_simplex_slsqp(A, c)
    else:
        ww = solve_simplex_projected_gd(A, c)
    logger.debug("Conflict-averse weights: %s", np.array2string(ww, precision=4))

    ww = torch.as_tensor(ww, dtype=grads.dtype, device=grads.device)
    gw = (grads * ww.reshape(1, -1)).sum(1)
    lmbda = c / (gw.norm() + EPS)
    g = grads.mean(1) + lmbda * gw

    return g / (1 + ca_c ** 2)


def _aggregate_encoder(
    clients: Sequence[Any],
    save_ckpt: Sequence[WeightMap],
    last_ckpt: Sequence[WeightMap],
    update: List[WeightMap],
    hyperweight: Optional[Hyperweight],
    encoder_agg: EncoderAgg,
    ca_c: float,
    scheme: KeyScheme,
    solver: Solver
) -> Optional[EncCache]:
    n = len(clients)
    enc_keys = get_encoder_keys(save_ckpt[0].keys(), scheme)
    enc_shapes = [tuple(save_ckpt[0][k].shape) for k in enc_keys]
    if not enc_keys:
        logger.warning("No encoder keys with prefix '%s', skipping encoder aggregation", scheme.encoder_prefix)
        return None

    if encoder_agg == EncoderAgg.FEDAVG:
        enc_avg = mean_soup([pick(m, enc_keys) for m in save_ckpt], enc_keys)
        for i in range(n):
            update[i].update(enc_avg)
        return None

    # conflict_averse
    cur_list = [pick(m, enc_keys) for m in save_ckpt]
    last_list = [pick(m, enc_keys) for m in last_ckpt]
    delta_list = [delta_dict(cur_list[i], last_list[i], enc_keys) for i in range(n)]
    flatten_last = flatten_param(last_list, enc_keys)
    flatten_delta = flatten_param(delta_list, enc_keys)
    del cur_list, last_list, delta_list

    sizes = {d.numel() for d in flatten_delta}
    if len(sizes) > 1:
        raise ShapeMismatchError(f"Encoder sizes differ across clients: {sorted(sizes)}")

    if all(d.norm() < 1e-10 for d in flatten_delta):
        logger.warning("All encoder deltas are zero, conflict-averse delta is zero")
        global_delta = torch.zeros_like(flatten_delta[0])
    else:
        global_delta = get_ca_delta(flatten_delta, ca_c, solver)

    flatten_delta = homo_average_deltas(flatten_delta, [group_signature(c) for c in clients])

    cache = None
    if hyperweight is not None and hyperweight.enc is not None:
        cache = EncCache(
            enc_keys=list(enc_keys),
            enc_shapes=list(enc_shapes),
            last_enc=[t.detach().clone() for t in flatten_last],
            local_delta=[t.detach().clone() for t in flatten_delta],
            global_delta=global_delta.detach().clone(),
        )
        flatten_new = hyperweight.enc(flatten_last, flatten_delta, global_delta)
    else:
        flatten_new = [flatten_last[i] + global_delta for i in range(n)]

    for i in range(n):
        update[i].update(unflatten(flatten_new[i], enc_keys, enc_shapes))
    return cache


# ------------------------------------------------------------------
# Decoder helpers
# ------------------------------------------------------------------

def get_blocks(clients: Sequence[Any]) -> List[Block]:
    """One block per (client, enabled task), clients in order, tasks in client order."""
    return [Block(i, task) for i, client in enumerate(clients) for task in client.tasks]


def _aggregate_decoder_fedavg(
    blocks: Sequence[Block],
    save_ckpt: Sequence[WeightMap],
    update: List[WeightMap],
    scheme: KeyScheme
):
    if len(blocks) == 0:
        return

    # canonical relative keys come only from the first block
    b0 = blocks[0]
    full0 = get_decoder_keys_for_task(save_ckpt[b0.client_idx].keys(), b0.task, scheme)
    rel_keys = sorted(to_relative_decoder_key(fk, b0.task, scheme) for fk in full0)

    block_dicts = []
    for b in blocks:
        m = save_ckpt[b.client_idx]
        own = {
            to_relative_decoder_key(fk, b.task, scheme): m[fk]
            for fk in get_decoder_keys_for_task(m.keys(), b.task, scheme)
        }
        missing = sorted(set(rel_keys) - set(own))
        extra = sorted(set(own) - set(rel_keys))
        if missing or extra:
            logger.warning(
                "Decoder fedavg: block (client %d, task '%s') differs from the first block "
                "(missing %s, not averaged %s)", b.client_idx, b.task, missing, extra
            )
        block_dicts.append(own)

    for rk in rel_keys:
        carriers = [i for i, d in enumerate(block_dicts) if rk in d]
        avg = mean_soup([block_dicts[i] for i in carriers], [rk])[rk]
        for i in carriers:
            b = blocks[i]
            update[b.client_idx][from_relative_decoder_key(rk, b.task, scheme)] = avg


def _aggregate_decoder_cross_attention(
    blocks: Sequence[Block],
    save_ckpt: Sequence[WeightMap],
    last_ckpt: Sequence[WeightMap],
    update: List[WeightMap],
    hyperweight: Hyperweight,
    scheme: KeyScheme
) -> DecCache:
    rel_key_set = set()
    for b in blocks:
        for fk in get_decoder_keys_for_task(save_ckpt[b.client_idx].keys(), b.task, scheme):
            rel_key_set.add(to_relative_decoder_key(fk, b.task, scheme))
    rel_keys = sorted(rel_key_set)

    last_blocks: List[WeightMap] = []
    delta_blocks: List[WeightMap] = []
    for b in blocks:
        last_m = last_ckpt[b.client_idx]
        cur_m = save_ckpt[b.client_idx]
        lb, db = {}, {}
        for rk in rel_keys:
            fk = from_relative_decoder_key(rk, b.task, scheme)
            if fk not in last_m or fk not in cur_m:
                continue
            lb[rk] = last_m[fk]
            db[rk] = delta_dict(cur_m, last_m, [fk])[fk]
        last_blocks.append(lb)
        delta_blocks.append(db)

    cache = DecCache(
        rel_keys=list(rel_keys),
        task_of_block=[b.task for b in blocks],
        client_of_block=[b.client_idx for b in blocks],
        last_blocks=[{k: t.detach().clone() for k, t in lb.items()} for lb in last_blocks],
        delta_blocks=[{k: t.detach().clone() for k, t in db.items()} for db in delta_blocks],
    )

    new_blocks = hyperweight.dec(last_blocks, delta_blocks, rel_keys)

    for b, nb in zip(blocks, new_blocks):
        for rk, t in nb.items():
            update[b.client_idx][from_relative_decoder_key(rk, b.task, scheme)] = t
    return cache


# ------------------------------------------------------------------
# Main aggregate
# ------------------------------------------------------------------

def aggregate(
    clients: Sequence[Any],
    save_ckpt: Sequence[WeightMap],
    last_ckpt: Sequence[WeightMap],
    hyperweight: Optional[Hyperweight] = None,
    encoder_agg=EncoderAgg.NONE,
    decoder_agg=DecoderAgg.NONE,
    ca_c: float = 0.4,
    scheme: KeyScheme = DEFAULT_SCHEME,
    solver: Solver = Solver.PROJECTED_GD
) -> List[WeightMap]:
    """
    Aggregate client checkpoints and load the result back into every client.

    All outputs are staged first; hyperweight caches are replaced and client
    models reloaded only after every branch succeeded. Parameters not written
    by a strategy keep their current value.

    Args:
        clients: Clients exposing ``tasks``, ``dataname`` and ``load_checkpoint``
        save_ckpt: Current (post-training) checkpoint of every client
        last_ckpt: Previous checkpoint of every client
        hyperweight: Optional learnable policies; caches are replaced
        encoder_agg: Encoder strategy
        decoder_agg: Decoder strategy
        ca_c: Conflict-averse coefficient C
        scheme: Checkpoint naming scheme
        solver: Simplex solver for conflict-averse weights

    Returns:
        The aggregated checkpoint of every client
    """
    encoder_agg, decoder_agg = check_strategies(hyperweight, encoder_agg, decoder_agg)
    solver = parse_option(Solver, solver)

    n = len(clients)
    if len(save_ckpt) != n or len(last_ckpt) != n:
        raise ShapeMismatchError(
            f"{n} clients but {len(save_ckpt)} current and {len(last_ckpt)} last checkpoints"
        )
    if n == 0:
        return []

    update = [dict(m) for m in save_ckpt]
    enc_cache = None
    dec_cache = None

    with torch.no_grad():
        if encoder_agg != EncoderAgg.NONE:
            enc_cache = _aggregate_encoder(
                clients, save_ckpt, last_ckpt, update, hyperweight, encoder_agg, ca_c, scheme, solver
            )

        if decoder_agg != DecoderAgg.NONE:
            blocks = get_blocks(clients)
            if decoder_agg == DecoderAgg.FEDAVG:
                _aggregate_decoder_fedavg(blocks, save_ckpt, update, scheme)
            else:
                dec_cache = _aggregate_decoder_cross_attention(
                    blocks, save_ckpt, last_ckpt, update, hyperweight, scheme
                )

    # commit: clients first, caches only once every client holds its update.
    # A failed load_checkpoint leaves its client untouched, so only the
    # clients loaded before it are restored.
    loaded = 0
    try:
        for client, ckpt in zip(clients, update):
            client.load_checkpoint(ckpt)
            loaded += 1
    except Exception:
        logger.error("Loading aggregated checkpoint into client %d failed, restoring %d client(s)", loaded, loaded)
        for client, ckpt in zip(clients[:loaded], save_ckpt):
            client.load_checkpoint(ckpt)
        raise

    if enc_cache is not None:
        hyperweight.enc.set_cache(enc_cache)
    if dec_cache is not None:
        hyperweight.dec.set_cache(dec_cache)

    logger.debug("Aggregated %d clients (encoder=%s, decoder=%s)", n, encoder_agg.value, decoder_agg.value)
    return update
