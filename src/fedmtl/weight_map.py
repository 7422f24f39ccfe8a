"""
WeightMap Utilities

A WeightMap is a plain ``Dict[str, torch.Tensor]`` keyed by canonical parameter
name. This module provides:
1. Canonical naming: optionally strip instantiation suffixes, fail fast on collisions
2. Key selection: encoder keys, per-task decoder keys, relative decoder keys
3. Dictionary algebra: pick, delta, mean soup
4. Flatten / unflatten between a named tensor set and one contiguous vector
5. Checkpoint export/load against a live ``nn.Module``

Key design decision:
- Decoder keys are compared across tasks through a task-agnostic "relative"
  name, so structurally identical blocks line up positionally.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn

from fedmtl.errors import CollisionError, KeyFormatError, ShapeMismatchError

# Type alias
WeightMap = Dict[str, torch.Tensor]

EPS = 1e-8

# Trailing "_<digits>" groups, e.g. "conv.weight_3_12" -> "conv.weight"
SUFFIX_PATTERN = r"(_\d+)+$"


@dataclass(frozen=True)
class KeyScheme:
    """
    Naming convention of a client checkpoint.

    Attributes:
        encoder_prefix: Prefix shared by every encoder parameter.
        decoder_template: Per-task decoder prefix, formatted with ``task``.
        relative_prefix: Prefix of task-agnostic decoder keys.
        separator: Separator between name tokens; the last token is the
            parameter name and everything before it is the layer name.
        suffix_pattern: Regex matching an instantiation-uniqueness suffix, or
            None to keep parameter names as they are. Plain torch modules
            carry no such suffix; set it for models rebuilt with
            uniquified names, e.g. SUFFIX_PATTERN.
    """
    encoder_prefix: str = "encoder."
    decoder_template: str = "decoders.{task}."
    relative_prefix: str = "decoder."
    separator: str = "."
    suffix_pattern: Optional[str] = None

    def decoder_prefix(self, task: str) -> str:
        return self.decoder_template.format(task=task)

    @classmethod
    def from_dict(cls, d: Dict) -> "KeyScheme":
        unknown = set(d) - set(cls.__dataclass_fields__)
        if unknown:
            raise KeyError(f"Unknown key scheme fields: {sorted(unknown)}")
        return cls(**d)


DEFAULT_SCHEME = KeyScheme()


# ------------------------------------------------------------------
# Canonical naming
# ------------------------------------------------------------------

def canonical_key(key: str, scheme: KeyScheme = DEFAULT_SCHEME) -> str:
    """Strip the instantiation suffix from a raw parameter name (idempotent)."""
    if not scheme.suffix_pattern:
        return key
    return re.sub(scheme.suffix_pattern, "", key)


def to_canonical_map(m: WeightMap, scheme: KeyScheme = DEFAULT_SCHEME) -> WeightMap:
    """
    Re-key a weight map by canonical name.

    Tensors are not copied.

    Raises:
        CollisionError: If two raw keys map to the same canonical name.
    """
    out = {}
    origin = {}
    for key, tensor in m.items():
        ck = canonical_key(key, scheme)
        if ck in out:
            raise CollisionError(
                f"Canonical name collision: '{ck}' from '{origin[ck]}' and '{key}'"
            )
        out[ck] = tensor
        origin[ck] = key
    return out


# ------------------------------------------------------------------
# Key extraction
# ------------------------------------------------------------------

def get_encoder_keys(all_keys: Iterable[str], scheme: KeyScheme = DEFAULT_SCHEME) -> List[str]:
    return sorted(k for k in all_keys if k.startswith(scheme.encoder_prefix))


def get_decoder_keys_for_task(
    all_keys: Iterable[str],
    task: str,
    scheme: KeyScheme = DEFAULT_SCHEME
) -> List[str]:
    prefix = scheme.decoder_prefix(task)
    return sorted(k for k in all_keys if k.startswith(prefix))


def to_relative_decoder_key(full_key: str, task: str, scheme: KeyScheme = DEFAULT_SCHEME) -> str:
    """
    Strip the task prefix from a decoder key.

    Example (default scheme):
        'decoders.depth.stage0.conv.weight' -> 'decoder.stage0.conv.weight'

    Raises:
        KeyFormatError: If the key is not a decoder key of ``task``.
    """
    prefix = scheme.decoder_prefix(task)
    if not full_key.startswith(prefix) or len(full_key) == len(prefix):
        raise KeyFormatError(f"Not a decoder key of task '{task}': {full_key}")
    return scheme.relative_prefix + full_key[len(prefix):]


def from_relative_decoder_key(rel_key: str, task: str, scheme: KeyScheme = DEFAULT_SCHEME) -> str:
    """Inverse of :func:`to_relative_decoder_key`."""
    if not rel_key.startswith(scheme.relative_prefix) or len(rel_key) == len(scheme.relative_prefix):
        raise KeyFormatError(f"Bad relative decoder key: {rel_key}")
    return scheme.decoder_prefix(task) + rel_key[len(scheme.relative_prefix):]


def layer_name(rel_key: str, scheme: KeyScheme = DEFAULT_SCHEME) -> str:
    """Everything except the last token, e.g. 'decoder.stage0.conv.weight' -> 'decoder.stage0.conv'."""
    parts = rel_key.split(scheme.separator)
    if len(parts) <= 1:
        return rel_key
    return scheme.separator.join(parts[:-1])


# ------------------------------------------------------------------
# Dict ops
# ------------------------------------------------------------------

def pick(m: WeightMap, keys: Iterable[str]) -> WeightMap:
    """Sub-map of ``m`` restricted to ``keys``. Keys absent from ``m`` are silently omitted."""
    return {k: m[k] for k in keys if k in m}


def delta_dict(cur: WeightMap, last: WeightMap, keys: Iterable[str]) -> WeightMap:
    """
    Get the difference between current and last parameters.

    Args:
        cur: Current weight map
        last: Last weight map
        keys: Keys to difference

    Returns:
        WeightMap of ``cur[k] - last[k]``

    Raises:
        ShapeMismatchError: If a key is missing from either map or shapes disagree.
    """
    out = {}
    for k in keys:
        if k not in cur or k not in last:
            raise ShapeMismatchError(f"Key '{k}' missing from {'current' if k not in cur else 'last'} map")
        if cur[k].shape != last[k].shape:
            raise ShapeMismatchError(
                f"Shape mismatch for '{k}': {tuple(cur[k].shape)} vs {tuple(last[k].shape)}"
            )
        out[k] = cur[k] - last[k]
    return out


def mean_soup(dicts: Sequence[WeightMap], keys: Iterable[str]) -> WeightMap:
    """
    Get the elementwise average of parameters across a list of weight maps.

    Raises:
        ShapeMismatchError: If a key is missing from one of the maps or shapes disagree.
    """
    if len(dicts) == 0:
        return {}
    soup = {}
    for k in keys:
        tensors = []
        for i, d in enumerate(dicts):
            if k not in d:
                raise ShapeMismatchError(f"Key '{k}' missing from weight map {i}")
            tensors.append(d[k])
        shapes = {tuple(t.shape) for t in tensors}
        if len(shapes) > 1:
            raise ShapeMismatchError(f"Shape mismatch for '{k}': {sorted(shapes)}")
        soup[k] = torch.mean(torch.stack(tensors), dim=0)
    return soup


def flatten(m: WeightMap, keys: Sequence[str]) -> torch.Tensor:
    """Concatenate the tensors of ``keys`` (in order) into one 1D tensor."""
    if len(keys) == 0:
        return torch.zeros(0)
    return torch.cat([m[k].flatten() for k in keys])


def flatten_param(param_dict_list: Sequence[WeightMap], keys: Sequence[str]) -> List[torch.Tensor]:
    """Flattens a list of weight maps into a list of 1D tensors."""
    return [flatten(m, keys) for m in param_dict_list]


def unflatten(vec: torch.Tensor, keys: Sequence[str], shapes: Sequence[Tuple[int, ...]]) -> WeightMap:
    """
    Reconstruct a weight map from a flattened tensor.

    Args:
        vec: 1D tensor produced by :func:`flatten`
        keys: Parameter names, in flatten order
        shapes: Original shape of each parameter, in the same order

    Returns:
        WeightMap of views into ``vec`` reshaped to the original shapes

    Raises:
        ShapeMismatchError: If ``vec`` length disagrees with ``shapes``.
    """
    if len(keys) != len(shapes):
        raise ShapeMismatchError(f"{len(keys)} keys but {len(shapes)} shapes")
    sizes = [int(np.prod(shape)) for shape in shapes]
    if vec.dim() != 1 or vec.numel() != sum(sizes):
        raise ShapeMismatchError(
            f"Cannot unflatten vector of shape {tuple(vec.shape)} into {sum(sizes)} elements"
        )
    out = {}
    start = 0
    for key, shape, size in zip(keys, shapes, sizes):
        end = start + size
        out[key] = vec[start:end].reshape(shape)
        start = end
    return out


def clone_weight_map(m: WeightMap) -> WeightMap:
    return {k: t.detach().clone() for k, t in m.items()}


# ------------------------------------------------------------------
# Checkpoint I/O
# ------------------------------------------------------------------

def export_checkpoint(model: nn.Module, scheme: KeyScheme = DEFAULT_SCHEME) -> WeightMap:
    """
    Snapshot the trainable parameters of a model.

    Returns:
        Canonical WeightMap of detached clones (never aliases the live model)
    """
    raw = {name: param.detach().clone() for name, param in model.named_parameters()}
    return to_canonical_map(raw, scheme)


def load_checkpoint(model: nn.Module, ckpt: WeightMap, scheme: KeyScheme = DEFAULT_SCHEME) -> int:
    """
    Load a (possibly partial) checkpoint into a model by canonical name.

    Parameters whose canonical name is absent from ``ckpt`` keep their current
    value. Every entry is validated before the model is touched.

    Returns:
        Number of parameters overwritten

    Raises:
        ShapeMismatchError: If a matching entry has a different shape.
    """
    state_dict = model.state_dict()
    updates = {}
    for name, _ in model.named_parameters():
        ck = canonical_key(name, scheme)
        if ck not in ckpt:
            continue
        if tuple(ckpt[ck].shape) != tuple(state_dict[name].shape):
            raise ShapeMismatchError(
                f"Cannot load '{ck}': checkpoint shape {tuple(ckpt[ck].shape)} "
                f"vs model shape {tuple(state_dict[name].shape)}"
            )
        updates[name] = ckpt[ck]

    state_dict.update(updates)
    model.load_state_dict(state_dict)
    return len(updates)
