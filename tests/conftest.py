"""
Shared fixtures: tiny multi-task models and clients with deterministic fake training.

Parameter names follow the default key scheme:
    encoder.0.weight, encoder.0.bias, decoders.<task>.0.weight, decoders.<task>.0.bias
"""

import sys
from pathlib import Path
from typing import Dict, List, Sequence

import pytest
import torch
import torch.nn as nn

# Add src to path
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from fedmtl.client import MultiTaskClient, TaskReport  # noqa: E402
from fedmtl.weight_map import WeightMap  # noqa: E402


IN_DIM = 4
HIDDEN = 3
OUT_DIM = 2


class TinyMultiTaskModel(nn.Module):
    """Shared linear encoder with one linear decoder per task."""

    def __init__(self, tasks: Sequence[str]):
        super().__init__()
        self.encoder = nn.Sequential(nn.Linear(IN_DIM, HIDDEN))
        self.decoders = nn.ModuleDict({t: nn.Sequential(nn.Linear(HIDDEN, OUT_DIM)) for t in tasks})

    def forward(self, x):
        h = torch.relu(self.encoder(x))
        return {t: dec(h) for t, dec in self.decoders.items()}


def make_train_epoch(seed: int, scale: float = 0.05):
    """Fake local epoch: adds a deterministic per-(client, epoch) perturbation to every parameter."""

    def train_epoch(model: nn.Module, epoch: int) -> TaskReport:
        gen = torch.Generator().manual_seed(seed * 1000 + epoch)
        with torch.no_grad():
            for p in model.parameters():
                p.add_(scale * torch.randn(p.shape, generator=gen))
        return TaskReport(total_loss=1.0 / epoch, task_losses={t: 1.0 / epoch for t in model.decoders})

    return train_epoch


def evaluate_fn(model: nn.Module) -> TaskReport:
    metrics = {t: float(dec[0].weight.abs().mean()) + 0.1 for t, dec in model.decoders.items()}
    return TaskReport(total_loss=0.5, task_losses={t: 0.5 for t in metrics}, task_metrics=metrics)


def make_client(tasks: Sequence[str], seed: int, dataname: str = "shapes", client_id: str = None,
                evaluate: bool = True) -> MultiTaskClient:
    torch.manual_seed(seed)
    model = TinyMultiTaskModel(tasks)
    return MultiTaskClient(
        model,
        tasks,
        train_epoch=make_train_epoch(seed),
        evaluate_fn=evaluate_fn if evaluate else None,
        dataname=dataname,
        client_id=client_id or f"client-{seed}",
    )


def train_round(clients: Sequence[MultiTaskClient]):
    """Train every client one epoch; returns (save_ckpt, last_ckpt)."""
    last = [c.export_checkpoint() for c in clients]
    for c in clients:
        c.train(1)
    save = [c.export_checkpoint() for c in clients]
    return save, last


def encoder_of(m: WeightMap) -> Dict[str, torch.Tensor]:
    return {k: v for k, v in m.items() if k.startswith("encoder.")}


@pytest.fixture
def three_clients() -> List[MultiTaskClient]:
    """Identical architecture, distinct datasets (no homogeneous groups)."""
    return [make_client(["A"], seed=i, dataname=f"ds{i}") for i in range(3)]


@pytest.fixture
def two_task_a_clients() -> List[MultiTaskClient]:
    return [make_client(["A"], seed=10 + i, dataname=f"ds{i}") for i in range(2)]


@pytest.fixture
def hetero_clients() -> List[MultiTaskClient]:
    """Heterogeneous task sets: K = 1 + 2 + 1 = 4 decoder blocks."""
    return [
        make_client(["A"], seed=20, dataname="ds0"),
        make_client(["A", "B"], seed=21, dataname="ds1"),
        make_client(["B"], seed=22, dataname="ds2"),
    ]
