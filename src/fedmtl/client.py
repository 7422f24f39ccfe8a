"""
Multi-Task Client for Federated Aggregation

The server only needs a small contract from a client (TrainableClient):
- identity, ordered enabled tasks and a dataset name (grouping signature)
- train(epochs) / evaluate()
- export_checkpoint() / load_checkpoint(weight_map)

MultiTaskClient implements it around a torch model. The local training and
evaluation steps stay outside: they are injected as callables, so any model,
data pipeline and loss can be plugged in.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import torch.nn as nn

from fedmtl.weight_map import DEFAULT_SCHEME, KeyScheme, WeightMap, export_checkpoint, load_checkpoint

logger = logging.getLogger(__name__)


@dataclass
class TaskReport:
    """Scalar losses/metrics of one training epoch or evaluation pass."""
    total_loss: float
    task_losses: Dict[str, float] = field(default_factory=dict)
    task_metrics: Dict[str, float] = field(default_factory=dict)
    outputs: Any = None


@dataclass
class ClientMetrics:
    """Latest metrics of a client, for drivers and experiment logs."""
    id: str
    epoch: int
    loss_train: Optional[float] = None
    loss_test: Optional[float] = None
    task_metrics: Dict[str, float] = field(default_factory=dict)
    task_losses: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "epoch": self.epoch,
            "loss_train": self.loss_train,
            "loss_test": self.loss_test,
            "task_losses": dict(self.task_losses),
            "task_metrics": dict(self.task_metrics),
        }


class TrainableClient(Protocol):
    id: str
    tasks: List[str]
    dataname: str
    last_metrics: Optional[ClientMetrics]

    def train(self, epochs: int) -> List[TaskReport]: ...

    def evaluate(self) -> Optional[TaskReport]: ...

    def export_checkpoint(self) -> WeightMap: ...

    def load_checkpoint(self, ckpt: WeightMap) -> None: ...


TrainEpochFn = Callable[[nn.Module, int], TaskReport]
EvaluateFn = Callable[[nn.Module], TaskReport]


class MultiTaskClient:
    """
    Multi-task client wrapping a torch model.

    Key features:
    - Strictly epoch-granular training with cooperative cancellation
    - Evaluation after every epoch (if an evaluator is given), kept in last_metrics
    - Checkpoint export/load by canonical parameter name
    """

    def __init__(
        self,
        model: nn.Module,
        tasks: Sequence[str],
        train_epoch: TrainEpochFn,
        evaluate_fn: Optional[EvaluateFn] = None,
        dataname: str = "default",
        client_id: Optional[str] = None,
        scheme: KeyScheme = DEFAULT_SCHEME,
        config: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize multi-task client.

        Args:
            model: torch model with an encoder and one decoder per task
            tasks: Enabled tasks, in order (drives the per-task decoder blocks)
            train_epoch: Runs one local training epoch: (model, epoch) -> TaskReport
            evaluate_fn: Evaluates the model: model -> TaskReport
            dataname: Dataset name; part of the homogeneous-group signature
            client_id: Stable identifier (random if omitted)
            scheme: Checkpoint naming scheme
            config: Free-form description of the client setup for experiment logs
        """
        self.model = model
        self.tasks = list(tasks)
        self.train_epoch = train_epoch
        self.evaluate_fn = evaluate_fn
        self.dataname = dataname
        self.id = client_id if client_id is not None else str(uuid.uuid4())
        self.scheme = scheme
        self.config = dict(config or {})

        # Training state
        self.epochs = 0
        self.is_training = False
        self._cancel_requested = False
        self.last_metrics: Optional[ClientMetrics] = None

    def stop_training(self):
        """Request cancellation; takes effect between epochs."""
        self._cancel_requested = True

    def train(self, epochs: int) -> List[TaskReport]:
        """
        Perform local training.

        Args:
            epochs: Number of local training epochs

        Returns:
            Training report of every completed epoch
        """
        if self.is_training:
            logger.warning("[Client %s] train() called while already training, ignoring", self.id)
            return []

        self.is_training = True
        self._cancel_requested = False
        results = []
        try:
            for _ in range(epochs):
                if self._cancel_requested:
                    logger.info("[Client %s] Training stopped after %d epochs", self.id, len(results))
                    break
                self.epochs += 1
                self.model.train()
                train_report = self.train_epoch(self.model, self.epochs)
                results.append(train_report)

                test_report = self.evaluate()
                self._update_last_metrics(train_report, test_report)
                logger.debug(
                    "[Client %s] epoch %d train loss %.4f", self.id, self.epochs, train_report.total_loss
                )
        finally:
            self.is_training = False

        return results

    def evaluate(self) -> Optional[TaskReport]:
        if self.evaluate_fn is None:
            return None
        self.model.eval()
        return self.evaluate_fn(self.model)

    def initial_evaluation(self) -> Optional[TaskReport]:
        """Evaluate before any training so drivers have a starting point."""
        report = self.evaluate()
        self._update_last_metrics(None, report)
        return report

    def export_checkpoint(self) -> WeightMap:
        return export_checkpoint(self.model, self.scheme)

    def load_checkpoint(self, ckpt: WeightMap) -> None:
        load_checkpoint(self.model, ckpt, self.scheme)

    def snapshot_config(self) -> Dict[str, Any]:
        return {"id": self.id, "tasks": list(self.tasks), "dataname": self.dataname, **self.config}

    def _update_last_metrics(self, train_report: Optional[TaskReport], test_report: Optional[TaskReport]):
        self.last_metrics = ClientMetrics(
            id=self.id,
            epoch=self.epochs,
            loss_train=train_report.total_loss if train_report is not None else None,
            loss_test=test_report.total_loss if test_report is not None else None,
            task_losses=dict(test_report.task_losses) if test_report is not None else {},
            task_metrics=dict(test_report.task_metrics) if test_report is not None else {},
        )
