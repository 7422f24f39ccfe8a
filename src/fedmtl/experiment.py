"""
Experiment runner: sequential comparison of aggregation setups.

Each experiment applies a plan (strategies, C, local epochs, rounds) to the
server, resets clients and server, and steps the server for the planned number
of rounds while logging every client's metrics. The first experiment of a run
is the baseline: every later experiment reports the multi-task performance
delta (delta_m) of its final per-task metrics against it.
"""

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from fedmtl.config import DecoderAgg, EncoderAgg, parse_option
from fedmtl.server import FederatedServer

logger = logging.getLogger(__name__)


# Metrics where a smaller value is the better one
LOWER_IS_BETTER: Dict[str, bool] = {
    "meanIoU": False,
    "pixelAccuracy": False,
    "meanClassAccuracy": False,
    "precision": False,
    "recall": False,
    "f1": False,
    "odsF": False,
    "absRel": True,
    "rmse": True,
    "rmseLog": True,
    "siLog": True,
    "delta1": False,
    "delta2": False,
    "delta3": False,
    "meanAngularErr": True,
    "pct_11_25": False,
    "pct_22_5": False,
    "pct_30": False,
}


def _is_finite(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def delta_m(
    fed: Dict[str, float],
    local: Dict[str, float],
    lower_is_better: Optional[Dict[str, bool]] = None
) -> Optional[float]:
    """
    Multi-task performance delta of ``fed`` relative to ``local``.

        delta_m = 1/T * sum_t (-1)^l_t * (M_fed,t - M_local,t) / M_local,t

    with l_t = 1 if lower is better for t. Tasks with a non-finite value on
    either side or a baseline below 1e-12 in magnitude are skipped.

    Args:
        fed: Metric per task of the federated run
        local: Metric per task of the baseline run
        lower_is_better: Direction per task (missing means higher is better)

    Returns:
        The mean relative gain, or None if no task qualifies
    """
    lower_is_better = LOWER_IS_BETTER if lower_is_better is None else lower_is_better
    total = 0.0
    count = 0
    for task, m_local in local.items():
        m_fed = fed.get(task)
        if not _is_finite(m_local) or not _is_finite(m_fed) or abs(m_local) < 1e-12:
            continue
        sign = -1.0 if lower_is_better.get(task, False) else 1.0
        total += sign * (m_fed - m_local) / m_local
        count += 1
    return total / count if count > 0 else None


@dataclass
class ExperimentPlan:
    encoder_agg: EncoderAgg = EncoderAgg.NONE
    decoder_agg: DecoderAgg = DecoderAgg.NONE
    ca_c: float = 0.0
    epochs_per_client: int = 1
    rounds: int = 1

    def __post_init__(self):
        self.encoder_agg = parse_option(EncoderAgg, self.encoder_agg)
        self.decoder_agg = parse_option(DecoderAgg, self.decoder_agg)
        if self.rounds < 0:
            raise ValueError("rounds must be >= 0")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExperimentPlan":
        unknown = set(d) - set(cls.__dataclass_fields__)
        if unknown:
            raise KeyError(f"Unknown experiment plan fields: {sorted(unknown)}")
        return cls(**d)


def plans_from_dicts(raw: Sequence[Dict[str, Any]]) -> List[ExperimentPlan]:
    return [ExperimentPlan.from_dict(d) for d in raw]


class ExperimentStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_log() -> Dict[str, Any]:
    return {
        "header": {"timestamp": _now(), "clients": [], "server": {}},
        "rounds": [],
        "footer": {"timestamp": _now(), "total_time": 0.0, "delta_m": None},
    }


@dataclass
class Experiment:
    plan: ExperimentPlan = field(default_factory=ExperimentPlan)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExperimentStatus = ExperimentStatus.NOT_STARTED
    log: Dict[str, Any] = field(default_factory=_empty_log)
    start_time: Optional[float] = None

    def reset(self):
        self.log = _empty_log()
        self.start_time = None
        self.status = ExperimentStatus.NOT_STARTED

    def final_task_metrics(self) -> Optional[Dict[str, float]]:
        """Average test metric per task over all clients of the last logged round."""
        if not self.log["rounds"]:
            return None
        sums: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        for cm in self.log["rounds"][-1]["metrics"]:
            if cm is None:
                continue
            for task, value in cm.get("task_metrics", {}).items():
                if not _is_finite(value):
                    continue
                sums[task] = sums.get(task, 0.0) + value
                counts[task] = counts.get(task, 0) + 1
        return {task: sums[task] / counts[task] for task in sums}

    def summarize(
        self,
        base_task: Optional[Dict[str, float]] = None,
        lower_is_better: Optional[Dict[str, bool]] = None
    ) -> Dict[str, Any]:
        rounds = self.log["rounds"]
        if not rounds:
            return {"done": False}

        last = rounds[-1]
        metrics = [m for m in last["metrics"] if m is not None]
        loss_test = [m["loss_test"] for m in metrics if _is_finite(m.get("loss_test"))]
        loss_train = [m["loss_train"] for m in metrics if _is_finite(m.get("loss_train"))]

        dm = None
        if base_task:
            fed_task = self.final_task_metrics()
            if fed_task:
                dm = delta_m(fed_task, base_task, lower_is_better)

        total_time = self.log["footer"].get("total_time")
        return {
            "done": self.status == ExperimentStatus.COMPLETED,
            "final_round": last["round"],
            "avg_loss_test": float(np.mean(loss_test)) if loss_test else None,
            "avg_loss_train": float(np.mean(loss_train)) if loss_train else None,
            "total_time": total_time if _is_finite(total_time) else None,
            "delta_m": dm,
        }

    def save_log(self, path: str):
        with open(path, "w") as f:
            json.dump(self.log, f, indent=2)


class ExperimentRunner:
    """
    Runs experiments one after another against a single server.

    Args:
        server: Server to drive; its configuration is overwritten per plan
        clients: Clients stepped every round
        experiments: Experiments to run, in order; the first is the baseline
        reset_clients: Optional callable restoring clients to their initial
            state before each experiment
        lower_is_better: Direction per task for delta_m
        progress: Show a tqdm progress bar over rounds
    """

    def __init__(
        self,
        server: FederatedServer,
        clients: Sequence[Any],
        experiments: Sequence[Experiment],
        reset_clients: Optional[Callable[[Sequence[Any]], None]] = None,
        lower_is_better: Optional[Dict[str, bool]] = None,
        progress: bool = True
    ):
        self.server = server
        self.clients = clients
        self.experiments = list(experiments)
        self.reset_clients = reset_clients
        self.lower_is_better = lower_is_better
        self.progress = progress

    def run(self) -> List[Dict[str, Any]]:
        """Run every experiment and return their summaries."""
        summaries = []
        for idx, exp in enumerate(self.experiments):
            logger.info(
                "Experiment %d/%d: encoder=%s decoder=%s C=%.3f epochs=%d rounds=%d",
                idx + 1, len(self.experiments), exp.plan.encoder_agg.value, exp.plan.decoder_agg.value,
                exp.plan.ca_c, exp.plan.epochs_per_client, exp.plan.rounds
            )
            self.run_experiment(exp)
            summaries.append(exp.summarize(self._baseline_metrics(exp), self.lower_is_better))
        return summaries

    def run_experiment(self, exp: Experiment):
        self._start(exp)
        try:
            rounds = range(exp.plan.rounds)
            if self.progress:
                rounds = tqdm(rounds, desc=f"{exp.plan.encoder_agg.value}/{exp.plan.decoder_agg.value}")
            for _ in rounds:
                before = self.server.round
                self.server.step(self.clients)
                if self.server.round != before:
                    exp.log["rounds"].append({
                        "round": self.server.round,
                        "metrics": [
                            c.last_metrics.to_dict() if c.last_metrics is not None else None
                            for c in self.clients
                        ],
                    })
        except Exception:
            exp.status = ExperimentStatus.FAILED
            logger.exception("Experiment %s failed at round %d", exp.id, self.server.round)
            raise
        self._finish(exp)

    def _start(self, exp: Experiment):
        cfg = self.server.config
        cfg.encoder_agg = exp.plan.encoder_agg
        cfg.decoder_agg = exp.plan.decoder_agg
        cfg.ca_c = exp.plan.ca_c
        cfg.epochs_per_client = exp.plan.epochs_per_client

        exp.reset()
        exp.status = ExperimentStatus.IN_PROGRESS

        if self.reset_clients is not None:
            self.reset_clients(self.clients)
        self.server.reset(self.clients)

        # header after reset so it reflects the state actually run
        exp.log["header"] = {
            "timestamp": _now(),
            "clients": [c.snapshot_config() for c in self.clients],
            "server": {**self.server.snapshot_config(), "rounds": exp.plan.rounds},
        }
        exp.start_time = time.perf_counter()

    def _finish(self, exp: Experiment):
        exp.status = ExperimentStatus.COMPLETED
        end = time.perf_counter()
        base_task = self._baseline_metrics(exp)
        dm = exp.summarize(base_task, self.lower_is_better)["delta_m"] if base_task else None
        exp.log["footer"] = {
            "timestamp": _now(),
            "total_time": end - (exp.start_time if exp.start_time is not None else end),
            "delta_m": dm,
        }
        logger.info("Experiment %s completed in %.1fs (delta_m=%s)", exp.id, exp.log["footer"]["total_time"], dm)

    def _baseline_metrics(self, exp: Experiment) -> Optional[Dict[str, float]]:
        if not self.experiments:
            return None
        baseline = self.experiments[0]
        if baseline is exp or baseline.status != ExperimentStatus.COMPLETED:
            return None
        return baseline.final_task_metrics()


def experiments_from_config(raw: Sequence[Dict[str, Any]]) -> List[Experiment]:
    return [Experiment(plan=plan) for plan in plans_from_dicts(raw)]
