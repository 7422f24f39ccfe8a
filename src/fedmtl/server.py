"""
Federated server: the round state machine.

One call to ``step(clients)`` runs a complete round:

    training -> collecting -> diagnosing -> meta_updating -> aggregating -> rotating

The server is not an experiment runner. It is a stateful object a driver can
step one round at a time, reconfigure between rounds and reset when the client
set changes. A failed round never partially commits: checkpoints, round counter
and hyperweights stay as they were before the round.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from fedmtl.aggregate import aggregate, check_strategies
from fedmtl.config import FirstRoundPolicy, ServerConfig, Solver, parse_option
from fedmtl.diagnostics import InterClientDiagnostics, compute_inter_client_diagnostics
from fedmtl.hyperweight import Hyperweight, create_hyperweight
from fedmtl.weight_map import WeightMap, clone_weight_map

logger = logging.getLogger(__name__)


class RoundPhase(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    COLLECTING = "collecting"
    DIAGNOSING = "diagnosing"
    META_UPDATING = "meta_updating"
    AGGREGATING = "aggregating"
    ROTATING = "rotating"


@dataclass
class ServerCallbacks:
    """Optional display hooks; none of them is needed for aggregation."""
    on_client_trained: Optional[Callable[[Dict[str, Any]], None]] = None
    on_aggregated: Optional[Callable[[Dict[str, Any]], None]] = None
    on_evaluated: Optional[Callable[[Dict[str, Any]], None]] = None
    on_checkpoint: Optional[Callable[[Dict[str, Any]], None]] = None
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None


def _fire(callback: Optional[Callable], payload: Dict[str, Any]):
    if callback is not None:
        callback(payload)


class FederatedServer:
    """
    Stateful federated server driven one round at a time.

    Attributes:
        round: Number of completed rounds
        config: Mutable configuration, read at the start of each step
        hyperweight: Attached learnable policies (None disables meta-learning)
        alpha: Latest encoder hyperweights, one per client
        beta: Latest decoder hyperweights, flattened layer by layer
        last_diagnostics: Diagnostics of the latest diagnosed round
        history: alpha/beta per round when ``config.log_alpha_beta`` is set
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        hyperweight: Optional[Hyperweight] = None,
        callbacks: Optional[ServerCallbacks] = None
    ):
        self.config = config or ServerConfig()
        self.hyperweight = hyperweight
        self.callbacks = callbacks or ServerCallbacks()

        self.round = 0
        self.phase = RoundPhase.IDLE
        self.meta_update_steps = 0
        self.last_diagnostics: Optional[InterClientDiagnostics] = None

        self.alpha: List[float] = []
        self.beta: List[float] = []
        self.beta_names: List[str] = []
        self.history: Dict[str, List] = {"rounds": [], "alpha": [], "beta": []}

        # pre-round baseline, one per client
        self._last_ckpt: Optional[List[WeightMap]] = None

    def snapshot_config(self) -> Dict[str, Any]:
        return {
            "epochs_per_client": self.config.epochs_per_client,
            "encoder_agg": self.config.encoder_agg.value,
            "decoder_agg": self.config.decoder_agg.value,
            "ca_c": self.config.ca_c,
        }

    def set_callbacks(self, callbacks: ServerCallbacks):
        self.callbacks = callbacks

    def reset(self, clients: Sequence[Any]):
        """
        Start over with a (possibly new) client list.

        Releases held checkpoints, recreates the hyperweight sized to
        ``clients`` and clears alpha/beta history.
        """
        self.round = 0
        self.phase = RoundPhase.IDLE
        self.meta_update_steps = 0
        self.last_diagnostics = None
        self._last_ckpt = None

        if self.hyperweight is not None:
            self.hyperweight.dispose()
        self.hyperweight = create_hyperweight(clients, self.config.hyperweight, self.config.keys)

        self.alpha = []
        self.beta = []
        self.beta_names = []
        self.history = {"rounds": [], "alpha": [], "beta": []}
        logger.info("Server reset: %d clients, hyperweight recreated", len(clients))

    def step(self, clients: Sequence[Any]) -> Dict[str, Any]:
        """
        Run one federated round.

        Steps:
        1. Snapshot the baseline "last" checkpoints (first call only)
        2. Train every client sequentially, in list order
        3. Snapshot the "current" checkpoints
        4. Compute inter-client diagnostics
        5. Meta-update the hyperweights from the previous round's cache (round > 0)
        6. Aggregate and load the result into every client
        7. Rotate: "last" becomes a fresh post-aggregation snapshot
        8. Advance the round counter and notify

        Args:
            clients: Clients implementing the TrainableClient protocol

        Returns:
            Dict with round results
        """
        cfg = copy.deepcopy(self.config)
        cfg.encoder_agg, cfg.decoder_agg = check_strategies(self.hyperweight, cfg.encoder_agg, cfg.decoder_agg)
        cfg.first_round = parse_option(FirstRoundPolicy, cfg.first_round)
        cfg.solver = parse_option(Solver, cfg.solver)
        if self._last_ckpt is not None and len(self._last_ckpt) != len(clients):
            raise ValueError(
                f"Server holds checkpoints of {len(self._last_ckpt)} clients, got {len(clients)}; call reset()"
            )

        r = self.round
        logger.info(
            "Round %d: %d clients, encoder=%s decoder=%s C=%.3f",
            r, len(clients), cfg.encoder_agg.value, cfg.decoder_agg.value, cfg.ca_c
        )

        hw_snapshot = self.hyperweight.snapshot() if self.hyperweight is not None else None
        try:
            result = self._run_round(clients, cfg, r)
        except Exception:
            logger.exception("Round %d failed, nothing committed", r)
            if self.hyperweight is not None:
                self.hyperweight.restore(hw_snapshot)
            raise
        finally:
            self.phase = RoundPhase.IDLE

        self._after_round(clients, cfg, result)
        return result

    # --------------------- internals ---------------------

    def _run_round(self, clients: Sequence[Any], cfg: ServerConfig, r: int) -> Dict[str, Any]:
        last_ckpt = self._last_ckpt
        if last_ckpt is None:
            last_ckpt = [c.export_checkpoint() for c in clients]

        # Phase 1: local training (sequential)
        self.phase = RoundPhase.TRAINING
        _fire(self.callbacks.on_progress, {"round": r, "phase": "train", "message": "Training clients"})
        train_results = {}
        for client in clients:
            reports = client.train(cfg.epochs_per_client)
            train_results[client.id] = reports
            _fire(self.callbacks.on_client_trained, {
                "round": r,
                "client_id": client.id,
                "metrics": client.last_metrics,
            })

        # Phase 2: collect checkpoints
        self.phase = RoundPhase.COLLECTING
        save_ckpt = [c.export_checkpoint() for c in clients]

        # Phase 3: diagnostics
        diagnostics = None
        if cfg.diagnostics_every > 0 and r % cfg.diagnostics_every == 0:
            self.phase = RoundPhase.DIAGNOSING
            diagnostics = compute_inter_client_diagnostics(save_ckpt, last_ckpt, cfg.keys)
            logger.info("Round %d diagnostics: %s", r, diagnostics.as_dict())

        # Phase 4: hyperweight update from the previous aggregate()
        meta_steps = 0
        if r > 0 and self.hyperweight is not None:
            self.phase = RoundPhase.META_UPDATING
            meta_steps = self.hyperweight.meta_update(save_ckpt, last_ckpt)

        # Phase 5: aggregate
        self.phase = RoundPhase.AGGREGATING
        _fire(self.callbacks.on_progress, {"round": r, "phase": "aggregate", "message": "Aggregating checkpoints"})
        if r == 0 and cfg.first_round == FirstRoundPolicy.SKIP:
            logger.info("Round 0: aggregation skipped by first-round policy")
        else:
            aggregate(
                clients,
                save_ckpt,
                last_ckpt,
                hyperweight=self.hyperweight,
                encoder_agg=cfg.encoder_agg,
                decoder_agg=cfg.decoder_agg,
                ca_c=cfg.ca_c,
                scheme=cfg.keys,
                solver=cfg.solver,
            )
        del save_ckpt

        # Phase 6: rotate
        self.phase = RoundPhase.ROTATING
        new_last = [c.export_checkpoint() for c in clients]

        # commit
        self._last_ckpt = new_last
        if diagnostics is not None:
            self.last_diagnostics = diagnostics
        self.meta_update_steps += meta_steps
        self.round = r + 1

        return {
            "round": r,
            "train_results": train_results,
            "diagnostics": diagnostics,
            "meta_updates": meta_steps,
        }

    def _after_round(self, clients: Sequence[Any], cfg: ServerConfig, result: Dict[str, Any]):
        r = result["round"]
        self._refresh_alpha_beta()
        if cfg.log_alpha_beta:
            self.history["rounds"].append(r)
            self.history["alpha"].append(list(self.alpha))
            self.history["beta"].append(list(self.beta))

        _fire(self.callbacks.on_aggregated, {
            "round": r,
            "encoder_agg": cfg.encoder_agg.value,
            "decoder_agg": cfg.decoder_agg.value,
            "alpha": list(self.alpha) or None,
            "beta": list(self.beta) or None,
        })

        if cfg.eval_every > 0 and self.round % cfg.eval_every == 0:
            _fire(self.callbacks.on_progress, {"round": r, "phase": "eval", "message": "Evaluating clients"})
            results = {}
            for client in clients:
                report = client.evaluate()
                if report is not None:
                    results[client.id] = report
            result["eval_results"] = results
            _fire(self.callbacks.on_evaluated, {"round": r, "results": results})

        if cfg.checkpoint_every > 0 and self.round % cfg.checkpoint_every == 0:
            _fire(self.callbacks.on_checkpoint, {
                "round": r,
                "checkpoint": [clone_weight_map(m) for m in self._last_ckpt],
            })

    def _refresh_alpha_beta(self):
        if self.hyperweight is None:
            return
        self.alpha = self.hyperweight.alpha
        self.beta = self.hyperweight.beta
        self.beta_names = self.hyperweight.beta_names
