"""
Unit Tests for the Experiment Runner
------------------------------------
Run with: pytest tests/test_experiment.py -v
"""

import json

import pytest

from conftest import make_client
from fedmtl.config import EncoderAgg, ServerConfig
from fedmtl.errors import UnsupportedStrategyError
from fedmtl.experiment import (
    Experiment,
    ExperimentPlan,
    ExperimentRunner,
    ExperimentStatus,
    delta_m,
    experiments_from_config,
    plans_from_dicts,
)
from fedmtl.server import FederatedServer


class TestDeltaM:

    def test_higher_is_better(self):
        assert delta_m({"seg": 0.6}, {"seg": 0.5}, {"seg": False}) == pytest.approx(0.2)

    def test_lower_is_better(self):
        assert delta_m({"depth": 0.4}, {"depth": 0.5}, {"depth": True}) == pytest.approx(0.2)
        assert delta_m({"depth": 0.6}, {"depth": 0.5}, {"depth": True}) == pytest.approx(-0.2)

    def test_mean_over_tasks(self):
        dm = delta_m({"a": 1.1, "b": 0.9}, {"a": 1.0, "b": 1.0}, {"a": False, "b": True})
        assert dm == pytest.approx(0.1)

    def test_skips_unusable_tasks(self):
        assert delta_m({"a": 1.0}, {"a": 0.0}, {}) is None
        assert delta_m({"a": float("nan")}, {"a": 1.0}, {}) is None
        assert delta_m({}, {"a": 1.0}, {}) is None
        assert delta_m({"a": 2.0, "b": 5.0}, {"a": 1.0, "b": 0.0}, {}) == pytest.approx(1.0)


class TestPlans:

    def test_from_dicts(self):
        plans = plans_from_dicts([{"encoder_agg": "fedavg", "rounds": 3}])
        assert plans[0].encoder_agg == EncoderAgg.FEDAVG
        assert plans[0].rounds == 3

    def test_unknown_field(self):
        with pytest.raises(KeyError):
            plans_from_dicts([{"encoder": "fedavg"}])

    def test_unknown_strategy(self):
        with pytest.raises(UnsupportedStrategyError):
            ExperimentPlan(decoder_agg="mean")

    def test_experiments_from_config(self):
        exps = experiments_from_config([{"rounds": 1}, {"encoder_agg": "conflict_averse", "ca_c": 0.4}])
        assert len(exps) == 2
        assert all(e.status == ExperimentStatus.NOT_STARTED for e in exps)
        assert exps[0].id != exps[1].id


def _setup():
    clients = [make_client(["A"], 0, dataname="d0"), make_client(["A", "B"], 1, dataname="d1")]
    initial = [c.export_checkpoint() for c in clients]

    def reset_clients(cs):
        for c, ckpt in zip(cs, initial):
            c.load_checkpoint(ckpt)

    return clients, reset_clients


class TestExperimentRunner:

    def test_runs_all_experiments(self, tmp_path):
        clients, reset_clients = _setup()
        experiments = [
            Experiment(ExperimentPlan(rounds=2)),
            Experiment(ExperimentPlan(encoder_agg="conflict_averse", decoder_agg="cross_attention",
                                      ca_c=0.4, rounds=3)),
        ]
        runner = ExperimentRunner(FederatedServer(ServerConfig()), clients, experiments,
                                  reset_clients=reset_clients, progress=False)
        summaries = runner.run()

        assert [e.status for e in experiments] == [ExperimentStatus.COMPLETED] * 2
        assert len(experiments[0].log["rounds"]) == 2
        assert len(experiments[1].log["rounds"]) == 3
        assert [r["round"] for r in experiments[1].log["rounds"]] == [1, 2, 3]

        assert experiments[0].log["footer"]["delta_m"] is None
        assert isinstance(experiments[1].log["footer"]["delta_m"], float)
        assert experiments[1].log["footer"]["total_time"] >= 0

        header = experiments[1].log["header"]
        assert header["server"]["encoder_agg"] == "conflict_averse"
        assert header["server"]["rounds"] == 3
        assert [c["id"] for c in header["clients"]] == [c.id for c in clients]

        assert summaries[0]["done"] and summaries[1]["done"]
        assert summaries[1]["final_round"] == 3
        assert summaries[1]["avg_loss_test"] == pytest.approx(0.5)

        path = tmp_path / "log.json"
        experiments[1].save_log(str(path))
        assert json.loads(path.read_text())["footer"]["delta_m"] == experiments[1].log["footer"]["delta_m"]

    def test_final_task_metrics(self):
        clients, reset_clients = _setup()
        exp = Experiment(ExperimentPlan(rounds=1))
        ExperimentRunner(FederatedServer(), clients, [exp], reset_clients=reset_clients, progress=False).run()
        metrics = exp.final_task_metrics()
        assert set(metrics) == {"A", "B"}
        assert metrics["A"] == pytest.approx(
            (clients[0].last_metrics.task_metrics["A"] + clients[1].last_metrics.task_metrics["A"]) / 2
        )

    def test_failure_marks_experiment(self, monkeypatch):
        clients, _ = _setup()
        server = FederatedServer()
        exp = Experiment(ExperimentPlan(rounds=2))

        def failing_step(cs):
            raise RuntimeError("client crashed")

        monkeypatch.setattr(server, "step", failing_step)
        with pytest.raises(RuntimeError):
            ExperimentRunner(server, clients, [exp], progress=False).run()
        assert exp.status == ExperimentStatus.FAILED

    def test_summary_before_run(self):
        assert Experiment().summarize() == {"done": False}
