"""
Unit Tests for Inter-Client Diagnostics
---------------------------------------
Run with: pytest tests/test_diagnostics.py -v
"""

import pytest
import torch

from fedmtl.diagnostics import (
    InterClientDiagnostics,
    compute_gradient_similarity,
    compute_inter_client_diagnostics,
)


def _ckpts(deltas):
    last = [{"encoder.w": torch.zeros(3), "decoders.A.w": torch.zeros(2)} for _ in deltas]
    save = [{"encoder.w": torch.tensor(d), "decoders.A.w": torch.ones(2)} for d in deltas]
    return save, last


class TestDiagnostics:

    def test_single_client_degenerate(self):
        save, last = _ckpts([[1.0, 2.0, 3.0]])
        assert compute_inter_client_diagnostics(save, last) == InterClientDiagnostics()

    def test_antiparallel(self):
        save, last = _ckpts([[1.0, 2.0, 3.0], [-1.0, -2.0, -3.0]])
        d = compute_inter_client_diagnostics(save, last)
        assert d.mean_cosine == pytest.approx(-1.0, abs=1e-6)
        assert d.frac_negative_cosine == 1.0
        assert d.mean_delta_norm == pytest.approx(0.0, abs=1e-9)
        assert d.mean_client_delta_norm == pytest.approx(14 ** 0.5)

    def test_identical(self):
        save, last = _ckpts([[1.0, 0.0, 2.0]] * 3)
        d = compute_inter_client_diagnostics(save, last)
        assert d.mean_cosine == pytest.approx(1.0, abs=1e-6)
        assert d.frac_negative_cosine == 0.0
        assert d.mean_dist_to_mean == pytest.approx(0.0, abs=1e-9)
        assert d.mean_delta_norm == pytest.approx(5 ** 0.5)

    def test_decoder_keys_ignored(self):
        save, last = _ckpts([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        d = compute_inter_client_diagnostics(save, last)
        assert d.mean_cosine == pytest.approx(0.0, abs=1e-6)
        assert d.frac_negative_cosine == 0.0

    def test_zero_delta_similarity(self):
        assert compute_gradient_similarity(torch.zeros(4), torch.ones(4)) == pytest.approx(0.0)

    def test_as_dict(self):
        d = InterClientDiagnostics(mean_cosine=0.5).as_dict()
        assert d["mean_cosine"] == 0.5
        assert set(d) == {
            "mean_delta_norm", "mean_client_delta_norm", "mean_dist_to_mean",
            "mean_cosine", "frac_negative_cosine",
        }
