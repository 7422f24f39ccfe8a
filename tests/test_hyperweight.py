"""
Unit Tests for the Hyperweight Policies
---------------------------------------
Tests verify:
- Encoder/decoder forward formulas and alpha/beta clipping
- Lazy per-layer beta creation
- One-round-delayed meta-update (cache consumed once)
- Snapshot/restore used for round rollback

Run with: pytest tests/test_hyperweight.py -v
"""

import pytest
import torch

from conftest import make_client
from fedmtl.config import HyperweightConfig
from fedmtl.errors import ShapeMismatchError
from fedmtl.hyperweight import (
    DecCache,
    EncCache,
    Hyperweight,
    HyperweightDecoder,
    HyperweightEncoder,
    create_hyperweight,
)


def _enc_cache(last, local, glob):
    return EncCache(
        enc_keys=["encoder.w"],
        enc_shapes=[(len(glob),)],
        last_enc=[torch.tensor(x) for x in last],
        local_delta=[torch.tensor(x) for x in local],
        global_delta=torch.tensor(glob),
    )


class TestHyperweightEncoder:

    def test_forward(self):
        enc = HyperweightEncoder(2, init_alpha=0.5)
        last = [torch.tensor([1.0, 1.0]), torch.tensor([0.0, 0.0])]
        delta = [torch.tensor([0.5, 0.0]), torch.tensor([0.0, -1.0])]
        glob = torch.tensor([2.0, 2.0])
        out = enc(last, delta, glob)
        assert torch.allclose(out[0], torch.tensor([2.5, 2.0]))
        assert torch.allclose(out[1], torch.tensor([1.0, 0.0]))

    def test_alpha_clipped(self):
        enc = HyperweightEncoder(2)
        with torch.no_grad():
            enc.alpha.copy_(torch.tensor([2.0, -1.0]))
        z = torch.zeros(2)
        out = enc([z, z], [z, z], torch.ones(2))
        assert torch.allclose(out[0], torch.ones(2))
        assert torch.allclose(out[1], torch.zeros(2))

    def test_client_count_mismatch(self):
        enc = HyperweightEncoder(3)
        z = torch.zeros(2)
        with pytest.raises(ShapeMismatchError):
            enc([z, z], [z, z], z)

    def test_meta_update_without_cache(self):
        enc = HyperweightEncoder(2)
        assert enc.meta_update([], []) is False
        assert enc.values == pytest.approx([0.1, 0.1])

    def test_meta_update_step(self):
        enc = HyperweightEncoder(2, lr=0.5, init_alpha=0.1)
        glob = [1.0, 2.0]
        enc.set_cache(_enc_cache([[0.0, 0.0], [0.0, 0.0]], [[0.0, 0.0], [0.0, 0.0]], glob))

        # target_i = last_i - current_i
        last_ckpt = [{"encoder.w": torch.tensor([1.0, 1.0])}, {"encoder.w": torch.tensor([0.0, 0.0])}]
        save_ckpt = [{"encoder.w": torch.tensor([0.0, 2.0])}, {"encoder.w": torch.tensor([-1.0, 0.0])}]
        # d/dalpha_i sum <out_i, target_i> = <glob, target_i>: [1*1 + 2*(-1), 1*1 + 0] = [-1, 1]
        assert enc.meta_update(save_ckpt, last_ckpt) is True
        assert enc.values == pytest.approx([0.1 + 0.5, 0.1 - 0.5])
        assert enc.cache is None

        # cache is consumed exactly once
        assert enc.meta_update(save_ckpt, last_ckpt) is False

    def test_snapshot_restore(self):
        enc = HyperweightEncoder(2, lr=1.0)
        cache = _enc_cache([[0.0], [0.0]], [[0.0], [0.0]], [1.0])
        enc.set_cache(cache)
        snap = enc.snapshot()
        save = [{"encoder.w": torch.tensor([1.0])}, {"encoder.w": torch.tensor([1.0])}]
        last = [{"encoder.w": torch.tensor([0.0])}, {"encoder.w": torch.tensor([0.0])}]
        assert enc.meta_update(save, last)
        assert enc.values != pytest.approx([0.1, 0.1])
        enc.restore(snap)
        assert enc.values == pytest.approx([0.1, 0.1])
        assert enc.cache is cache


class TestHyperweightDecoder:

    def _blocks(self, deltas):
        last = [{"decoder.0.weight": torch.zeros(2, 2), "decoder.0.bias": torch.ones(2)} for _ in deltas]
        delta = [{"decoder.0.weight": torch.full((2, 2), d), "decoder.0.bias": torch.full((2,), d)}
                 for d in deltas]
        return last, delta

    def test_lazy_layer_init(self):
        dec = HyperweightDecoder(3, init_beta=0.2)
        assert dec.values == []
        last, delta = self._blocks([0.1, 0.2, 0.3])
        dec(last, delta, ["decoder.0.weight", "decoder.0.bias"])
        assert dec.layer_names == ["decoder.0"]
        assert dec.values == pytest.approx([0.2, 0.2, 0.2])

    def test_beta_zero_is_identity(self):
        dec = HyperweightDecoder(2, init_beta=0.0)
        last, delta = self._blocks([0.5, -2.0])
        out = dec(last, delta, ["decoder.0.weight", "decoder.0.bias"])
        for i in range(2):
            for rk in last[i]:
                assert torch.allclose(out[i][rk], last[i][rk] + delta[i][rk])

    def test_identical_deltas_attend_to_themselves(self):
        # uniform attention over identical rows returns the row itself
        dec = HyperweightDecoder(2, init_beta=0.5)
        last, delta = self._blocks([0.3, 0.3])
        out = dec(last, delta, ["decoder.0.weight", "decoder.0.bias"])
        for i in range(2):
            for rk in last[i]:
                assert torch.allclose(out[i][rk], last[i][rk] + 1.5 * delta[i][rk])

    def test_block_count_mismatch(self):
        dec = HyperweightDecoder(3)
        last, delta = self._blocks([0.1, 0.2])
        with pytest.raises(ShapeMismatchError):
            dec(last, delta, ["decoder.0.weight"])

    def test_meta_update_changes_beta(self):
        dec = HyperweightDecoder(2, lr=1.0, init_beta=0.5)
        last, delta = self._blocks([1.0, -1.0])
        rel_keys = ["decoder.0.bias", "decoder.0.weight"]
        dec(last, delta, rel_keys)
        dec.set_cache(DecCache(
            rel_keys=rel_keys,
            task_of_block=["A", "B"],
            client_of_block=[0, 1],
            last_blocks=last,
            delta_blocks=delta,
        ))
        last_ckpt = [{"decoders.A.0.bias": torch.zeros(2), "decoders.A.0.weight": torch.zeros(2, 2)},
                     {"decoders.B.0.bias": torch.zeros(2), "decoders.B.0.weight": torch.zeros(2, 2)}]
        save_ckpt = [{"decoders.A.0.bias": torch.ones(2), "decoders.A.0.weight": torch.ones(2, 2)},
                     {"decoders.B.0.bias": torch.ones(2), "decoders.B.0.weight": torch.ones(2, 2)}]
        before = list(dec.values)
        assert dec.meta_update(save_ckpt, last_ckpt) is True
        assert dec.values != pytest.approx(before)
        assert dec.cache is None

    def test_restore_drops_new_layers(self):
        dec = HyperweightDecoder(2)
        snap = dec.snapshot()
        last, delta = self._blocks([0.1, 0.2])
        dec(last, delta, ["decoder.0.weight"])
        assert len(dec.layer_names) == 1
        dec.restore(snap)
        assert dec.layer_names == []
        assert dec.values == []


class TestHyperweightContainer:

    def test_create_sizes(self):
        clients = [make_client(["A"], 0), make_client(["A", "B"], 1), make_client(["B"], 2)]
        hw = create_hyperweight(clients, HyperweightConfig(init_alpha=0.3))
        assert hw.enc.num_clients == 3
        assert hw.dec.num_blocks == 4
        assert hw.alpha == pytest.approx([0.3, 0.3, 0.3])
        assert hw.beta == []

    def test_meta_update_counts_policies(self):
        hw = Hyperweight(enc=HyperweightEncoder(1, lr=0.1), dec=HyperweightDecoder(1))
        assert hw.meta_update([], []) == 0
        hw.enc.set_cache(_enc_cache([[0.0]], [[0.0]], [1.0]))
        save = [{"encoder.w": torch.tensor([1.0])}]
        last = [{"encoder.w": torch.tensor([0.0])}]
        assert hw.meta_update(save, last) == 1

    def test_dispose_releases_cache(self):
        hw = Hyperweight(enc=HyperweightEncoder(1))
        hw.enc.set_cache(_enc_cache([[0.0]], [[0.0]], [1.0]))
        hw.dispose()
        assert hw.enc.cache is None

    def test_empty_container(self):
        hw = Hyperweight()
        assert hw.alpha == [] and hw.beta == [] and hw.beta_names == []
        assert hw.meta_update([], []) == 0
