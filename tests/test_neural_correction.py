"""
Tests for the SIREN correction network

- Architecture size and memory
- Output bound and zero network
- Manual backward pass against autograd
- Feature normalization, flat parameters and checkpoints
"""

import math

import pytest
import torch

from hybrid_bsdf.bsdf_core import DTYPE, BSDFResponse
from hybrid_bsdf.neural_correction import (
    FEATURE_DIM,
    HIDDEN_DIM,
    CorrectionInput,
    CorrectionOutput,
    NeuralCorrectionConfig,
    NeuralCorrectionMLP,
    apply_correction,
    normalize_features,
)


def _features(n=16, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return torch.rand(n, FEATURE_DIM, generator=generator, dtype=DTYPE)


def test_parameter_count_and_memory():
    network = NeuralCorrectionMLP()
    assert network.param_count() == 10 * 32 + 32 + 32 * 32 + 32 + 32 * 2 + 2 == 1474
    assert network.memory_bytes() == 1474 * 8


def test_siren_initialization_bounds():
    network = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=5))
    first = math.sqrt(6.0 / FEATURE_DIM) / network.omega_0
    hidden = math.sqrt(6.0 / HIDDEN_DIM)
    assert float(network.layer0.weight.abs().max()) <= first
    assert float(network.layer1.weight.abs().max()) <= hidden
    assert float(network.output.weight.abs().max()) <= hidden


def test_initialization_is_seeded():
    a = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=11))
    b = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=11))
    c = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=12))
    assert torch.equal(a.get_flat_params(), b.get_flat_params())
    assert not torch.equal(a.get_flat_params(), c.get_flat_params())


def test_output_is_bounded():
    network = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=3))
    # Blow the weights up so tanh saturates
    network.set_flat_params(network.get_flat_params() * 50.0)
    x = torch.cat([_features(128), torch.full((4, FEATURE_DIM), -1.0, dtype=DTYPE), torch.ones(4, FEATURE_DIM, dtype=DTYPE)])
    with torch.no_grad():
        out = network(x)
    assert out.shape == (136, 2)
    assert float(out.abs().max()) <= 0.1


def test_zero_network_outputs_zero():
    network = NeuralCorrectionMLP.zeros()
    assert network.is_zero()
    with torch.no_grad():
        out = network(_features())
    assert torch.equal(out, torch.zeros_like(out))


def test_forward_cached_matches_forward():
    network = NeuralCorrectionMLP()
    x = _features()
    with torch.no_grad():
        expected = network(x)
    out, cache = network.forward_cached(x)
    assert torch.equal(out, expected)
    assert set(cache) == {"x", "z0", "h0", "z1", "h1", "t"}


def test_backward_matches_autograd():
    network = NeuralCorrectionMLP(NeuralCorrectionConfig(seed=3))
    x = _features(8, seed=1)
    generator = torch.Generator().manual_seed(2)
    grad_out = torch.randn(8, 2, generator=generator, dtype=DTYPE)

    out, cache = network.forward_cached(x)
    manual = network.backward(cache, grad_out)

    network.zero_grad()
    (network(x) * grad_out).sum().backward()
    for name, param in network.named_parameters():
        assert torch.allclose(manual[name], param.grad, rtol=1e-9, atol=1e-12), f"Gradient mismatch for {name}"


def test_flat_params_round_trip():
    network = NeuralCorrectionMLP()
    flat = torch.arange(network.param_count(), dtype=DTYPE) * 1e-4
    network.set_flat_params(flat)
    assert torch.equal(network.get_flat_params(), flat)
    with pytest.raises(ValueError):
        network.set_flat_params(torch.zeros(10, dtype=DTYPE))


def test_frozen_copy_is_independent():
    network = NeuralCorrectionMLP()
    snapshot = network.frozen_copy()
    network.set_flat_params(torch.zeros(network.param_count(), dtype=DTYPE))
    assert not snapshot.is_zero()
    assert not any(p.requires_grad for p in snapshot.parameters())


def test_save_and_load(tmp_path):
    network = NeuralCorrectionMLP(NeuralCorrectionConfig(omega_0=20.0, max_correction=0.05, seed=9))
    path = tmp_path / "correction.pth"
    network.save(str(path))
    loaded = NeuralCorrectionMLP.load(str(path))
    assert loaded.omega_0 == 20.0
    assert loaded.max_correction == 0.05
    assert torch.equal(loaded.get_flat_params(), network.get_flat_params())
    assert not any(p.requires_grad for p in loaded.parameters())


def test_invalid_config():
    with pytest.raises(ValueError):
        NeuralCorrectionConfig(omega_0=0.0)
    with pytest.raises(ValueError):
        NeuralCorrectionConfig(max_correction=1.5)


class TestFeatures:

    def test_normalization(self):
        x = CorrectionInput(
            wavelength=550.0, cos_theta_i=1.0, cos_theta_o=1.0, roughness=0.5, ior=2.5, k=5.0,
            thickness=1000.0, absorption=50.0, scattering=50.0, g=0.3,
        ).to_features()
        expected = [0.5, 1.0, 1.0, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.3]
        assert x.tolist() == pytest.approx(expected)

    def test_out_of_range_is_clamped(self):
        raw = torch.tensor([[900.0, 2.0, -3.0, 5.0, 10.0, -1.0, 1e6, 1e6, 1e6, -5.0]], dtype=DTYPE)
        x = normalize_features(raw)[0]
        assert x.tolist() == pytest.approx([1.0, 1.0, -1.0, 1.0, 1.0, 0.0, 1.0, 1.0, 1.0, -1.0])


class TestApplyCorrection:

    def test_zero_delta_is_identity(self):
        R = torch.tensor([0.04, 0.9, 0.3], dtype=DTYPE)
        T = torch.tensor([0.96, 0.0, 0.4], dtype=DTYPE)
        A = torch.clamp(1.0 - R - T, min=0.0)
        zero = torch.zeros_like(R)
        R2, T2, A2 = apply_correction(R, T, zero, zero)
        assert torch.equal(R2, R)
        assert torch.equal(T2, T)
        assert torch.equal(A2, A)

    def test_overflow_is_renormalized(self):
        R, T, A = apply_correction(
            torch.tensor([0.6], dtype=DTYPE), torch.tensor([0.45], dtype=DTYPE),
            torch.tensor([0.05], dtype=DTYPE), torch.tensor([0.0], dtype=DTYPE))
        assert (R + T + A).item() == pytest.approx(1.0, abs=1e-12)
        assert R.item() == pytest.approx(0.65 / 1.1)
        assert A.item() == pytest.approx(0.0, abs=1e-12)

    def test_negative_result_is_clamped(self):
        R, T, A = apply_correction(
            torch.tensor([0.02], dtype=DTYPE), torch.tensor([0.5], dtype=DTYPE),
            torch.tensor([-0.1], dtype=DTYPE), torch.tensor([0.0], dtype=DTYPE))
        assert R.item() == 0.0
        assert A.item() == pytest.approx(0.5)

    def test_correction_output_apply(self):
        response = CorrectionOutput(0.05, -0.02).apply(BSDFResponse(0.3, 0.4, 0.3))
        assert response.reflectance == pytest.approx(0.35)
        assert response.transmittance == pytest.approx(0.38)
        assert response.is_energy_conserving()
        assert CorrectionOutput(0.03, 0.04).magnitude() == pytest.approx(0.05)


def test_correct_single_input():
    network = NeuralCorrectionMLP()
    output = network.correct(CorrectionInput(wavelength=500.0, cos_theta_i=0.7, cos_theta_o=0.7))
    assert abs(output.delta_reflectance) <= 0.1
    assert abs(output.delta_transmittance) <= 0.1
