"""
Neural Correction Network
Tiny SIREN (10 -> 32 -> 32 -> 2) producing bounded residuals (dR, dT)
on top of a physical BSDF, with a hand-written backward pass
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn

from hybrid_bsdf.bsdf_core import DTYPE, BSDFResponse, ContextBatch, normalize_energy, residual_absorption


FEATURE_DIM = 10
HIDDEN_DIM = 32
OUTPUT_DIM = 2

FEATURE_NAMES = (
    "wavelength",
    "cos_theta_i",
    "cos_theta_o",
    "roughness",
    "ior",
    "k",
    "thickness",
    "absorption",
    "scattering",
    "g",
)

# normalized = clamp((raw - offset) / scale, low, high)
_FEATURE_OFFSET = (400.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0)
_FEATURE_SCALE = (300.0, 1.0, 1.0, 1.0, 3.0, 10.0, 2000.0, 100.0, 100.0, 1.0)
_FEATURE_LOW = (0.0, -1.0, -1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, -1.0)
_FEATURE_HIGH = (1.0,) * FEATURE_DIM


@dataclass
class NeuralCorrectionConfig:
    """Network hyperparameters (architecture is fixed)"""
    omega_0: float = 30.0
    max_correction: float = 0.1
    seed: int = 42

    def __post_init__(self):
        if self.omega_0 <= 0.0:
            raise ValueError(f"omega_0 must be positive, got {self.omega_0}")
        if not 0.0 < self.max_correction <= 1.0:
            raise ValueError(f"max_correction must be in (0, 1], got {self.max_correction}")


def normalize_features(raw: torch.Tensor) -> torch.Tensor:
    """
    Map raw physical features to the network's input range

    Args:
        raw: [N, 10] in FEATURE_NAMES order (wavelength in nm, thickness in nm, ...)

    Returns:
        [N, 10] normalized features
    """
    raw = raw.to(DTYPE)
    offset = torch.tensor(_FEATURE_OFFSET, dtype=DTYPE)
    scale = torch.tensor(_FEATURE_SCALE, dtype=DTYPE)
    low = torch.tensor(_FEATURE_LOW, dtype=DTYPE)
    high = torch.tensor(_FEATURE_HIGH, dtype=DTYPE)
    return torch.max(torch.min((raw - offset) / scale, high), low)


def material_feature_tensor(material: Dict[str, float], n: int) -> torch.Tensor:
    """Repeat the 7 material descriptors (roughness ... g) for n contexts"""
    values = [float(material.get(name, 0.0)) for name in FEATURE_NAMES[3:]]
    if "ior" not in material:
        values[1] = 1.0
    return torch.tensor(values, dtype=DTYPE).unsqueeze(0).expand(n, -1)


def build_features(batch: ContextBatch, material: Dict[str, float]) -> torch.Tensor:
    """Normalized [N, 10] network input for a context batch and one material"""
    n = len(batch)
    geometry = torch.stack([batch.wavelength, batch.wi[:, 2], batch.wo[:, 2]], dim=-1)
    raw = torch.cat([geometry, material_feature_tensor(material, n)], dim=-1)
    return normalize_features(raw)


@dataclass(frozen=True)
class CorrectionInput:
    """Raw (unnormalized) descriptors of one evaluation"""
    wavelength: float
    cos_theta_i: float
    cos_theta_o: float
    roughness: float = 0.0
    ior: float = 1.5
    k: float = 0.0
    thickness: float = 0.0
    absorption: float = 0.0
    scattering: float = 0.0
    g: float = 0.0

    def raw(self) -> Tuple[float, ...]:
        return tuple(float(getattr(self, name)) for name in FEATURE_NAMES)

    def to_features(self) -> torch.Tensor:
        """Normalized feature vector [10]"""
        return normalize_features(torch.tensor([self.raw()], dtype=DTYPE))[0]


@dataclass(frozen=True)
class CorrectionOutput:
    delta_reflectance: float
    delta_transmittance: float

    def magnitude(self) -> float:
        return math.sqrt(self.delta_reflectance ** 2 + self.delta_transmittance ** 2)

    def apply(self, response: BSDFResponse) -> BSDFResponse:
        R, T, A = apply_correction(
            torch.tensor([response.reflectance], dtype=DTYPE),
            torch.tensor([response.transmittance], dtype=DTYPE),
            torch.tensor([self.delta_reflectance], dtype=DTYPE),
            torch.tensor([self.delta_transmittance], dtype=DTYPE),
        )
        return BSDFResponse(R.item(), T.item(), A.item())


def apply_correction(
    reflectance: torch.Tensor,
    transmittance: torch.Tensor,
    delta_reflectance: torch.Tensor,
    delta_transmittance: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Add bounded residuals to a physical (R, T) and restore energy conservation

    Absorption is never predicted; it is the residual 1 - R' - T'.
    """
    r = torch.clamp(reflectance + delta_reflectance, 0.0, 1.0)
    t = torch.clamp(transmittance + delta_transmittance, 0.0, 1.0)
    return normalize_energy(r, t, residual_absorption(r, t))


class NeuralCorrectionMLP(nn.Module):
    """
    SIREN correction network

    h0 = sin(omega_0 * (W0 x + b0))
    h1 = sin(W1 h0 + b1)
    out = max_correction * tanh(Wout h1 + bout)
    """

    def __init__(
        self,
        config: Optional[NeuralCorrectionConfig] = None,
        zero_init: bool = False
    ):
        super().__init__()
        self.config = config if config is not None else NeuralCorrectionConfig()

        self.layer0 = nn.Linear(FEATURE_DIM, HIDDEN_DIM, dtype=DTYPE)
        self.layer1 = nn.Linear(HIDDEN_DIM, HIDDEN_DIM, dtype=DTYPE)
        self.output = nn.Linear(HIDDEN_DIM, OUTPUT_DIM, dtype=DTYPE)

        if zero_init:
            self._zero_weights()
        else:
            self._initialize_weights(self.config.seed)

    @classmethod
    def zeros(cls, config: Optional[NeuralCorrectionConfig] = None) -> "NeuralCorrectionMLP":
        """All-zero network: output is exactly 0 everywhere"""
        return cls(config, zero_init=True)

    def _initialize_weights(self, seed: int):
        """SIREN initialization from a private, seeded generator"""
        generator = torch.Generator().manual_seed(int(seed))
        omega = self.config.omega_0
        bounds = {
            self.layer0: np.sqrt(6.0 / FEATURE_DIM) / omega,
            self.layer1: np.sqrt(6.0 / HIDDEN_DIM),
            self.output: np.sqrt(6.0 / HIDDEN_DIM),
        }
        with torch.no_grad():
            for layer in (self.layer0, self.layer1, self.output):
                c = float(bounds[layer])
                layer.weight.uniform_(-c, c, generator=generator)
                layer.bias.uniform_(-c, c, generator=generator)

    @classmethod
    def physical_start(cls, config: Optional[NeuralCorrectionConfig] = None) -> "NeuralCorrectionMLP":
        """
        SIREN hidden layers with a zeroed output layer

        The output is still exactly 0 everywhere, but the hidden activations
        are non-zero, so every layer receives a gradient once training moves
        the output weights.
        """
        network = cls(config)
        with torch.no_grad():
            network.output.weight.zero_()
            network.output.bias.zero_()
        return network

    def _zero_weights(self):
        with torch.no_grad():
            for p in self.parameters():
                p.zero_()

    @property
    def omega_0(self) -> float:
        return self.config.omega_0

    @property
    def max_correction(self) -> float:
        return self.config.max_correction

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: Normalized features [N, 10]

        Returns:
            (dR, dT) corrections [N, 2], each in [-max_correction, max_correction]
        """
        h0 = torch.sin(self.omega_0 * self.layer0(x))
        h1 = torch.sin(self.layer1(h0))
        return self.max_correction * torch.tanh(self.output(h1))

    def forward_cached(self, x: torch.Tensor) -> Tuple[torch.Tensor, Dict[str, torch.Tensor]]:
        """Forward pass keeping the activations needed by backward()"""
        with torch.no_grad():
            x = x.to(DTYPE)
            z0 = self.layer0(x)
            h0 = torch.sin(self.omega_0 * z0)
            z1 = self.layer1(h0)
            h1 = torch.sin(z1)
            t = torch.tanh(self.output(h1))
            out = self.max_correction * t
        cache = {"x": x, "z0": z0, "h0": h0, "z1": z1, "h1": h1, "t": t}
        return out, cache

    def backward(
        self,
        cache: Dict[str, torch.Tensor],
        grad_out: torch.Tensor
    ) -> Dict[str, torch.Tensor]:
        """
        Manual backpropagation

        Args:
            cache: Activations from forward_cached
            grad_out: dL/d(out) [N, 2]

        Returns:
            Gradients keyed like named_parameters()
        """
        with torch.no_grad():
            W1 = self.layer1.weight.detach()
            W_out = self.output.weight.detach()

            # out = m * tanh(z2)
            g_z2 = grad_out * self.max_correction * (1.0 - cache["t"] ** 2)
            g_w_out = g_z2.t() @ cache["h1"]
            g_b_out = g_z2.sum(dim=0)

            # h1 = sin(z1)
            g_z1 = (g_z2 @ W_out) * torch.cos(cache["z1"])
            g_w1 = g_z1.t() @ cache["h0"]
            g_b1 = g_z1.sum(dim=0)

            # h0 = sin(omega * z0)
            g_z0 = (g_z1 @ W1) * self.omega_0 * torch.cos(self.omega_0 * cache["z0"])
            g_w0 = g_z0.t() @ cache["x"]
            g_b0 = g_z0.sum(dim=0)

        return {
            "layer0.weight": g_w0,
            "layer0.bias": g_b0,
            "layer1.weight": g_w1,
            "layer1.bias": g_b1,
            "output.weight": g_w_out,
            "output.bias": g_b_out,
        }

    def correct(self, correction_input: CorrectionInput) -> CorrectionOutput:
        with torch.no_grad():
            out = self.forward(correction_input.to_features().unsqueeze(0))[0]
        return CorrectionOutput(out[0].item(), out[1].item())

    def param_count(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def memory_bytes(self) -> int:
        return sum(p.numel() * p.element_size() for p in self.parameters())

    def get_flat_params(self) -> torch.Tensor:
        return torch.cat([p.detach().reshape(-1) for p in self.parameters()]).clone()

    def set_flat_params(self, flat: torch.Tensor):
        flat = torch.as_tensor(flat, dtype=DTYPE).reshape(-1)
        if flat.numel() != self.param_count():
            raise ValueError(f"Expected {self.param_count()} parameters, got {flat.numel()}")
        offset = 0
        with torch.no_grad():
            for p in self.parameters():
                n = p.numel()
                p.copy_(flat[offset:offset + n].reshape(p.shape))
                offset += n

    def freeze(self) -> "NeuralCorrectionMLP":
        """Make this instance read-only for inference"""
        for p in self.parameters():
            p.requires_grad_(False)
        self.eval()
        return self

    def frozen_copy(self) -> "NeuralCorrectionMLP":
        """Independent, frozen snapshot of the current weights"""
        snapshot = NeuralCorrectionMLP(NeuralCorrectionConfig(**vars(self.config)), zero_init=True)
        snapshot.load_state_dict({k: v.detach().clone() for k, v in self.state_dict().items()})
        return snapshot.freeze()

    def is_zero(self) -> bool:
        return all(bool((p == 0).all()) for p in self.parameters())

    def save(self, path: str):
        """Save weights and hyperparameters"""
        torch.save({
            'model_state_dict': self.state_dict(),
            'omega_0': self.config.omega_0,
            'max_correction': self.config.max_correction,
            'seed': self.config.seed,
        }, path)

    @staticmethod
    def load(path: str, device='cpu') -> "NeuralCorrectionMLP":
        """Load a frozen network from file"""
        checkpoint = torch.load(path, map_location=device)
        config = NeuralCorrectionConfig(
            omega_0=checkpoint['omega_0'],
            max_correction=checkpoint['max_correction'],
            seed=checkpoint['seed'],
        )
        model = NeuralCorrectionMLP(config, zero_init=True)
        model.load_state_dict(checkpoint['model_state_dict'])
        return model.freeze()
