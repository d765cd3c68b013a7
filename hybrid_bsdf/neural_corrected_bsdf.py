"""
Hybrid Physical-Neural BSDF
Physical model output plus a bounded neural residual, with an exact
physical fallback and lock-free network swapping
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import torch

from hybrid_bsdf.bsdf_core import BSDFContext, ContextBatch, Vector3
from hybrid_bsdf.bsdf_models import BSDF, describe_material
from hybrid_bsdf.neural_correction import (
    NeuralCorrectionMLP,
    apply_correction,
    build_features,
    material_feature_tensor,
    normalize_features,
)
from hybrid_bsdf.perceptual import delta_e_reflectance


@dataclass(frozen=True)
class ComparisonMetrics:
    """Hybrid-vs-physical differences over a set of contexts"""
    num_samples: int
    mean_abs_delta_reflectance: float
    max_abs_delta_reflectance: float
    mean_abs_delta_transmittance: float
    max_abs_delta_transmittance: float
    mean_delta_e: float
    max_energy_error: float

    def to_dict(self) -> Dict[str, float]:
        return dict(vars(self))


class NeuralCorrectedBSDF(BSDF):
    """
    Physical BSDF refined by a NeuralCorrectionMLP

    The wrapper owns one physical model, one frozen network snapshot and an
    enable flag. Disabling it returns the physical output unchanged.
    """

    def __init__(
        self,
        physical: BSDF,
        network: Optional[NeuralCorrectionMLP] = None,
        enabled: bool = True,
        material_features: Optional[Dict[str, float]] = None
    ):
        if not isinstance(physical, BSDF):
            raise ValueError(f"{physical!r} is not a BSDF")
        super().__init__(params=getattr(physical, "params", None))
        self.physical = physical
        self._network = (network if network is not None else NeuralCorrectionMLP.zeros()).frozen_copy()
        self._enabled = bool(enabled)
        self._version = 0
        self._material = dict(material_features) if material_features is not None else physical.material_features()

        self.kind = f"neural_{physical.kind}"
        self.fresnel_monotonic = physical.fresnel_monotonic

    # Enable / disable -----------------------------------------------------

    def enable(self):
        self._enabled = True

    def disable(self):
        self._enabled = False

    def set_enabled(self, enabled: bool):
        self._enabled = bool(enabled)

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    # Network snapshots ----------------------------------------------------

    @property
    def network(self) -> NeuralCorrectionMLP:
        return self._network

    @property
    def version(self) -> int:
        """Incremented on every swap"""
        return self._version

    def swap_network(self, network: NeuralCorrectionMLP) -> NeuralCorrectionMLP:
        """
        Publish a new network for future evaluations

        The new snapshot is copied and frozen first, then made visible with a
        single reference assignment; evaluations already running keep the
        snapshot they started with.

        Returns:
            The previous snapshot
        """
        if not isinstance(network, NeuralCorrectionMLP):
            raise ValueError(f"{network!r} is not a NeuralCorrectionMLP")
        snapshot = network.frozen_copy()
        previous = self._network
        self._network = snapshot
        self._version += 1
        return previous

    # Evaluation -----------------------------------------------------------

    def material_features(self) -> Dict[str, float]:
        return dict(self._material)

    def features_for(self, batch: ContextBatch) -> torch.Tensor:
        """
        Normalized network input, honoring per-context material overrides

        An override may be a parameter object, a BSDF or a mapping of
        descriptor names to values; anything else raises ValueError.
        """
        features = build_features(batch, self._material)
        if batch.materials is None:
            return features
        rows = []
        for i, material in enumerate(batch.materials):
            if material is None:
                rows.append(features[i])
                continue
            raw = torch.cat([
                torch.stack([batch.wavelength[i], batch.wi[i, 2], batch.wo[i, 2]]),
                material_feature_tensor(describe_material(material), 1)[0],
            ])
            rows.append(normalize_features(raw.unsqueeze(0))[0])
        return torch.stack(rows)

    def correction(self, batch: ContextBatch, network: Optional[NeuralCorrectionMLP] = None) -> torch.Tensor:
        """Raw (dR, dT) network output [N, 2]"""
        network = self._network if network is None else network
        with torch.no_grad():
            return network(self.features_for(batch))

    def evaluate_batch(self, batch: ContextBatch):
        R, T, A = self.physical.evaluate_batch(batch)
        if not self._enabled:
            return R, T, A
        network = self._network
        delta = self.correction(batch, network)
        return apply_correction(R, T, delta[:, 0], delta[:, 1])

    def evaluate_physical(self, ctx: BSDFContext):
        return self.physical.evaluate(ctx)

    @property
    def reciprocity_mode(self) -> Optional[str]:
        # The correction reads cos_i and cos_o separately, so it is checked on general pairs
        if not self._enabled:
            return self.physical.reciprocity_mode
        return "pairs"

    def reciprocity_value(self, batch: ContextBatch) -> torch.Tensor:
        """
        Physical pair quantity (for models checked on general pairs) followed
        by the correction (dR, dT), which must be symmetric under wi <-> wo
        """
        if not self._enabled:
            return self.physical.reciprocity_value(batch)
        delta = self.correction(batch)
        values = [delta[:, 0], delta[:, 1]]
        if self.physical.reciprocity_mode == "pairs":
            values.insert(0, self.physical.reciprocity_value(batch))
        return torch.cat(values)

    def is_delta(self) -> bool:
        return self.physical.is_delta()

    def transmitted_direction(self, ctx: BSDFContext) -> Vector3:
        return self.physical.transmitted_direction(ctx)

    # Reporting ------------------------------------------------------------

    def compare(self, contexts: Sequence[BSDFContext]) -> ComparisonMetrics:
        """Differences between the corrected and the purely physical output"""
        contexts = list(contexts)
        if not contexts:
            return ComparisonMetrics(0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
        batch = ContextBatch.from_contexts(contexts)
        R_phys, T_phys, _ = self.physical.evaluate_batch(batch)
        network = self._network
        delta = self.correction(batch, network)
        R, T, A = apply_correction(R_phys, T_phys, delta[:, 0], delta[:, 1])

        dR = (R - R_phys).abs()
        dT = (T - T_phys).abs()
        return ComparisonMetrics(
            num_samples=len(contexts),
            mean_abs_delta_reflectance=float(dR.mean()),
            max_abs_delta_reflectance=float(dR.max()),
            mean_abs_delta_transmittance=float(dT.mean()),
            max_abs_delta_transmittance=float(dT.max()),
            mean_delta_e=float(delta_e_reflectance(R, R_phys).mean()),
            max_energy_error=float((R + T + A - 1.0).abs().max()),
        )

    def memory_bytes(self) -> int:
        return self.physical.memory_bytes() + self._network.memory_bytes()

    def __repr__(self) -> str:
        state = "enabled" if self._enabled else "disabled"
        return f"NeuralCorrectedBSDF({self.physical!r}, {state}, version={self._version})"
