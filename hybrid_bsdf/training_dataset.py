"""
Training Dataset
Seeded generation of (features, physical response, reference response)
samples for the neural correction
"""

import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import torch

from hybrid_bsdf.bsdf_core import DTYPE, ContextBatch
from hybrid_bsdf.bsdf_models import BSDF, Fresnel
from hybrid_bsdf.neural_correction import FEATURE_NAMES, CorrectionInput, normalize_features


Response = Tuple[float, float, float]


@dataclass(frozen=True)
class TrainingSample:
    """One supervised example: what the physical model says vs. what it should say"""
    input: CorrectionInput
    physical_response: Response
    target_response: Response
    material_id: str = ""

    @property
    def target_correction(self) -> Tuple[float, float]:
        """(dR, dT) that would turn the physical response into the target"""
        return (
            self.target_response[0] - self.physical_response[0],
            self.target_response[1] - self.physical_response[1],
        )

    def error(self) -> float:
        dR, dT = self.target_correction
        return math.sqrt(dR * dR + dT * dT)

    @classmethod
    def from_correction(
        cls,
        correction_input: CorrectionInput,
        physical_response: Response,
        delta_reflectance: float,
        delta_transmittance: float,
        material_id: str = ""
    ) -> "TrainingSample":
        R, T, _ = physical_response
        r = min(max(R + delta_reflectance, 0.0), 1.0)
        t = min(max(T + delta_transmittance, 0.0), 1.0 - r)
        return cls(correction_input, tuple(physical_response), (r, t, 1.0 - r - t), material_id)


@dataclass
class AugmentationConfig:
    wavelength_jitter: float = 5.0   # nm
    angle_noise: float = 0.02        # on cosines
    param_noise: float = 0.05        # relative
    copies: int = 1


@dataclass
class DatasetMetadata:
    source: str = "custom"
    seed: Optional[int] = None
    num_materials: int = 0
    angle_samples: int = 0
    wavelength_samples: int = 0
    extra: Dict = field(default_factory=dict)


def _reference_response(ior, k, roughness, cos_theta) -> Response:
    """Exact Fresnel with roughness attenuation (synthetic ground truth)"""
    cos = torch.tensor([cos_theta], dtype=DTYPE)
    if k > 0.01:
        R = Fresnel.conductor(cos, ior, k).item() * (1.0 - roughness * 0.3)
        R = min(max(R, 0.0), 1.0)
        return (R, 0.0, 1.0 - R)
    R = Fresnel.dielectric(cos, torch.tensor(ior, dtype=DTYPE)).item() * (1.0 - roughness * 0.2)
    R = min(max(R, 0.0), 1.0)
    T = min((1.0 - R) * (1.0 - roughness * 0.1), 1.0 - R)
    return (R, T, 1.0 - R - T)


def _approximate_response(ior, k, roughness, cos_theta) -> Response:
    """Schlick approximation with a different roughness model (the fast physical path)"""
    if k > 0.01:
        n2_k2 = ior * ior + k * k
        f0 = min((n2_k2 - 2.0 * ior + 1.0) / (n2_k2 + 2.0 * ior + 1.0), 1.0)
    else:
        f0 = ((ior - 1.0) / (ior + 1.0)) ** 2
    R = Fresnel.schlick(torch.tensor([cos_theta], dtype=DTYPE), f0).item()
    R = min(max(R * (1.0 - roughness * 0.15), 0.0), 1.0)
    T = 0.0 if k > 0.01 else min(max((1.0 - R) * (1.0 - roughness * 0.05), 0.0), 1.0 - R)
    return (R, T, 1.0 - R - T)


class TrainingDataset:
    """Ordered collection of TrainingSample with seeded generators and transforms"""

    def __init__(
        self,
        samples: Optional[Iterable[TrainingSample]] = None,
        metadata: Optional[DatasetMetadata] = None
    ):
        self.samples: List[TrainingSample] = list(samples) if samples is not None else []
        self.metadata = metadata if metadata is not None else DatasetMetadata()

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[TrainingSample]:
        return iter(self.samples)

    def __getitem__(self, index) -> TrainingSample:
        return self.samples[index]

    def is_empty(self) -> bool:
        return len(self.samples) == 0

    def add_sample(self, sample: TrainingSample):
        self.samples.append(sample)

    def extend(self, samples: Iterable[TrainingSample]):
        self.samples.extend(samples)

    # Generators -----------------------------------------------------------

    @classmethod
    def generate_synthetic(
        cls,
        num_materials: int = 20,
        angle_samples: int = 10,
        wavelength_samples: int = 8,
        seed: int = 42
    ) -> "TrainingDataset":
        """
        Random dielectrics and conductors, reference = exact Fresnel,
        physical = Schlick approximation

        Args:
            num_materials: Number of random materials
            angle_samples: Stratified cosine samples per material
            wavelength_samples: Wavelengths per angle across 400-700 nm
            seed: RNG seed

        Returns:
            TrainingDataset of num_materials * angle_samples * wavelength_samples samples
        """
        rng = np.random.default_rng(seed)
        wavelengths = [400.0 + i * 300.0 / wavelength_samples for i in range(wavelength_samples)]
        samples = []

        for mat_idx in range(num_materials):
            ior = 1.0 + rng.uniform(0.0, 3.0)
            roughness = rng.uniform(0.0, 1.0)
            k = rng.uniform(0.0, 5.0)
            is_conductor = rng.uniform(0.0, 1.0) > 0.7
            k = k if is_conductor else 0.0

            for angle_idx in range(angle_samples):
                cos_theta = (angle_idx + rng.uniform(0.0, 1.0)) / angle_samples
                cos_theta = min(max(cos_theta, 0.01), 1.0)
                reference = _reference_response(ior, k, roughness, cos_theta)
                physical = _approximate_response(ior, k, roughness, cos_theta)

                for wavelength in wavelengths:
                    correction_input = CorrectionInput(
                        wavelength=wavelength,
                        cos_theta_i=cos_theta,
                        cos_theta_o=cos_theta,
                        roughness=roughness,
                        ior=ior,
                        k=k,
                    )
                    samples.append(TrainingSample(
                        correction_input, physical, reference, material_id=f"synthetic_{mat_idx}"))

        metadata = DatasetMetadata(
            source="synthetic",
            seed=seed,
            num_materials=num_materials,
            angle_samples=angle_samples,
            wavelength_samples=wavelength_samples,
        )
        return cls(samples, metadata)

    @classmethod
    def generate_test_dataset(cls, seed: int = 42) -> "TrainingDataset":
        """Small synthetic set (5 materials x 5 angles x 3 wavelengths)"""
        return cls.generate_synthetic(5, 5, 3, seed)

    @classmethod
    def constant_correction(
        cls,
        physical_response: Response,
        delta_reflectance: float,
        delta_transmittance: float,
        num_samples: int = 64,
        seed: int = 42,
        material: Optional[Dict[str, float]] = None
    ) -> "TrainingDataset":
        """Samples whose target is the physical response shifted by a fixed (dR, dT)"""
        rng = np.random.default_rng(seed)
        material = material if material is not None else {"ior": 1.5}
        samples = []
        for i in range(num_samples):
            cos_theta = float(rng.uniform(0.05, 1.0))
            correction_input = CorrectionInput(
                wavelength=float(rng.uniform(400.0, 700.0)),
                cos_theta_i=cos_theta,
                cos_theta_o=cos_theta,
                **material,
            )
            samples.append(TrainingSample.from_correction(
                correction_input, physical_response, delta_reflectance, delta_transmittance,
                material_id="constant"))
        metadata = DatasetMetadata(source="constant", seed=seed, num_materials=1,
                                   extra={"delta": (delta_reflectance, delta_transmittance)})
        return cls(samples, metadata)

    @classmethod
    def from_bsdf_pair(
        cls,
        reference: BSDF,
        approximate: BSDF,
        angles: Sequence[float] = (0.0, 15.0, 30.0, 45.0, 60.0, 75.0),
        wavelengths: Sequence[float] = (450.0, 550.0, 650.0),
        material_id: str = "pair"
    ) -> "TrainingDataset":
        """Reference renderer vs. fast physical model on an angle x wavelength grid"""
        cos = torch.cos(torch.deg2rad(torch.tensor(angles, dtype=DTYPE)))
        wl = torch.tensor(wavelengths, dtype=DTYPE)
        cos_grid, wl_grid = torch.meshgrid(cos, wl, indexing="ij")
        batch = ContextBatch.from_cosines(cos_grid.reshape(-1), wl_grid.reshape(-1))

        target = torch.stack(reference.evaluate_batch(batch), dim=-1).tolist()
        physical = torch.stack(approximate.evaluate_batch(batch), dim=-1).tolist()
        material = approximate.material_features()

        samples = []
        for i in range(len(batch)):
            correction_input = CorrectionInput(
                wavelength=batch.wavelength[i].item(),
                cos_theta_i=batch.wi[i, 2].item(),
                cos_theta_o=batch.wo[i, 2].item(),
                **material,
            )
            samples.append(TrainingSample(
                correction_input, tuple(physical[i]), tuple(target[i]), material_id))
        metadata = DatasetMetadata(source="bsdf_pair", num_materials=1,
                                   angle_samples=len(angles), wavelength_samples=len(wavelengths))
        return cls(samples, metadata)

    # Transforms -----------------------------------------------------------

    def shuffled(self, seed: int = 42) -> "TrainingDataset":
        generator = torch.Generator().manual_seed(int(seed))
        order = torch.randperm(len(self.samples), generator=generator).tolist()
        return TrainingDataset([self.samples[i] for i in order], replace(self.metadata))

    def split(self, train_fraction: float = 0.8, seed: int = 42) -> Tuple["TrainingDataset", "TrainingDataset"]:
        """Seeded shuffle then split into (train, validation)"""
        if not 0.0 <= train_fraction <= 1.0:
            raise ValueError(f"train_fraction must be in [0, 1], got {train_fraction}")
        shuffled = self.shuffled(seed)
        n_train = int(round(len(shuffled) * train_fraction))
        return (
            TrainingDataset(shuffled.samples[:n_train], replace(self.metadata)),
            TrainingDataset(shuffled.samples[n_train:], replace(self.metadata)),
        )

    def augment(self, config: Optional[AugmentationConfig] = None, seed: int = 42) -> "TrainingDataset":
        """Original samples plus jittered copies (inputs perturbed, responses kept)"""
        config = config if config is not None else AugmentationConfig()
        rng = np.random.default_rng(seed)
        augmented = list(self.samples)
        for _ in range(config.copies):
            for sample in self.samples:
                x = sample.input
                cos_i = float(np.clip(x.cos_theta_i + rng.normal(0.0, config.angle_noise), 0.0, 1.0))
                cos_o = float(np.clip(x.cos_theta_o + rng.normal(0.0, config.angle_noise), 0.0, 1.0))
                scale = 1.0 + rng.normal(0.0, config.param_noise)
                jittered = replace(
                    x,
                    wavelength=float(np.clip(
                        x.wavelength + rng.uniform(-config.wavelength_jitter, config.wavelength_jitter),
                        380.0, 780.0)),
                    cos_theta_i=cos_i,
                    cos_theta_o=cos_o,
                    roughness=float(np.clip(x.roughness * scale, 0.0, 1.0)),
                    ior=max(1.0, x.ior * scale),
                    k=max(0.0, x.k * scale),
                )
                augmented.append(replace(sample, input=jittered))
        metadata = replace(self.metadata, extra={**self.metadata.extra, "augmented": True})
        return TrainingDataset(augmented, metadata)

    # Views ----------------------------------------------------------------

    def to_tensors(self) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Returns:
            features: Normalized network input [N, 10]
            physical: Physical (R, T, A) [N, 3]
            target: Target (R, T, A) [N, 3]
        """
        if self.is_empty():
            empty = torch.zeros((0, 3), dtype=DTYPE)
            return torch.zeros((0, len(FEATURE_NAMES)), dtype=DTYPE), empty, empty.clone()
        raw = torch.tensor([s.input.raw() for s in self.samples], dtype=DTYPE)
        physical = torch.tensor([s.physical_response for s in self.samples], dtype=DTYPE)
        target = torch.tensor([s.target_response for s in self.samples], dtype=DTYPE)
        return normalize_features(raw), physical, target

    def statistics(self) -> Dict[str, float]:
        if self.is_empty():
            return {"num_samples": 0, "mean_error": 0.0, "max_error": 0.0, "num_materials": 0}
        errors = [s.error() for s in self.samples]
        return {
            "num_samples": len(self.samples),
            "mean_error": float(np.mean(errors)),
            "max_error": float(np.max(errors)),
            "num_materials": len({s.material_id for s in self.samples}),
        }
