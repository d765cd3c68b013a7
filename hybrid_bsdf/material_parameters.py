"""
Material Parameters and Preset Tables
Per-variant physical constants plus immutable preset lookups
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Tuple, Union

import numpy as np


RGBTriple = Tuple[float, float, float]
ScalarOrRGB = Union[float, RGBTriple]


# Material kind identifiers (shared with dataset material ids)
MATERIAL_KINDS = MappingProxyType({
    "dielectric": 0,
    "conductor": 1,
    "thin_film": 2,
    "anisotropic": 3,
    "subsurface": 4,
    "lambertian": 5,
    "layered": 6,
})


def as_rgb(value: ScalarOrRGB) -> RGBTriple:
    """Broadcast a scalar to an (r, g, b) triple"""
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.size == 1:
        v = float(arr[0])
        return (v, v, v)
    if arr.size != 3:
        raise ValueError(f"Expected a scalar or an (r, g, b) triple, got {arr.size} values")
    return (float(arr[0]), float(arr[1]), float(arr[2]))


def rgb_mean(value: ScalarOrRGB) -> float:
    return float(np.mean(as_rgb(value)))


def clamp_roughness(roughness: float) -> float:
    """Perceptual roughness in [0, 1]; NaN means smooth"""
    r = float(roughness)
    if np.isnan(r):
        return 0.0
    return float(np.clip(r, 0.0, 1.0))


def _features(
    roughness: float = 0.0,
    ior: float = 1.0,
    k: float = 0.0,
    thickness: float = 0.0,
    absorption: float = 0.0,
    scattering: float = 0.0,
    g: float = 0.0
) -> Dict[str, float]:
    return {
        "roughness": float(roughness),
        "ior": float(ior),
        "k": float(k),
        "thickness": float(thickness),
        "absorption": float(absorption),
        "scattering": float(scattering),
        "g": float(g),
    }


@dataclass(frozen=True)
class DielectricParameters:
    """Real IOR with optional dispersion (Abbe number) and Beer-Lambert absorption"""
    ior: float = 1.5
    abbe_number: float = 0.0          # 0 disables dispersion
    absorption_coefficient: float = 0.0  # mm^-1
    thickness: float = 0.0               # mm
    roughness: float = 0.0

    def __post_init__(self):
        if not self.ior > 0.0:
            raise ValueError(f"Dielectric IOR must be positive, got {self.ior}")
        if self.absorption_coefficient < 0.0 or self.thickness < 0.0:
            raise ValueError("Absorption coefficient and thickness must be non-negative")
        object.__setattr__(self, "roughness", clamp_roughness(self.roughness))

    def features(self) -> Dict[str, float]:
        return _features(roughness=self.roughness, ior=self.ior, absorption=self.absorption_coefficient)


@dataclass(frozen=True)
class ConductorParameters:
    """Complex IOR n + ik, scalar or per RGB channel (650/550/450 nm)"""
    n: ScalarOrRGB = 0.18
    k: ScalarOrRGB = 3.0
    roughness: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "n", as_rgb(self.n))
        object.__setattr__(self, "k", as_rgb(self.k))
        if min(self.n) <= 0.0 or min(self.k) < 0.0:
            raise ValueError(f"Invalid complex IOR n={self.n}, k={self.k}")
        object.__setattr__(self, "roughness", clamp_roughness(self.roughness))

    def features(self) -> Dict[str, float]:
        # Green channel is the representative value
        return _features(roughness=self.roughness, ior=self.n[1], k=self.k[1])


@dataclass(frozen=True)
class ThinFilmParameters:
    """Layer stack (ior, thickness in nm), top to bottom, over a substrate"""
    layers: Tuple[Tuple[float, float], ...] = ((1.38, 99.6),)
    substrate_ior: float = 1.5
    substrate_k: float = 0.0
    ambient_ior: float = 1.0
    roughness: float = 0.0  # substrate roughness

    def __post_init__(self):
        layers = tuple((float(n), float(d)) for n, d in self.layers)
        if len(layers) == 0:
            raise ValueError("Thin film needs at least one layer")
        for n, d in layers:
            if n <= 0.0 or d < 0.0:
                raise ValueError(f"Invalid layer (ior={n}, thickness={d})")
        if self.substrate_ior <= 0.0 or self.ambient_ior <= 0.0:
            raise ValueError("Substrate and ambient IOR must be positive")
        object.__setattr__(self, "layers", layers)
        object.__setattr__(self, "roughness", clamp_roughness(self.roughness))

    @property
    def total_thickness(self) -> float:
        return sum(d for _, d in self.layers)

    def features(self) -> Dict[str, float]:
        return _features(
            roughness=self.roughness,
            ior=self.layers[0][0],
            k=self.substrate_k,
            thickness=self.total_thickness,
        )


@dataclass(frozen=True)
class AnisotropicParameters:
    """Two GGX roughness values plus the Fresnel IOR (k > 0 for metals)"""
    alpha_x: float = 0.3
    alpha_y: float = 0.3
    ior: float = 1.5
    k: float = 0.0

    def __post_init__(self):
        if not self.ior > 0.0 or self.k < 0.0:
            raise ValueError(f"Invalid IOR n={self.ior}, k={self.k}")
        object.__setattr__(self, "alpha_x", float(np.clip(self.alpha_x, 0.001, 1.0)))
        object.__setattr__(self, "alpha_y", float(np.clip(self.alpha_y, 0.001, 1.0)))

    @property
    def roughness(self) -> float:
        """Perceptual roughness equivalent (sqrt of the mean alpha)"""
        return float(np.sqrt(0.5 * (self.alpha_x + self.alpha_y)))

    def features(self) -> Dict[str, float]:
        return _features(roughness=self.roughness, ior=self.ior, k=self.k)


@dataclass(frozen=True)
class SubsurfaceParameters:
    """Absorption / scattering coefficients (mm^-1, RGB), phase asymmetry g and surface IOR"""
    sigma_a: ScalarOrRGB = (0.032, 0.17, 0.48)
    sigma_s: ScalarOrRGB = (0.74, 0.88, 1.01)
    g: float = 0.0
    eta: float = 1.3
    thickness: float = 0.0  # mm, 0 for a semi-infinite medium

    def __post_init__(self):
        object.__setattr__(self, "sigma_a", as_rgb(self.sigma_a))
        object.__setattr__(self, "sigma_s", as_rgb(self.sigma_s))
        object.__setattr__(self, "g", float(np.clip(self.g, -0.99, 0.99)))
        if min(self.sigma_a) < 0.0 or min(self.sigma_s) < 0.0:
            raise ValueError("Scattering coefficients must be non-negative")
        if max(self.sigma_a) + max(self.sigma_s) <= 0.0:
            raise ValueError("Subsurface medium needs non-zero extinction")
        if not self.eta > 0.0 or self.thickness < 0.0:
            raise ValueError(f"Invalid eta={self.eta} or thickness={self.thickness}")

    def features(self) -> Dict[str, float]:
        return _features(
            ior=self.eta,
            absorption=rgb_mean(self.sigma_a),
            scattering=rgb_mean(self.sigma_s),
            g=self.g,
        )


@dataclass(frozen=True)
class LambertianParameters:
    albedo: float = 0.8

    def __post_init__(self):
        object.__setattr__(self, "albedo", float(np.clip(self.albedo, 0.0, 1.0)))

    def features(self) -> Dict[str, float]:
        return _features(roughness=1.0)


# Metal complex IOR at R, G, B (650 / 550 / 450 nm)
METAL_PRESETS = MappingProxyType({
    "gold": ConductorParameters(n=(0.18, 0.42, 1.47), k=(3.00, 2.35, 1.95)),
    "silver": ConductorParameters(n=(0.15, 0.13, 0.14), k=(3.64, 3.04, 2.54)),
    "copper": ConductorParameters(n=(0.27, 0.68, 1.13), k=(3.41, 2.63, 2.57)),
    "aluminum": ConductorParameters(n=(1.35, 0.96, 0.62), k=(7.47, 6.39, 5.31)),
    "iron": ConductorParameters(n=(2.91, 2.95, 2.80), k=(3.08, 3.47, 3.00)),
    "chromium": ConductorParameters(n=(3.18, 3.14, 2.98), k=(3.19, 3.34, 3.36)),
    "titanium": ConductorParameters(n=(2.73, 2.16, 1.94), k=(3.82, 2.94, 2.58)),
    "nickel": ConductorParameters(n=(2.01, 1.83, 1.65), k=(4.05, 3.56, 3.07)),
    "platinum": ConductorParameters(n=(2.38, 2.07, 1.72), k=(4.36, 3.68, 3.06)),
    "brass": ConductorParameters(n=(0.44, 0.58, 0.95), k=(3.22, 2.85, 2.40)),
    "bronze": ConductorParameters(n=(0.35, 0.55, 0.85), k=(3.30, 2.70, 2.35)),
    "tungsten": ConductorParameters(n=(3.54, 3.32, 2.76), k=(2.86, 2.84, 2.51)),
})

# Scattering media (coefficients in mm^-1 at R, G, B)
SUBSURFACE_PRESETS = MappingProxyType({
    "skin": SubsurfaceParameters(
        sigma_a=(0.032, 0.17, 0.48), sigma_s=(0.74, 0.88, 1.01), g=0.8, eta=1.3),
    "marble": SubsurfaceParameters(
        sigma_a=(0.0021, 0.0041, 0.0071), sigma_s=(2.19, 2.62, 3.00), g=0.0, eta=1.5),
    "milk": SubsurfaceParameters(
        sigma_a=(0.0015, 0.0046, 0.019), sigma_s=(2.55, 3.21, 3.77), g=0.7, eta=1.35),
    "jade": SubsurfaceParameters(
        sigma_a=(0.1, 0.01, 0.05), sigma_s=(1.5, 1.8, 1.6), g=0.3, eta=1.6),
    "wax": SubsurfaceParameters(
        sigma_a=(0.001, 0.002, 0.005), sigma_s=(1.8, 1.9, 2.0), g=0.6, eta=1.4),
    "soap": SubsurfaceParameters(
        sigma_a=(0.0001, 0.0001, 0.0003), sigma_s=(1.0, 1.1, 1.2), g=0.4, eta=1.4),
})

DIELECTRIC_PRESETS = MappingProxyType({
    "glass": DielectricParameters(ior=1.52),
    "crown_glass": DielectricParameters(ior=1.52, abbe_number=64.0),
    "flint_glass": DielectricParameters(ior=1.62, abbe_number=36.0),
    "water": DielectricParameters(ior=1.33),
    "diamond": DielectricParameters(ior=2.42, abbe_number=55.0),
    "frosted_glass": DielectricParameters(ior=1.52, roughness=0.3),
})


def lookup_preset(table, name: str):
    """Case-insensitive preset lookup"""
    key = str(name).strip().lower().replace(" ", "_")
    if key not in table:
        raise ValueError(f"Unknown preset '{name}'. Available: {', '.join(sorted(table))}")
    return table[key]
