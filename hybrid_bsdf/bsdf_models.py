"""
Physical BSDF Models
- Exact dielectric Fresnel with Beer-Lambert absorption and dispersion
- Complex-IOR conductor Fresnel
- Multilayer thin-film interference (transfer matrix)
- Anisotropic GGX with height-correlated Smith masking-shadowing
- Dipole-diffusion subsurface scattering (Jensen 2001)
- Layered composition of any of the above
- Cosine-weighted and delta importance sampling
"""

import dataclasses
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import torch

from hybrid_bsdf.bsdf_core import (
    DTYPE,
    RGB_WAVELENGTHS,
    BSDFContext,
    BSDFResponse,
    BSDFSample,
    Vector3,
    ContextBatch,
    normalize_energy,
    residual_absorption,
    sanitize_random,
)
from hybrid_bsdf.material_parameters import (
    AnisotropicParameters,
    ConductorParameters,
    DielectricParameters,
    LambertianParameters,
    SubsurfaceParameters,
    ThinFilmParameters,
    DIELECTRIC_PRESETS,
    METAL_PRESETS,
    SUBSURFACE_PRESETS,
    RGBTriple,
    lookup_preset,
)


COMPLEX_DTYPE = torch.complex128

# Incidence angles (degrees) used by the built-in energy check
ENERGY_TEST_ANGLES = (0.0, 15.0, 30.0, 45.0, 60.0, 75.0, 85.0)

# Below this roughness a surface scatters only into mirror / refracted directions
SMOOTH_ROUGHNESS = 0.01


def reflect(wi: Vector3, normal: Vector3) -> Vector3:
    """Mirror image of wi about the normal"""
    wi = np.asarray(wi, dtype=np.float64)
    normal = np.asarray(normal, dtype=np.float64)
    wo = 2.0 * np.dot(wi, normal) * normal - wi
    return tuple(float(c) for c in wo)


def refract(wi: Vector3, normal: Vector3, eta: float) -> Optional[Vector3]:
    """
    Snell refraction into the medium below the surface

    Args:
        wi: Incident direction (pointing away from the surface)
        normal: Surface normal on the incident side
        eta: Relative IOR n_t / n_i

    Returns:
        Transmitted direction (pointing into the surface), None under total internal reflection
    """
    wi = np.asarray(wi, dtype=np.float64)
    normal = np.asarray(normal, dtype=np.float64)
    cos_i = float(np.clip(np.dot(wi, normal), 0.0, 1.0))
    sin2_t = (1.0 - cos_i * cos_i) / (eta * eta)
    if sin2_t >= 1.0:
        return None
    cos_t = math.sqrt(1.0 - sin2_t)
    wt = -wi / eta + (cos_i / eta - cos_t) * normal
    return tuple(float(c) for c in wt)


def interpolate_rgb(values: RGBTriple, wavelength: torch.Tensor) -> torch.Tensor:
    """
    Piecewise-linear spectrum through the (650, 550, 450) nm channel values

    Args:
        values: (r, g, b) channel values
        wavelength: Wavelengths in nm [N]

    Returns:
        Interpolated values [N], held constant outside [450, 650] nm
    """
    r, g, b = values
    wl = wavelength.clamp(RGB_WAVELENGTHS["b"], RGB_WAVELENGTHS["r"])
    blue_green = b + (g - b) * (wl - 450.0) / 100.0
    green_red = g + (r - g) * (wl - 550.0) / 100.0
    return torch.where(wl <= 550.0, blue_green, green_red)


class Fresnel:
    """Fresnel reflectance at a single interface"""

    @staticmethod
    def dielectric(
        cos_theta_i: torch.Tensor,
        eta: torch.Tensor
    ) -> torch.Tensor:
        """
        Exact unpolarized Fresnel reflectance for a real relative IOR

        Args:
            cos_theta_i: Cosine of incidence angle [N]
            eta: Relative IOR n_t / n_i [N] or scalar

        Returns:
            Reflectance [N], 1 under total internal reflection
        """
        cos_i = cos_theta_i.clamp(0.0, 1.0)
        eta = torch.as_tensor(eta, dtype=DTYPE)
        sin2_t = (1.0 - cos_i * cos_i) / (eta * eta)
        tir = sin2_t >= 1.0
        cos_t = torch.sqrt(torch.clamp(1.0 - sin2_t, min=0.0))

        r_s = (cos_i - eta * cos_t) / torch.clamp(cos_i + eta * cos_t, min=1e-12)
        r_p = (eta * cos_i - cos_t) / torch.clamp(eta * cos_i + cos_t, min=1e-12)
        reflectance = 0.5 * (r_s * r_s + r_p * r_p)

        return torch.where(tir, torch.ones_like(reflectance), reflectance.clamp(0.0, 1.0))

    @staticmethod
    def refracted_cosine(
        cos_theta_i: torch.Tensor,
        eta: torch.Tensor
    ) -> torch.Tensor:
        """Cosine of the refracted angle (0 under total internal reflection)"""
        cos_i = cos_theta_i.clamp(0.0, 1.0)
        eta = torch.as_tensor(eta, dtype=DTYPE)
        sin2_t = (1.0 - cos_i * cos_i) / (eta * eta)
        return torch.sqrt(torch.clamp(1.0 - sin2_t, min=0.0))

    @staticmethod
    def conductor(
        cos_theta_i: torch.Tensor,
        n: torch.Tensor,
        k: torch.Tensor
    ) -> torch.Tensor:
        """
        Unpolarized Fresnel reflectance for a complex IOR n + ik

        Args:
            cos_theta_i: Cosine of incidence angle [N]
            n: Real part of the IOR [N] or scalar
            k: Extinction coefficient [N] or scalar

        Returns:
            Reflectance [N]
        """
        cos_i = cos_theta_i.clamp(0.0, 1.0)
        n = torch.as_tensor(n, dtype=DTYPE).expand_as(cos_i)
        k = torch.as_tensor(k, dtype=DTYPE).expand_as(cos_i)
        eta = torch.complex(n, k)
        eta2 = eta * eta
        cos_c = cos_i.to(COMPLEX_DTYPE)
        sin2 = (1.0 - cos_i * cos_i).to(COMPLEX_DTYPE)

        # u = eta * cos(theta_t) on the decaying branch
        u = torch.sqrt(eta2 - sin2)

        r_s = (cos_c - u) / (cos_c + u)
        r_p = (eta2 * cos_c - u) / (eta2 * cos_c + u)
        reflectance = 0.5 * (r_s.abs() ** 2 + r_p.abs() ** 2)
        return reflectance.clamp(0.0, 1.0)

    @staticmethod
    def schlick(
        cos_theta: torch.Tensor,
        f0: torch.Tensor
    ) -> torch.Tensor:
        """
        Fresnel-Schlick approximation

        Args:
            cos_theta: Cosine of incidence angle [N]
            f0: Reflectance at normal incidence [N] or scalar

        Returns:
            Approximate reflectance [N]
        """
        one_minus_cos = torch.clamp(1.0 - cos_theta, min=0.0, max=1.0)
        return f0 + (1.0 - f0) * torch.pow(one_minus_cos, 5.0)


class GGX:
    """Anisotropic Trowbridge-Reitz distribution and Heitz masking-shadowing"""

    @staticmethod
    def distribution(
        h: torch.Tensor,
        alpha_x: float,
        alpha_y: float
    ) -> torch.Tensor:
        """
        Normal distribution D(h)

        Args:
            h: Local half vectors [N, 3]
            alpha_x: Roughness along the tangent
            alpha_y: Roughness along the bitangent

        Returns:
            D [N]
        """
        hx, hy, hz = h.unbind(-1)
        term = (hx / alpha_x) ** 2 + (hy / alpha_y) ** 2 + hz * hz
        D = 1.0 / (np.pi * alpha_x * alpha_y * torch.clamp(term * term, min=1e-12))
        return torch.where(hz > 0.0, D, torch.zeros_like(D))

    @staticmethod
    def smith_lambda(
        v: torch.Tensor,
        alpha_x: float,
        alpha_y: float
    ) -> torch.Tensor:
        """Smith Lambda for a local direction [N, 3]"""
        vx, vy, vz = v.unbind(-1)
        vz2 = torch.clamp(vz * vz, min=1e-12)
        alpha2_tan2 = ((alpha_x * vx) ** 2 + (alpha_y * vy) ** 2) / vz2
        return 0.5 * (-1.0 + torch.sqrt(1.0 + alpha2_tan2))

    @staticmethod
    def height_correlated_g2(
        wi: torch.Tensor,
        wo: torch.Tensor,
        alpha_x: float,
        alpha_y: float
    ) -> torch.Tensor:
        """G2 = 1 / (1 + Lambda(wi) + Lambda(wo))"""
        lambda_i = GGX.smith_lambda(wi, alpha_x, alpha_y)
        lambda_o = GGX.smith_lambda(wo, alpha_x, alpha_y)
        return 1.0 / (1.0 + lambda_i + lambda_o)


class BSDF:
    """
    Base class for all material models

    Subclasses implement _evaluate_raw(batch) -> (R, T, A); every public
    evaluation path runs the result through normalize_energy.
    """

    kind = "bsdf"
    # "mirror": specular model, only mirror pairs exist (swapping them is an identity)
    # "pairs": check f(wi, wo) == f(wo, wi) over general pairs; None: not applicable
    reciprocity_mode: Optional[str] = "mirror"
    fresnel_monotonic = False

    def __init__(self, params):
        self.params = params

    def _evaluate_raw(self, batch: ContextBatch) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        raise NotImplementedError

    def evaluate_batch(self, batch: ContextBatch) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Normalized (R, T, A) tensors [N] for a batch of contexts"""
        R, T, A = self._evaluate_raw(batch)
        return normalize_energy(R, T, A)

    def evaluate(self, ctx: BSDFContext) -> BSDFResponse:
        return self.evaluate_many([ctx])[0]

    def evaluate_many(self, contexts: Sequence[BSDFContext]) -> List[BSDFResponse]:
        contexts = list(contexts)
        if not contexts:
            return []
        R, T, A = self.evaluate_batch(ContextBatch.from_contexts(contexts))
        return BSDFResponse.from_tensors(R, T, A)

    def evaluate_rgb(self, cos_theta: float = 1.0) -> Dict[str, BSDFResponse]:
        """Responses at the representative R, G, B wavelengths"""
        channels = list(RGB_WAVELENGTHS)
        responses = self.evaluate_many([BSDFContext.from_channel(cos_theta, c) for c in channels])
        return dict(zip(channels, responses))

    def evaluate_spectral(
        self,
        cos_theta: float = 1.0,
        wavelengths: Optional[torch.Tensor] = None
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Spectral response at a fixed angle

        Args:
            cos_theta: Cosine of incidence angle
            wavelengths: Sample wavelengths in nm (default 400-700 nm, 10 nm steps)

        Returns:
            (wavelengths, R, T, A), each [W]
        """
        if wavelengths is None:
            wavelengths = torch.arange(400.0, 701.0, 10.0, dtype=DTYPE)
        wavelengths = torch.as_tensor(wavelengths, dtype=DTYPE).reshape(-1)
        cos = torch.full_like(wavelengths, float(cos_theta))
        R, T, A = self.evaluate_batch(ContextBatch.from_cosines(cos, wavelengths))
        return wavelengths, R, T, A

    def reciprocity_value(self, batch: ContextBatch) -> torch.Tensor:
        """Quantity that must be symmetric under wi <-> wo"""
        R, _, _ = self.evaluate_batch(batch)
        return R

    def material_features(self) -> Dict[str, float]:
        """Raw material descriptors consumed by the neural correction"""
        return self.params.features()

    # Sampling -------------------------------------------------------------

    def is_delta(self) -> bool:
        """True when all light leaves in discrete mirror / refracted directions"""
        return False

    def pdf(self, ctx: BSDFContext) -> float:
        """Solid-angle density of sample() returning ctx.wo (0 for delta lobes)"""
        if self.is_delta():
            return 0.0
        return ctx.cos_theta_o / math.pi

    def transmitted_direction(self, ctx: BSDFContext) -> Vector3:
        """Exit direction of the delta transmission lobe (straight through by default)"""
        return tuple(-c for c in ctx.wi)

    def sample(self, ctx: BSDFContext, u1: float, u2: float) -> BSDFSample:
        """
        Importance-sample an exit direction

        Rough surfaces use cosine-weighted hemisphere sampling. Delta surfaces
        pick reflection or transmission with probability proportional to R and T.

        Args:
            ctx: Evaluation context (its wo is ignored)
            u1: Uniform random number in [0, 1)
            u2: Uniform random number in [0, 1)

        Returns:
            BSDFSample with the response at the sampled direction
        """
        u1, u2 = sanitize_random(u1), sanitize_random(u2)
        if self.is_delta():
            return self._sample_delta(ctx, u1)

        cos_theta = math.sqrt(1.0 - u1)
        sin_theta = math.sqrt(u1)
        phi = 2.0 * math.pi * u2
        local = (sin_theta * math.cos(phi), sin_theta * math.sin(phi), cos_theta)
        wo = tuple(
            local[0] * t + local[1] * b + local[2] * n
            for t, b, n in zip(ctx.tangent, ctx.bitangent, ctx.normal)
        )
        value = self.evaluate(dataclasses.replace(ctx, wo=wo))
        return BSDFSample(wo, value, max(cos_theta / math.pi, 1e-10), False)

    def _sample_delta(self, ctx: BSDFContext, u1: float) -> BSDFSample:
        mirror = reflect(ctx.wi, ctx.normal)
        response = self.evaluate(dataclasses.replace(ctx, wo=mirror))
        R, T = response.reflectance, response.transmittance
        total = R + T
        p_reflect = R / total if total > 0.0 else 1.0
        if u1 < p_reflect:
            return BSDFSample(mirror, BSDFResponse(R, 0.0, 1.0 - R), p_reflect, True)
        return BSDFSample(
            self.transmitted_direction(ctx), BSDFResponse(0.0, T, 1.0 - T), 1.0 - p_reflect, True)

    def validate_energy_conservation(
        self,
        tolerance: float = 1e-6,
        angles: Sequence[float] = ENERGY_TEST_ANGLES
    ) -> Tuple[bool, float]:
        """
        Check R + T + A = 1 at the standard test angles for all RGB channels

        Returns:
            (passed, max deviation)
        """
        contexts = [
            BSDFContext.from_angle(theta, wavelength)
            for theta in angles
            for wavelength in RGB_WAVELENGTHS.values()
        ]
        R, T, A = self.evaluate_batch(ContextBatch.from_contexts(contexts))
        deviation = float((R + T + A - 1.0).abs().max())
        return deviation <= tolerance, deviation

    def memory_bytes(self) -> int:
        """Approximate storage of the material parameters (8 bytes per scalar)"""
        return 8 * sum(1 for _ in _flatten(dataclasses.astuple(self.params)))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.params})"


def _flatten(values):
    for v in values:
        if isinstance(v, (tuple, list)):
            yield from _flatten(v)
        else:
            yield v


def describe_material(material) -> Dict[str, float]:
    """
    Material descriptors from a parameter object, a BSDF or a plain mapping

    Raises:
        ValueError: material is none of these
    """
    if isinstance(material, BSDF):
        return material.material_features()
    if isinstance(material, Mapping):
        try:
            return {str(name): float(value) for name, value in material.items()}
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Material mapping must hold numbers: {exc}") from exc
    features = getattr(material, "features", None)
    if callable(features):
        return features()
    raise ValueError(f"Cannot derive material features from {material!r}")


class DielectricBSDF(BSDF):
    """
    Dielectric interface with optional absorbing slab

    Roughness r scales the specular reflectance by (1 - r) and adds a
    diffuse floor of 0.05 r.
    """

    kind = "dielectric"
    fresnel_monotonic = True
    rough_diffuse = 0.05

    def __init__(
        self,
        ior: float = 1.5,
        abbe_number: float = 0.0,
        absorption_coefficient: float = 0.0,
        thickness: float = 0.0,
        roughness: float = 0.0,
        params: Optional[DielectricParameters] = None
    ):
        if params is None:
            params = DielectricParameters(
                ior=ior,
                abbe_number=abbe_number,
                absorption_coefficient=absorption_coefficient,
                thickness=thickness,
                roughness=roughness,
            )
        super().__init__(params)

    @classmethod
    def from_preset(cls, name: str) -> "DielectricBSDF":
        return cls(params=lookup_preset(DIELECTRIC_PRESETS, name))

    @classmethod
    def frosted_glass(cls, roughness: float = 0.3) -> "DielectricBSDF":
        return cls(ior=1.52, roughness=roughness)

    def is_delta(self) -> bool:
        return self.params.roughness < SMOOTH_ROUGHNESS

    def transmitted_direction(self, ctx: BSDFContext) -> Vector3:
        eta = float(self.ior_at(torch.tensor([ctx.wavelength], dtype=DTYPE))[0])
        refracted = refract(ctx.wi, ctx.normal, eta)
        return refracted if refracted is not None else reflect(ctx.wi, ctx.normal)

    def ior_at(self, wavelength: torch.Tensor) -> torch.Tensor:
        """Cauchy dispersion n(lambda) = n_d + B / lambda^2 (lambda in um)"""
        ior = torch.full_like(wavelength, self.params.ior)
        if self.params.abbe_number <= 0.0:
            return ior
        b = (self.params.ior - 1.0) / self.params.abbe_number * 0.01
        lambda_um = wavelength / 1000.0
        return ior + b / (lambda_um * lambda_um)

    def _evaluate_raw(self, batch):
        cos_i = batch.cos_theta_i
        eta = self.ior_at(batch.wavelength)
        R = Fresnel.dielectric(cos_i, eta)

        p = self.params
        if p.roughness > 0.0:
            R = R * (1.0 - p.roughness) + self.rough_diffuse * p.roughness
        T = 1.0 - R

        if p.absorption_coefficient > 0.0 and p.thickness > 0.0:
            cos_t = Fresnel.refracted_cosine(cos_i, eta).clamp(min=1e-6)
            T = T * torch.exp(-p.absorption_coefficient * p.thickness / cos_t)

        return R, T, residual_absorption(R, T)


class ConductorBSDF(BSDF):
    """
    Opaque metal: complex-IOR Fresnel, no transmission

    Roughness r removes 0.5 r of the specular reflectance and returns 0.1 r
    of it as diffuse reflection; the rest is absorbed.
    """

    kind = "conductor"
    rough_specular_loss = 0.5
    rough_diffuse_gain = 0.1

    def __init__(
        self,
        n=0.18,
        k=3.0,
        roughness: float = 0.0,
        params: Optional[ConductorParameters] = None
    ):
        if params is None:
            params = ConductorParameters(n=n, k=k, roughness=roughness)
        super().__init__(params)

    @classmethod
    def from_preset(cls, name: str, roughness: float = 0.0) -> "ConductorBSDF":
        params = lookup_preset(METAL_PRESETS, name)
        return cls(params=dataclasses.replace(params, roughness=roughness))

    @classmethod
    def brushed_metal(cls, n=0.18, k=3.0, roughness: float = 0.15) -> "ConductorBSDF":
        return cls(n=n, k=k, roughness=roughness)

    def is_delta(self) -> bool:
        return self.params.roughness < SMOOTH_ROUGHNESS

    def complex_ior_at(self, wavelength: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return interpolate_rgb(self.params.n, wavelength), interpolate_rgb(self.params.k, wavelength)

    def _evaluate_raw(self, batch):
        n, k = self.complex_ior_at(batch.wavelength)
        R = Fresnel.conductor(batch.cos_theta_i, n, k)
        r = self.params.roughness
        if r > 0.0:
            R = R * (1.0 - self.rough_specular_loss * r) + self.rough_diffuse_gain * r * R
        T = torch.zeros_like(R)
        return R, T, residual_absorption(R, T)


class ThinFilmBSDF(BSDF):
    """
    Multilayer interference by the characteristic-matrix method

    Layers are given top to bottom as (ior, thickness in nm). s and p
    polarizations are evaluated separately and averaged. A rough substrate
    scatters 0.3 r of the interference reflectance into the substrate.
    """

    kind = "thin_film"
    rough_scatter = 0.3

    def __init__(
        self,
        layers: Sequence[Tuple[float, float]] = ((1.38, 99.6),),
        substrate_ior: float = 1.5,
        substrate_k: float = 0.0,
        ambient_ior: float = 1.0,
        roughness: float = 0.0,
        params: Optional[ThinFilmParameters] = None
    ):
        if params is None:
            params = ThinFilmParameters(
                layers=tuple(layers),
                substrate_ior=substrate_ior,
                substrate_k=substrate_k,
                ambient_ior=ambient_ior,
                roughness=roughness,
            )
        super().__init__(params)

    def with_roughness(self, roughness: float) -> "ThinFilmBSDF":
        """Same film stack over a substrate of the given roughness"""
        return ThinFilmBSDF(params=dataclasses.replace(self.params, roughness=roughness))

    def is_delta(self) -> bool:
        return self.params.roughness < SMOOTH_ROUGHNESS

    def transmitted_direction(self, ctx: BSDFContext) -> Vector3:
        # Parallel layers leave only the ambient / substrate refraction
        eta = self.params.substrate_ior / self.params.ambient_ior
        refracted = refract(ctx.wi, ctx.normal, eta)
        return refracted if refracted is not None else reflect(ctx.wi, ctx.normal)

    @classmethod
    def single_layer(
        cls,
        film_ior: float,
        thickness_nm: float,
        substrate_ior: float = 1.5,
        substrate_k: float = 0.0
    ) -> "ThinFilmBSDF":
        return cls(layers=((film_ior, thickness_nm),), substrate_ior=substrate_ior, substrate_k=substrate_k)

    @classmethod
    def quarter_wave_coating(
        cls,
        film_ior: float = 1.38,
        substrate_ior: float = 1.5,
        design_wavelength: float = 550.0
    ) -> "ThinFilmBSDF":
        """Anti-reflection layer of optical thickness lambda / 4"""
        return cls.single_layer(film_ior, design_wavelength / (4.0 * film_ior), substrate_ior)

    @classmethod
    def soap_bubble(cls, thickness_nm: float = 350.0) -> "ThinFilmBSDF":
        """Free-standing water film in air"""
        return cls.single_layer(1.33, thickness_nm, substrate_ior=1.0)

    @staticmethod
    def _axial(N: torch.Tensor, s2: torch.Tensor) -> torch.Tensor:
        """u = N cos(theta) inside a medium, on the decaying branch"""
        u = torch.sqrt(N * N - s2)
        tiny = torch.full_like(u, 1e-12)
        return torch.where(u.abs() < 1e-12, tiny, u)

    def _polarized(
        self,
        cos_0: torch.Tensor,
        wavelength: torch.Tensor,
        polarization: str
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        p = self.params
        n0 = p.ambient_ior
        s2 = ((n0 * n0) * (1.0 - cos_0 * cos_0)).to(COMPLEX_DTYPE)
        lam = wavelength.to(COMPLEX_DTYPE)

        def admittance(N, u):
            return u if polarization == "s" else (N * N) / u

        one = torch.ones_like(s2)
        zero = torch.zeros_like(s2)
        m11, m12, m21, m22 = one, zero, zero, one

        for film_ior, thickness in p.layers:
            N = torch.full_like(s2, complex(film_ior, 0.0))
            u = self._axial(N, s2)
            eta_j = admittance(N, u)
            delta = 2.0 * np.pi * thickness * u / lam
            c, s = torch.cos(delta), torch.sin(delta)
            a12 = 1j * s / eta_j
            a21 = 1j * eta_j * s
            m11, m12, m21, m22 = (
                m11 * c + m12 * a21,
                m11 * a12 + m12 * c,
                m21 * c + m22 * a21,
                m21 * a12 + m22 * c,
            )

        N0 = torch.full_like(s2, complex(n0, 0.0))
        eta_0 = admittance(N0, (n0 * cos_0).to(COMPLEX_DTYPE))
        Ns = torch.full_like(s2, complex(p.substrate_ior, p.substrate_k))
        eta_s = admittance(Ns, self._axial(Ns, s2))

        B = m11 + m12 * eta_s
        C = m21 + m22 * eta_s
        denom = eta_0 * B + C
        r = (eta_0 * B - C) / denom
        R = r.abs() ** 2
        T = 4.0 * eta_0.real * eta_s.real / (denom.abs() ** 2)
        return R, T

    def _evaluate_raw(self, batch):
        cos_0 = batch.cos_theta_i.clamp(min=1e-6)
        R_s, T_s = self._polarized(cos_0, batch.wavelength, "s")
        R_p, T_p = self._polarized(cos_0, batch.wavelength, "p")
        R = (0.5 * (R_s + R_p)).clamp(0.0, 1.0)
        T = (0.5 * (T_s + T_p)).clamp(0.0, 1.0)
        if self.params.roughness > 0.0:
            scattered = self.rough_scatter * self.params.roughness * R
            R = R - scattered
            T = torch.clamp(T + scattered, max=1.0)
        if self.params.substrate_k > 0.0:
            # Light entering an opaque substrate is absorbed
            T = torch.zeros_like(T)
        return R, T, residual_absorption(R, T)


class AnisotropicGGXBSDF(BSDF):
    """Anisotropic GGX microfacet reflection"""

    kind = "anisotropic"
    reciprocity_mode = "pairs"

    def __init__(
        self,
        alpha_x: float = 0.3,
        alpha_y: float = 0.3,
        ior: float = 1.5,
        k: float = 0.0,
        params: Optional[AnisotropicParameters] = None
    ):
        if params is None:
            params = AnisotropicParameters(alpha_x=alpha_x, alpha_y=alpha_y, ior=ior, k=k)
        super().__init__(params)

    @classmethod
    def from_roughness(
        cls,
        roughness: float,
        anisotropy: float = 0.0,
        ior: float = 1.5,
        k: float = 0.0
    ) -> "AnisotropicGGXBSDF":
        """Perceptual roughness and anisotropy in [0, 1] (alpha = roughness^2)"""
        alpha = float(np.clip(roughness, 0.0, 1.0)) ** 2
        aspect = float(np.sqrt(1.0 - 0.9 * np.clip(anisotropy, 0.0, 1.0)))
        return cls(alpha_x=alpha / aspect, alpha_y=alpha * aspect, ior=ior, k=k)

    @property
    def is_isotropic(self) -> bool:
        return abs(self.params.alpha_x - self.params.alpha_y) < 1e-9

    def brdf(self, batch: ContextBatch) -> torch.Tensor:
        """f(wi, wo) = D G F / (4 cos_i cos_o)"""
        p = self.params
        wi, wo = batch.wi, batch.wo
        cos_i = wi[:, 2]
        cos_o = wo[:, 2]

        h = wi + wo
        h = h / torch.clamp(h.norm(dim=-1, keepdim=True), min=1e-12)

        D = GGX.distribution(h, p.alpha_x, p.alpha_y)
        G = GGX.height_correlated_g2(wi, wo, p.alpha_x, p.alpha_y)

        cos_ih = (wi * h).sum(dim=-1).clamp(0.0, 1.0)
        if p.k > 0.0:
            F = Fresnel.conductor(cos_ih, p.ior, p.k)
        else:
            F = Fresnel.dielectric(cos_ih, torch.full_like(cos_ih, p.ior))

        valid = (cos_i > 1e-6) & (cos_o > 1e-6)
        denom = 4.0 * torch.clamp(cos_i, min=1e-6) * torch.clamp(cos_o, min=1e-6)
        f = D * G * F / denom
        return torch.where(valid, f, torch.zeros_like(f))

    def _evaluate_raw(self, batch):
        f = self.brdf(batch)
        R = torch.clamp(np.pi * f * batch.cos_theta_o, 0.0, 1.0)
        if self.params.k > 0.0:
            T = torch.zeros_like(R)
        else:
            T = 1.0 - R
        return R, T, residual_absorption(R, T)

    def reciprocity_value(self, batch):
        return self.brdf(batch)


class SubsurfaceBSDF(BSDF):
    """
    Translucent medium under the dipole diffusion approximation

    R = F(cos_i) + (1 - F(cos_i)) * Rd * (1 - F(cos_o)), where Rd is the
    closed-form total diffuse reflectance. A finite slab transmits
    (1 - R) * exp(-sigma_tr * thickness).
    """

    kind = "subsurface"
    reciprocity_mode = "pairs"

    def __init__(
        self,
        sigma_a=(0.032, 0.17, 0.48),
        sigma_s=(0.74, 0.88, 1.01),
        g: float = 0.0,
        eta: float = 1.3,
        thickness: float = 0.0,
        params: Optional[SubsurfaceParameters] = None
    ):
        if params is None:
            params = SubsurfaceParameters(
                sigma_a=sigma_a, sigma_s=sigma_s, g=g, eta=eta, thickness=thickness)
        super().__init__(params)

    @classmethod
    def from_preset(cls, name: str) -> "SubsurfaceBSDF":
        return cls(params=lookup_preset(SUBSURFACE_PRESETS, name))

    @staticmethod
    def diffuse_fresnel_reflectance(eta: float) -> float:
        """Fdr polynomial fit"""
        return -1.440 / (eta * eta) + 0.710 / eta + 0.668 + 0.0636 * eta

    def _dipole(self, wavelength: torch.Tensor) -> Dict[str, torch.Tensor]:
        p = self.params
        sigma_a = interpolate_rgb(p.sigma_a, wavelength)
        sigma_s = interpolate_rgb(p.sigma_s, wavelength)
        sigma_s_prime = sigma_s * (1.0 - p.g)
        sigma_t_prime = torch.clamp(sigma_a + sigma_s_prime, min=1e-12)
        alpha_prime = sigma_s_prime / sigma_t_prime
        sigma_tr = torch.sqrt(3.0 * sigma_a * sigma_t_prime)

        fdr = self.diffuse_fresnel_reflectance(p.eta)
        boundary = (1.0 + fdr) / (1.0 - fdr)
        z_r = 1.0 / sigma_t_prime
        z_v = z_r * (1.0 + 4.0 * boundary / 3.0)
        return {
            "alpha_prime": alpha_prime,
            "sigma_tr": sigma_tr,
            "boundary": torch.full_like(alpha_prime, boundary),
            "z_r": z_r,
            "z_v": z_v,
        }

    def diffuse_profile(self, r, wavelength=550.0) -> torch.Tensor:
        """
        Radial diffuse reflectance R_d(r) of the dipole

        Args:
            r: Distance from the point of incidence in mm [N] or scalar
            wavelength: Wavelength in nm [N] or scalar

        Returns:
            R_d(r) [N]
        """
        r = torch.as_tensor(r, dtype=DTYPE).reshape(-1).abs()
        wavelength = torch.as_tensor(wavelength, dtype=DTYPE).reshape(-1).expand_as(r)
        d = self._dipole(wavelength)
        sigma_tr, z_r, z_v = d["sigma_tr"], d["z_r"], d["z_v"]
        d_r = torch.sqrt(r * r + z_r * z_r)
        d_v = torch.sqrt(r * r + z_v * z_v)
        real = z_r * (sigma_tr * d_r + 1.0) * torch.exp(-sigma_tr * d_r) / d_r ** 3
        virtual = z_v * (sigma_tr * d_v + 1.0) * torch.exp(-sigma_tr * d_v) / d_v ** 3
        return d["alpha_prime"] / (4.0 * np.pi) * (real + virtual)

    def total_diffuse_reflectance(self, wavelength) -> torch.Tensor:
        """Closed-form integral of R_d(r) over the surface"""
        wavelength = torch.as_tensor(wavelength, dtype=DTYPE).reshape(-1)
        d = self._dipole(wavelength)
        alpha_prime = d["alpha_prime"]
        root = torch.sqrt(3.0 * (1.0 - alpha_prime))
        return 0.5 * alpha_prime * (1.0 + torch.exp(-4.0 / 3.0 * d["boundary"] * root)) * torch.exp(-root)

    def _diffuse_lobe(self, batch: ContextBatch) -> Tuple[torch.Tensor, torch.Tensor]:
        eta = torch.full_like(batch.wavelength, self.params.eta)
        F_i = Fresnel.dielectric(batch.cos_theta_i, eta)
        F_o = Fresnel.dielectric(batch.cos_theta_o, eta)
        Rd = self.total_diffuse_reflectance(batch.wavelength)
        return F_i, (1.0 - F_i) * Rd * (1.0 - F_o)

    def _evaluate_raw(self, batch):
        F_i, diffuse = self._diffuse_lobe(batch)
        R = (F_i + diffuse).clamp(0.0, 1.0)
        if self.params.thickness > 0.0:
            sigma_tr = self._dipole(batch.wavelength)["sigma_tr"]
            T = (1.0 - R) * torch.exp(-sigma_tr * self.params.thickness)
        else:
            T = torch.zeros_like(R)
        return R, T, residual_absorption(R, T)

    def reciprocity_value(self, batch):
        _, diffuse = self._diffuse_lobe(batch)
        return diffuse


class LambertianBSDF(BSDF):
    """Ideal diffuse reflector"""

    kind = "lambertian"
    fresnel_monotonic = True

    def __init__(self, albedo: float = 0.8, params: Optional[LambertianParameters] = None):
        if params is None:
            params = LambertianParameters(albedo=albedo)
        super().__init__(params)

    def _evaluate_raw(self, batch):
        R = torch.full_like(batch.wavelength, self.params.albedo)
        T = torch.zeros_like(R)
        return R, T, residual_absorption(R, T)


class LayeredBSDF(BSDF):
    """
    Vertical stack of BSDFs, top layer first

    Each child returns a normalized response; adjacent layers combine with the
    adding formula (multiple inter-reflections), and only the composite is
    renormalized.
    """

    kind = "layered"

    def __init__(self, layers: Sequence[BSDF]):
        layers = tuple(layers)
        if len(layers) == 0:
            raise ValueError("LayeredBSDF needs at least one layer")
        for layer in layers:
            if not isinstance(layer, BSDF):
                raise ValueError(f"Layer {layer!r} is not a BSDF")
        super().__init__(params=None)
        self.layers = layers

    @classmethod
    def clearcoat(cls, base: BSDF, ior: float = 1.4) -> "LayeredBSDF":
        """Clear dielectric coat over any base"""
        return cls([DielectricBSDF(ior=ior), base])

    @staticmethod
    def combine(
        top: Tuple[torch.Tensor, torch.Tensor],
        bottom: Tuple[torch.Tensor, torch.Tensor]
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Adding formula for two layers

        Args:
            top: (R1, T1) of the upper layer
            bottom: (R2, T2) of the lower layer

        Returns:
            (R, T) of the pair
        """
        R1, T1 = top
        R2, T2 = bottom
        denom = torch.clamp(1.0 - R1 * R2, min=1e-9)
        R = R1 + T1 * T1 * R2 / denom
        T = T1 * T2 / denom
        return R, T

    def _evaluate_raw(self, batch):
        R, T, _ = self.layers[-1].evaluate_batch(batch)
        for layer in reversed(self.layers[:-1]):
            R_top, T_top, _ = layer.evaluate_batch(batch)
            R, T = self.combine((R_top, T_top), (R, T))
        return R, T, residual_absorption(R, T)

    def material_features(self) -> Dict[str, float]:
        features = dict(self.layers[0].material_features())
        features["k"] = max(float(layer.material_features().get("k", 0.0)) for layer in self.layers)
        return features

    def is_delta(self) -> bool:
        return all(layer.is_delta() for layer in self.layers)

    def transmitted_direction(self, ctx: BSDFContext) -> Vector3:
        return self.layers[-1].transmitted_direction(ctx)

    def memory_bytes(self) -> int:
        return sum(layer.memory_bytes() for layer in self.layers)

    def __repr__(self) -> str:
        return f"LayeredBSDF({', '.join(repr(layer) for layer in self.layers)})"


BSDF_MODELS = {
    "dielectric": DielectricBSDF,
    "conductor": ConductorBSDF,
    "thin_film": ThinFilmBSDF,
    "anisotropic": AnisotropicGGXBSDF,
    "subsurface": SubsurfaceBSDF,
    "lambertian": LambertianBSDF,
    "layered": LayeredBSDF,
}


def select_bsdf_model(model_type: str = "dielectric") -> type:
    """
    Select BSDF model class

    Args:
        model_type: One of BSDF_MODELS

    Returns:
        BSDF model class
    """
    if model_type not in BSDF_MODELS:
        raise ValueError(f"Unknown BSDF model '{model_type}'. Available: {', '.join(BSDF_MODELS)}")
    return BSDF_MODELS[model_type]


def create_bsdf(model_type: str = "dielectric", **params) -> BSDF:
    """Instantiate a BSDF model by name"""
    return select_bsdf_model(model_type)(**params)
