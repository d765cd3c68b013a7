"""
Core BSDF data types
- Evaluation context (directions, shading frame, wavelength)
- Batched tensor view of many contexts
- Reflectance / transmittance / absorption response and sampled directions
- Hard energy-conservation normalizer
"""

import math
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Tuple, List, Any

import torch


DTYPE = torch.float64

WAVELENGTH_MIN = 380.0
WAVELENGTH_MAX = 780.0
DEFAULT_WAVELENGTH = 550.0

# Representative wavelengths (nm) for RGB evaluation
RGB_WAVELENGTHS = {
    "r": 650.0,
    "g": 550.0,
    "b": 450.0,
}

# Totals at or below this are treated as degenerate and left untouched
ENERGY_EPSILON = 1e-10
# Totals this close to 1 are already normalized
NORMALIZED_TOLERANCE = 1e-12

Vector3 = Tuple[float, float, float]


def _dot(a: Vector3, b: Vector3) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def _sanitize_direction(v: Sequence[float], fallback: Vector3) -> Vector3:
    """Normalize a direction, falling back when it is NaN or zero-length"""
    try:
        x, y, z = (float(c) for c in v)
    except (TypeError, ValueError):
        return fallback
    if not all(math.isfinite(c) for c in (x, y, z)):
        return fallback
    length = math.sqrt(x * x + y * y + z * z)
    if length < 1e-12:
        return fallback
    return (x / length, y / length, z / length)


def sanitize_wavelength(wavelength) -> float:
    """Clamp a wavelength (nm) into the visible range; NaN maps to 550 nm"""
    try:
        wl = float(wavelength)
    except (TypeError, ValueError):
        return DEFAULT_WAVELENGTH
    if math.isnan(wl):
        return DEFAULT_WAVELENGTH
    return min(max(wl, WAVELENGTH_MIN), WAVELENGTH_MAX)


def sanitize_cosine(cos_theta) -> float:
    """Clamp a cosine to [0, 1] (angles in [0, 90] degrees); NaN maps to normal incidence"""
    try:
        c = float(cos_theta)
    except (TypeError, ValueError):
        return 1.0
    if math.isnan(c):
        return 1.0
    return min(max(c, 0.0), 1.0)


@dataclass(frozen=True)
class BSDFContext:
    """
    Immutable evaluation context

    Directions point away from the surface. Anything out of domain is clamped
    on construction, so evaluation never has to raise.
    """
    wi: Vector3 = (0.0, 0.0, 1.0)
    wo: Vector3 = (0.0, 0.0, 1.0)
    normal: Vector3 = (0.0, 0.0, 1.0)
    tangent: Vector3 = (1.0, 0.0, 0.0)
    bitangent: Vector3 = (0.0, 1.0, 0.0)
    wavelength: float = DEFAULT_WAVELENGTH
    material: Optional[Any] = field(default=None, compare=False)

    def __post_init__(self):
        normal = _sanitize_direction(self.normal, (0.0, 0.0, 1.0))
        tangent = _sanitize_direction(self.tangent, (1.0, 0.0, 0.0))
        bitangent = _sanitize_direction(self.bitangent, (0.0, 1.0, 0.0))
        object.__setattr__(self, "normal", normal)
        object.__setattr__(self, "tangent", tangent)
        object.__setattr__(self, "bitangent", bitangent)
        object.__setattr__(self, "wi", self._fold_to_hemisphere(self.wi, normal))
        object.__setattr__(self, "wo", self._fold_to_hemisphere(self.wo, normal))
        object.__setattr__(self, "wavelength", sanitize_wavelength(self.wavelength))

    @staticmethod
    def _fold_to_hemisphere(v: Sequence[float], normal: Vector3) -> Vector3:
        """Project directions below the surface onto the horizon"""
        d = _sanitize_direction(v, normal)
        cos = _dot(d, normal)
        if cos >= 0.0:
            return d
        tangential = (d[0] - cos * normal[0], d[1] - cos * normal[1], d[2] - cos * normal[2])
        return _sanitize_direction(tangential, normal)

    @classmethod
    def from_cosine(
        cls,
        cos_theta: float,
        wavelength: float = DEFAULT_WAVELENGTH,
        material: Optional[Any] = None
    ) -> "BSDFContext":
        """Mirror configuration: wi = (sin, 0, cos), wo = (-sin, 0, cos)"""
        c = sanitize_cosine(cos_theta)
        s = math.sqrt(max(0.0, 1.0 - c * c))
        return cls(wi=(s, 0.0, c), wo=(-s, 0.0, c), wavelength=wavelength, material=material)

    @classmethod
    def from_angle(
        cls,
        theta_deg: float,
        wavelength: float = DEFAULT_WAVELENGTH,
        material: Optional[Any] = None
    ) -> "BSDFContext":
        """Mirror configuration from an incidence angle in degrees"""
        theta = float(theta_deg)
        if math.isnan(theta):
            theta = 0.0
        theta = min(max(theta, 0.0), 90.0)
        return cls.from_cosine(math.cos(math.radians(theta)), wavelength, material)

    @classmethod
    def from_angles(
        cls,
        theta_i_deg: float,
        theta_o_deg: float,
        phi_o_deg: float = 180.0,
        wavelength: float = DEFAULT_WAVELENGTH,
        material: Optional[Any] = None
    ) -> "BSDFContext":
        """
        General configuration from spherical angles

        Args:
            theta_i_deg: Incidence polar angle (wi lies in the xz-plane at phi = 0)
            theta_o_deg: Exitance polar angle
            phi_o_deg: Exitance azimuth; 180 gives the mirror plane

        Returns:
            BSDFContext
        """
        ti = math.radians(min(max(float(theta_i_deg), 0.0), 90.0))
        to = math.radians(min(max(float(theta_o_deg), 0.0), 90.0))
        po = math.radians(float(phi_o_deg))
        wi = (math.sin(ti), 0.0, math.cos(ti))
        wo = (math.sin(to) * math.cos(po), math.sin(to) * math.sin(po), math.cos(to))
        return cls(wi=wi, wo=wo, wavelength=wavelength, material=material)

    @classmethod
    def from_channel(
        cls,
        cos_theta: float,
        channel: str = "g",
        material: Optional[Any] = None
    ) -> "BSDFContext":
        """Mirror configuration at the representative wavelength of an RGB channel"""
        wavelength = RGB_WAVELENGTHS.get(str(channel).lower(), DEFAULT_WAVELENGTH)
        return cls.from_cosine(cos_theta, wavelength, material)

    @property
    def cos_theta_i(self) -> float:
        return sanitize_cosine(_dot(self.wi, self.normal))

    @property
    def cos_theta_o(self) -> float:
        return sanitize_cosine(_dot(self.wo, self.normal))

    def _to_local(self, v: Vector3) -> Vector3:
        return (_dot(v, self.tangent), _dot(v, self.bitangent), _dot(v, self.normal))

    def local_wi(self) -> Vector3:
        """wi in the (tangent, bitangent, normal) frame"""
        return self._to_local(self.wi)

    def local_wo(self) -> Vector3:
        """wo in the (tangent, bitangent, normal) frame"""
        return self._to_local(self.wo)

    def swapped(self) -> "BSDFContext":
        """Same configuration with incidence and exitance exchanged"""
        return replace(self, wi=self.wo, wo=self.wi)

    def with_wavelength(self, wavelength: float) -> "BSDFContext":
        return replace(self, wavelength=wavelength)


class ContextBatch:
    """
    Tensor view of N evaluation contexts in the local shading frame

    Attributes:
        wi: Local incidence directions [N, 3]
        wo: Local exitance directions [N, 3]
        wavelength: Wavelengths in nm [N]
        materials: Optional per-context material references (length N) or None
    """

    def __init__(
        self,
        wi: torch.Tensor,
        wo: torch.Tensor,
        wavelength: torch.Tensor,
        materials: Optional[List[Any]] = None
    ):
        self.wi = wi.to(DTYPE)
        self.wo = wo.to(DTYPE)
        self.wavelength = wavelength.to(DTYPE)
        self.materials = materials

    def __len__(self) -> int:
        return self.wavelength.shape[0]

    @classmethod
    def from_contexts(cls, contexts: Sequence[BSDFContext]) -> "ContextBatch":
        if len(contexts) == 0:
            empty = torch.zeros((0, 3), dtype=DTYPE)
            return cls(empty, empty.clone(), torch.zeros(0, dtype=DTYPE))
        wi = torch.tensor([ctx.local_wi() for ctx in contexts], dtype=DTYPE)
        wo = torch.tensor([ctx.local_wo() for ctx in contexts], dtype=DTYPE)
        wavelength = torch.tensor([ctx.wavelength for ctx in contexts], dtype=DTYPE)
        materials = [ctx.material for ctx in contexts]
        if all(m is None for m in materials):
            materials = None
        return cls(wi, wo, wavelength, materials)

    @classmethod
    def from_cosines(
        cls,
        cos_theta: torch.Tensor,
        wavelength: Optional[torch.Tensor] = None
    ) -> "ContextBatch":
        """Mirror-configuration batch built directly from tensors (values are sanitized)"""
        cos_theta = torch.as_tensor(cos_theta, dtype=DTYPE).reshape(-1)
        cos_theta = torch.nan_to_num(cos_theta, nan=1.0).clamp(0.0, 1.0)
        if wavelength is None:
            wavelength = torch.full_like(cos_theta, DEFAULT_WAVELENGTH)
        else:
            wavelength = torch.as_tensor(wavelength, dtype=DTYPE).reshape(-1).expand_as(cos_theta)
            wavelength = torch.nan_to_num(wavelength, nan=DEFAULT_WAVELENGTH)
            wavelength = wavelength.clamp(WAVELENGTH_MIN, WAVELENGTH_MAX)
        sin_theta = torch.sqrt(torch.clamp(1.0 - cos_theta * cos_theta, min=0.0))
        zeros = torch.zeros_like(cos_theta)
        wi = torch.stack([sin_theta, zeros, cos_theta], dim=-1)
        wo = torch.stack([-sin_theta, zeros, cos_theta], dim=-1)
        return cls(wi, wo, wavelength.clone())

    @property
    def cos_theta_i(self) -> torch.Tensor:
        return self.wi[:, 2].clamp(0.0, 1.0)

    @property
    def cos_theta_o(self) -> torch.Tensor:
        return self.wo[:, 2].clamp(0.0, 1.0)

    def swapped(self) -> "ContextBatch":
        return ContextBatch(self.wo, self.wi, self.wavelength, self.materials)

    def with_wavelength(self, wavelength: torch.Tensor) -> "ContextBatch":
        wavelength = torch.as_tensor(wavelength, dtype=DTYPE).reshape(-1).expand(len(self))
        return ContextBatch(self.wi, self.wo, wavelength.clone(), self.materials)


def residual_absorption(reflectance: torch.Tensor, transmittance: torch.Tensor) -> torch.Tensor:
    """Absorption as the non-negative remainder 1 - R - T"""
    return torch.clamp(1.0 - reflectance - transmittance, min=0.0)


def normalize_energy(
    reflectance: torch.Tensor,
    transmittance: torch.Tensor,
    absorption: torch.Tensor,
    eps: float = ENERGY_EPSILON
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Enforce R + T + A = 1 with non-negative components

    Args:
        reflectance: Raw reflectance [...]
        transmittance: Raw transmittance [...]
        absorption: Raw absorption [...]
        eps: Totals at or below this are degenerate and left unchanged

    Returns:
        (R, T, A) tensors; already-normalized inputs are returned unchanged
    """
    R = torch.nan_to_num(reflectance, nan=0.0, posinf=1.0, neginf=0.0).clamp(min=0.0)
    T = torch.nan_to_num(transmittance, nan=0.0, posinf=1.0, neginf=0.0).clamp(min=0.0)
    A = torch.nan_to_num(absorption, nan=0.0, posinf=1.0, neginf=0.0).clamp(min=0.0)

    total = R + T + A
    keep = (total <= eps) | ((total - 1.0).abs() <= NORMALIZED_TOLERANCE)
    scale = 1.0 / torch.clamp(total, min=eps)

    R_scaled = R * scale
    T_scaled = T * scale
    A_scaled = residual_absorption(R_scaled, T_scaled)

    return (
        torch.where(keep, R, R_scaled),
        torch.where(keep, T, T_scaled),
        torch.where(keep, A, A_scaled),
    )


@dataclass(frozen=True)
class BSDFResponse:
    """Reflectance, transmittance and absorption of one evaluation"""
    reflectance: float
    transmittance: float
    absorption: float

    def total(self) -> float:
        return self.reflectance + self.transmittance + self.absorption

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.reflectance, self.transmittance, self.absorption)

    def normalized(self) -> "BSDFResponse":
        R, T, A = normalize_energy(
            torch.tensor(self.reflectance, dtype=DTYPE),
            torch.tensor(self.transmittance, dtype=DTYPE),
            torch.tensor(self.absorption, dtype=DTYPE),
        )
        return BSDFResponse(R.item(), T.item(), A.item())

    def is_energy_conserving(self, tolerance: float = 1e-9) -> bool:
        values = self.as_tuple()
        if not all(math.isfinite(v) for v in values):
            return False
        if any(v < -tolerance for v in values):
            return False
        return abs(self.total() - 1.0) <= tolerance

    @classmethod
    def from_tensors(
        cls,
        reflectance: torch.Tensor,
        transmittance: torch.Tensor,
        absorption: torch.Tensor
    ) -> List["BSDFResponse"]:
        """Split batched [N] tensors into per-context responses"""
        return [
            cls(r, t, a)
            for r, t, a in zip(reflectance.tolist(), transmittance.tolist(), absorption.tolist())
        ]


@dataclass(frozen=True)
class BSDFSample:
    """
    Importance-sampled exit direction

    wo is in world space and may point below the surface for refraction.
    For delta lobes pdf is the probability of the chosen lobe.
    """
    wo: Vector3
    value: BSDFResponse
    pdf: float
    is_delta: bool = False


def sanitize_random(u) -> float:
    """Clamp a uniform random number to [0, 1); NaN maps to 0"""
    try:
        v = float(u)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return min(max(v, 0.0), 1.0 - 1e-12)
