"""
Physics Constraint Validation
Energy conservation, reciprocity, spectral smoothness, physical range and
Fresnel monotonicity checks over a dense angle x wavelength grid
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import torch

from hybrid_bsdf.bsdf_core import DTYPE, BSDFResponse, ContextBatch


@dataclass
class ConstraintConfig:
    """Tolerances and sampling grid for ConstraintValidator"""
    energy_tolerance: float = 1e-6
    reciprocity_tolerance: float = 0.01
    max_spectral_gradient: float = 0.01   # per nm
    monotonicity_tolerance: float = 0.01
    range_tolerance: float = 1e-9
    angles: Tuple[float, ...] = (0.0, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 70.0, 80.0, 85.0)
    wavelengths: Tuple[float, ...] = tuple(float(w) for w in range(400, 701, 10))
    azimuths: Tuple[float, ...] = (0.0, 45.0, 90.0, 135.0, 180.0)

    def __post_init__(self):
        if len(self.angles) < 2 or len(self.wavelengths) < 2:
            raise ValueError("Constraint grid needs at least two angles and two wavelengths")
        for name in ("energy_tolerance", "reciprocity_tolerance", "max_spectral_gradient",
                     "monotonicity_tolerance", "range_tolerance"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be non-negative")


@dataclass
class CheckResult:
    name: str
    passed: bool
    violation: float = 0.0
    samples: int = 0
    applicable: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return dict(vars(self))


@dataclass
class ConstraintReport:
    """Per-check outcome; callers decide which failures are fatal"""
    model: str
    energy: CheckResult
    reciprocity: CheckResult
    spectral_smoothness: CheckResult
    physical_range: CheckResult
    fresnel_monotonicity: CheckResult
    metadata: Dict = field(default_factory=dict)

    @property
    def checks(self) -> List[CheckResult]:
        return [
            self.energy,
            self.reciprocity,
            self.spectral_smoothness,
            self.physical_range,
            self.fresnel_monotonicity,
        ]

    @property
    def all_passed(self) -> bool:
        return all(check.passed for check in self.checks)

    def violations(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def summary(self) -> str:
        lines = [f"Constraint report for {self.model}:"]
        for check in self.checks:
            if not check.applicable:
                status = "n/a"
            else:
                status = "PASS" if check.passed else "FAIL"
            line = f"  {check.name:<22} {status:<5} violation={check.violation:.3e} samples={check.samples}"
            if check.error:
                line += f" error={check.error}"
            lines.append(line)
        return "\n".join(lines)

    def to_dict(self) -> Dict:
        return {
            "model": self.model,
            "all_passed": self.all_passed,
            "checks": {check.name: check.to_dict() for check in self.checks},
            "metadata": dict(self.metadata),
        }


class ConstraintValidator:
    """
    Battery of physics checks over a BSDF

    validate() never raises: a check that fails internally is reported as
    failed with the exception message attached.
    """

    def __init__(self, config: Optional[ConstraintConfig] = None):
        self.config = config if config is not None else ConstraintConfig()

    def _grid(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Angle-major (angle, wavelength) grid as cosines and wavelengths [A*W]"""
        angles = torch.tensor(self.config.angles, dtype=DTYPE)
        wavelengths = torch.tensor(self.config.wavelengths, dtype=DTYPE)
        cos = torch.cos(torch.deg2rad(angles)).clamp(0.0, 1.0)
        cos_grid, wl_grid = torch.meshgrid(cos, wavelengths, indexing="ij")
        return cos_grid.reshape(-1), wl_grid.reshape(-1)

    def _evaluate_grid(self, bsdf):
        cos, wl = self._grid()
        R, T, A = bsdf.evaluate_batch(ContextBatch.from_cosines(cos, wl))
        shape = (len(self.config.angles), len(self.config.wavelengths))
        return R.reshape(shape), T.reshape(shape), A.reshape(shape)

    @staticmethod
    def _guarded(name: str, check, *args) -> CheckResult:
        try:
            return check(*args)
        except Exception as exc:
            return CheckResult(name=name, passed=False, violation=math.inf, error=f"{type(exc).__name__}: {exc}")

    def validate(self, bsdf) -> ConstraintReport:
        """Run every check against a BSDF"""
        return ConstraintReport(
            model=getattr(bsdf, "kind", type(bsdf).__name__),
            energy=self._guarded("energy", self.check_energy, bsdf),
            reciprocity=self._guarded("reciprocity", self.check_reciprocity, bsdf),
            spectral_smoothness=self._guarded("spectral_smoothness", self.check_spectral_smoothness, bsdf),
            physical_range=self._guarded("physical_range", self.check_range, bsdf),
            fresnel_monotonicity=self._guarded("fresnel_monotonicity", self.check_monotonicity, bsdf),
            metadata={
                "angles": list(self.config.angles),
                "wavelengths": [self.config.wavelengths[0], self.config.wavelengths[-1]],
            },
        )

    def check_energy(self, bsdf) -> CheckResult:
        R, T, A = self._evaluate_grid(bsdf)
        error = (R + T + A - 1.0).abs()
        violation = float(torch.nan_to_num(error, nan=math.inf).max())
        return CheckResult(
            name="energy",
            passed=violation <= self.config.energy_tolerance,
            violation=violation,
            samples=error.numel(),
        )

    def check_range(self, bsdf) -> CheckResult:
        R, T, A = self._evaluate_grid(bsdf)
        values = torch.stack([R, T, A])
        below = torch.clamp(-values, min=0.0)
        above = torch.clamp(values - 1.0, min=0.0)
        violation = float(torch.nan_to_num(torch.max(below, above), nan=math.inf).max())
        return CheckResult(
            name="physical_range",
            passed=violation <= self.config.range_tolerance,
            violation=violation,
            samples=values.numel(),
        )

    def _reciprocity_batch(self, bsdf) -> ContextBatch:
        mode = getattr(bsdf, "reciprocity_mode", None)
        if mode == "pairs":
            angles = [a for a in self.config.angles if a < 89.0]
            wi, wo, wl = [], [], []
            for ti in angles:
                for to in angles:
                    for phi in self.config.azimuths:
                        sin_i, cos_i = math.sin(math.radians(ti)), math.cos(math.radians(ti))
                        sin_o, cos_o = math.sin(math.radians(to)), math.cos(math.radians(to))
                        wi.append((sin_i, 0.0, cos_i))
                        wo.append((sin_o * math.cos(math.radians(phi)),
                                   sin_o * math.sin(math.radians(phi)), cos_o))
                        wl.append(self.config.wavelengths[len(wl) % len(self.config.wavelengths)])
            return ContextBatch(
                torch.tensor(wi, dtype=DTYPE),
                torch.tensor(wo, dtype=DTYPE),
                torch.tensor(wl, dtype=DTYPE),
            )
        cos, wl = self._grid()
        return ContextBatch.from_cosines(cos, wl)

    def check_reciprocity(self, bsdf) -> CheckResult:
        mode = getattr(bsdf, "reciprocity_mode", None)
        if mode is None:
            return CheckResult(name="reciprocity", passed=True, applicable=False)
        batch = self._reciprocity_batch(bsdf)
        forward = bsdf.reciprocity_value(batch)
        reverse = bsdf.reciprocity_value(batch.swapped())
        # Relative for large BRDF values, absolute near zero
        scale = torch.clamp(torch.max(forward.abs(), reverse.abs()), min=1.0)
        error = (forward - reverse).abs() / scale
        violation = float(torch.nan_to_num(error, nan=math.inf).max())
        return CheckResult(
            name="reciprocity",
            passed=violation <= self.config.reciprocity_tolerance,
            violation=violation,
            samples=error.numel(),
        )

    def check_spectral_smoothness(self, bsdf) -> CheckResult:
        R, T, _ = self._evaluate_grid(bsdf)
        wavelengths = torch.tensor(self.config.wavelengths, dtype=DTYPE)
        step = torch.diff(wavelengths).abs().clamp(min=1e-9)
        gradient = torch.max(torch.diff(R, dim=1).abs(), torch.diff(T, dim=1).abs()) / step
        violation = float(torch.nan_to_num(gradient, nan=math.inf).max())
        return CheckResult(
            name="spectral_smoothness",
            passed=violation <= self.config.max_spectral_gradient,
            violation=violation,
            samples=gradient.numel(),
        )

    def check_monotonicity(self, bsdf) -> CheckResult:
        if not getattr(bsdf, "fresnel_monotonic", False):
            return CheckResult(name="fresnel_monotonicity", passed=True, applicable=False)
        R, _, _ = self._evaluate_grid(bsdf)
        order = torch.argsort(torch.tensor(self.config.angles, dtype=DTYPE))
        R = R[order]
        # Positive where reflectance drops as the angle grows
        drop = torch.clamp(R[:-1] - R[1:], min=0.0)
        violation = float(torch.nan_to_num(drop, nan=math.inf).max())
        return CheckResult(
            name="fresnel_monotonicity",
            passed=violation <= self.config.monotonicity_tolerance,
            violation=violation,
            samples=drop.numel(),
        )

    def validate_response(self, response: BSDFResponse) -> CheckResult:
        """Energy and range check of a single response"""
        values = response.as_tuple()
        if not all(math.isfinite(v) for v in values):
            return CheckResult(name="response", passed=False, violation=math.inf, samples=1)
        out_of_range = max(max(-v, v - 1.0, 0.0) for v in values)
        violation = max(abs(response.total() - 1.0), out_of_range)
        return CheckResult(
            name="response",
            passed=violation <= self.config.energy_tolerance,
            violation=violation,
            samples=1,
        )
