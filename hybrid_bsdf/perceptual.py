"""
Perceptual Color Metrics
Linear sRGB -> CIE XYZ -> CIELAB (D65) and the CIEDE2000 color difference
"""

import torch

from hybrid_bsdf.bsdf_core import DTYPE


D65_WHITE = (0.95047, 1.0, 1.08883)

# Linear sRGB to XYZ (D65)
SRGB_TO_XYZ = (
    (0.4124564, 0.3575761, 0.1804375),
    (0.2126729, 0.7151522, 0.0721750),
    (0.0193339, 0.1191920, 0.9503041),
)

_DELTA = 6.0 / 29.0
_POW25_7 = 25.0 ** 7  # 6103515625


def _safe_sqrt(x: torch.Tensor) -> torch.Tensor:
    """sqrt(max(x, 0)) with a zero gradient at x <= 0"""
    positive = x > 0.0
    root = torch.sqrt(torch.where(positive, x, torch.ones_like(x)))
    return torch.where(positive, root, torch.zeros_like(x))


def _hue_degrees(b: torch.Tensor, a: torch.Tensor) -> torch.Tensor:
    """Hue angle in [0, 360); 0 with a zero gradient for achromatic colors"""
    chromatic = (a != 0.0) | (b != 0.0)
    h = torch.atan2(torch.where(chromatic, b, torch.zeros_like(b)), torch.where(chromatic, a, torch.ones_like(a)))
    return torch.rad2deg(h) % 360.0


def srgb_to_linear(srgb: torch.Tensor) -> torch.Tensor:
    """Undo the sRGB transfer curve"""
    srgb = srgb.to(DTYPE)
    low = srgb / 12.92
    high = torch.pow(torch.clamp((srgb + 0.055) / 1.055, min=0.0), 2.4)
    return torch.where(srgb <= 0.04045, low, high)


def linear_rgb_to_xyz(rgb: torch.Tensor) -> torch.Tensor:
    """[..., 3] linear sRGB -> [..., 3] XYZ"""
    matrix = torch.tensor(SRGB_TO_XYZ, dtype=DTYPE)
    return rgb.to(DTYPE) @ matrix.t()


def xyz_to_lab(xyz: torch.Tensor) -> torch.Tensor:
    """[..., 3] XYZ -> [..., 3] CIELAB relative to D65"""
    white = torch.tensor(D65_WHITE, dtype=DTYPE)
    t = xyz.to(DTYPE) / white
    cube_root = torch.pow(torch.clamp(t, min=_DELTA ** 3), 1.0 / 3.0)
    linear = t / (3.0 * _DELTA ** 2) + 4.0 / 29.0
    f = torch.where(t > _DELTA ** 3, cube_root, linear)
    fx, fy, fz = f.unbind(-1)
    L = 116.0 * fy - 16.0
    a = 500.0 * (fx - fy)
    b = 200.0 * (fy - fz)
    return torch.stack([L, a, b], dim=-1)


def rgb_to_lab(rgb: torch.Tensor) -> torch.Tensor:
    """[..., 3] linear sRGB -> [..., 3] CIELAB"""
    return xyz_to_lab(linear_rgb_to_xyz(rgb))


def reflectance_to_lab(reflectance: torch.Tensor) -> torch.Tensor:
    """Scalar reflectance [N] rendered as a grey linear-sRGB color, in CIELAB [N, 3]"""
    grey = reflectance.to(DTYPE).unsqueeze(-1).expand(*reflectance.shape, 3)
    return rgb_to_lab(grey)


def delta_e_2000(lab1: torch.Tensor, lab2: torch.Tensor) -> torch.Tensor:
    """
    CIEDE2000 color difference

    Args:
        lab1: [..., 3] CIELAB colors
        lab2: [..., 3] CIELAB colors

    Returns:
        Delta E 2000 [...]
    """
    L1, a1, b1 = lab1.to(DTYPE).unbind(-1)
    L2, a2, b2 = lab2.to(DTYPE).unbind(-1)

    C1 = _safe_sqrt(a1 * a1 + b1 * b1)
    C2 = _safe_sqrt(a2 * a2 + b2 * b2)
    C_bar7 = ((C1 + C2) / 2.0) ** 7
    G = 0.5 * (1.0 - _safe_sqrt(C_bar7 / (C_bar7 + _POW25_7)))

    a1p = (1.0 + G) * a1
    a2p = (1.0 + G) * a2
    C1p = _safe_sqrt(a1p * a1p + b1 * b1)
    C2p = _safe_sqrt(a2p * a2p + b2 * b2)
    h1p = _hue_degrees(b1, a1p)
    h2p = _hue_degrees(b2, a2p)

    chroma_zero = (C1p * C2p) == 0.0

    dLp = L2 - L1
    dCp = C2p - C1p
    dh = h2p - h1p
    dh = torch.where(dh > 180.0, dh - 360.0, torch.where(dh < -180.0, dh + 360.0, dh))
    dh = torch.where(chroma_zero, torch.zeros_like(dh), dh)
    dHp = 2.0 * _safe_sqrt(C1p * C2p) * torch.sin(torch.deg2rad(dh / 2.0))

    L_bar = (L1 + L2) / 2.0
    C_bar_p = (C1p + C2p) / 2.0
    h_sum = h1p + h2p
    h_bar = torch.where(
        (h1p - h2p).abs() <= 180.0,
        h_sum / 2.0,
        torch.where(h_sum < 360.0, (h_sum + 360.0) / 2.0, (h_sum - 360.0) / 2.0),
    )
    h_bar = torch.where(chroma_zero, h_sum, h_bar)

    T = (
        1.0
        - 0.17 * torch.cos(torch.deg2rad(h_bar - 30.0))
        + 0.24 * torch.cos(torch.deg2rad(2.0 * h_bar))
        + 0.32 * torch.cos(torch.deg2rad(3.0 * h_bar + 6.0))
        - 0.20 * torch.cos(torch.deg2rad(4.0 * h_bar - 63.0))
    )
    d_theta = 30.0 * torch.exp(-(((h_bar - 275.0) / 25.0) ** 2))
    C_bar_p7 = C_bar_p ** 7
    R_C = 2.0 * _safe_sqrt(C_bar_p7 / (C_bar_p7 + _POW25_7))
    L_term = (L_bar - 50.0) ** 2
    S_L = 1.0 + 0.015 * L_term / torch.sqrt(20.0 + L_term)
    S_C = 1.0 + 0.045 * C_bar_p
    S_H = 1.0 + 0.015 * C_bar_p * T
    R_T = -torch.sin(torch.deg2rad(2.0 * d_theta)) * R_C

    dL = dLp / S_L
    dC = dCp / S_C
    dH = dHp / S_H
    return _safe_sqrt(dL * dL + dC * dC + dH * dH + R_T * dC * dH)


def delta_e_reflectance(reflectance: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """Per-sample CIEDE2000 between two grey reflectances [N]"""
    return delta_e_2000(reflectance_to_lab(reflectance), reflectance_to_lab(target))


def spectral_rmse(prediction: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """Root-mean-square error over all elements"""
    diff = prediction.to(DTYPE) - target.to(DTYPE)
    return torch.sqrt(torch.mean(diff * diff))
