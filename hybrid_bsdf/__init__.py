"""
Hybrid Physical-Neural BSDF Engine
This package provides:
- Closed-form BSDFs (dielectric, conductor, thin film, anisotropic GGX, subsurface, layered)
- A hard energy-conservation normalizer applied to every response
- A tiny SIREN producing bounded residual corrections
- Physics constraint validation and an Adam training pipeline with perceptual loss
"""

from hybrid_bsdf.bsdf_core import BSDFContext, BSDFResponse, ContextBatch, normalize_energy
from hybrid_bsdf.bsdf_models import (
    AnisotropicGGXBSDF,
    BSDF,
    ConductorBSDF,
    DielectricBSDF,
    LambertianBSDF,
    LayeredBSDF,
    SubsurfaceBSDF,
    ThinFilmBSDF,
    create_bsdf,
)
from hybrid_bsdf.constraints import ConstraintConfig, ConstraintReport, ConstraintValidator
from hybrid_bsdf.neural_corrected_bsdf import NeuralCorrectedBSDF
from hybrid_bsdf.neural_correction import NeuralCorrectionConfig, NeuralCorrectionMLP
from hybrid_bsdf.training_dataset import TrainingDataset, TrainingSample
from hybrid_bsdf.training_pipeline import TrainingConfig, TrainingPipeline, TrainingResult

__version__ = "1.0.0"
