"""
Neural Correction Training Script
Generates a synthetic dataset, trains the correction network, validates the
resulting hybrid BSDF and saves the weights
"""

import os
from argparse import ArgumentParser

from hybrid_bsdf.bsdf_core import BSDFContext
from hybrid_bsdf.bsdf_models import BSDF_MODELS, ConductorBSDF, DielectricBSDF
from hybrid_bsdf.constraints import ConstraintValidator
from hybrid_bsdf.neural_corrected_bsdf import NeuralCorrectedBSDF
from hybrid_bsdf.neural_correction import NeuralCorrectionMLP
from hybrid_bsdf.training_dataset import AugmentationConfig, TrainingDataset
from hybrid_bsdf.training_pipeline import LossWeights, TrainingConfig, TrainingPipeline, MEMORY_BUDGET_BYTES


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description="Neural correction training parameters")
    parser.add_argument("--num_materials", type=int, default=20)
    parser.add_argument("--angle_samples", type=int, default=10)
    parser.add_argument("--wavelength_samples", type=int, default=8)
    parser.add_argument("--augment", action="store_true", default=False,
                        help="Add jittered copies of every sample")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--lr", type=float, default=1e-3)
    parser.add_argument("--batch_size", type=int, default=32)
    parser.add_argument("--max_epochs", type=int, default=100)
    parser.add_argument("--patience", type=int, default=10)
    parser.add_argument("--validation_fraction", type=float, default=0.2)
    parser.add_argument("--max_seconds", type=float, default=None)
    parser.add_argument("--lambda_perceptual", type=float, default=1.0)
    parser.add_argument("--lambda_rmse", type=float, default=0.5)
    parser.add_argument("--lambda_energy", type=float, default=10.0)
    parser.add_argument("--lambda_magnitude", type=float, default=0.01)
    parser.add_argument("--init_network", type=str, default=None,
                        help="Path to a saved network to continue training from")
    parser.add_argument("--validate_model", type=str, default="dielectric", choices=["dielectric", "conductor"],
                        help="Physical model the trained correction is validated on")
    parser.add_argument("-o", "--output", type=str, default="output/neural_correction.pth")
    parser.add_argument("--quiet", action="store_true")
    return parser


def training_neural(args) -> int:
    """
    Train and validate a correction network from parsed arguments

    Returns:
        Process exit code (0 on success, 1 on abort)
    """
    dataset = TrainingDataset.generate_synthetic(
        args.num_materials, args.angle_samples, args.wavelength_samples, args.seed)
    if args.augment:
        dataset = dataset.augment(AugmentationConfig(), seed=args.seed)
    stats = dataset.statistics()
    print(f"Dataset: {stats['num_samples']} samples, {stats['num_materials']} materials, "
          f"mean error {stats['mean_error']:.4f}, max error {stats['max_error']:.4f}")

    config = TrainingConfig(
        learning_rate=args.lr,
        batch_size=args.batch_size,
        max_epochs=args.max_epochs,
        patience=args.patience,
        seed=args.seed,
        validation_fraction=args.validation_fraction,
        max_seconds=args.max_seconds,
        loss_weights=LossWeights(
            perceptual=args.lambda_perceptual,
            spectral_rmse=args.lambda_rmse,
            energy=args.lambda_energy,
            correction_magnitude=args.lambda_magnitude,
        ),
        verbose=not args.quiet,
    )
    pipeline = TrainingPipeline(config)
    memory = pipeline.estimate_memory()
    print(f"Memory estimate: {memory['total'] / 1024:.1f} KB (budget {MEMORY_BUDGET_BYTES / 1024:.0f} KB)")

    initial = None
    if args.init_network:
        print(f"Loading initial network from {args.init_network}")
        initial = NeuralCorrectionMLP.load(args.init_network)

    result = pipeline.train(dataset, initial_network=initial)
    if result.aborted:
        print(f"Training aborted: {result.abort_reason}")
        return 1

    if args.validate_model == "conductor":
        physical = ConductorBSDF.from_preset("gold")
    else:
        physical = DielectricBSDF(ior=1.5)
    hybrid = NeuralCorrectedBSDF(physical)
    hybrid.swap_network(result.network)

    report = ConstraintValidator().validate(hybrid)
    print(report.summary())

    contexts = [BSDFContext.from_angle(theta, wl) for theta in (0.0, 30.0, 60.0, 85.0) for wl in (450.0, 550.0, 650.0)]
    metrics = hybrid.compare(contexts)
    print(f"Hybrid vs physical: mean |dR| {metrics.mean_abs_delta_reflectance:.4f}, "
          f"max |dR| {metrics.max_abs_delta_reflectance:.4f}, mean dE2000 {metrics.mean_delta_e:.4f}")

    output_dir = os.path.dirname(args.output)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    result.network.save(args.output)
    print(f"Saved network to {args.output}")
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    print(f"Available physical models: {', '.join(BSDF_MODELS)}")
    print("Optimizing neural correction -> " + args.output)
    code = training_neural(args)
    print("\nTraining complete." if code == 0 else "\nTraining failed.")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
