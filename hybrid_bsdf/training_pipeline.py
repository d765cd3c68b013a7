"""
Training Pipeline for the Neural Correction
- Perceptual (CIEDE2000) + spectral RMSE + energy + magnitude loss
- Manual backpropagation through the SIREN, Adam updates
- Seeded shuffling, early stopping and fail-fast aborts
"""

import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import torch
from tqdm import tqdm

from hybrid_bsdf.bsdf_core import DTYPE
from hybrid_bsdf.neural_correction import (
    FEATURE_DIM,
    HIDDEN_DIM,
    OUTPUT_DIM,
    NeuralCorrectionConfig,
    NeuralCorrectionMLP,
    apply_correction,
)
from hybrid_bsdf.perceptual import delta_e_reflectance
from hybrid_bsdf.training_dataset import TrainingDataset


# Combined budget for weights, optimizer state and batch buffers
MEMORY_BUDGET_BYTES = 100 * 1024


@dataclass
class LossWeights:
    perceptual: float = 1.0
    spectral_rmse: float = 0.5
    energy: float = 10.0
    correction_magnitude: float = 0.01


@dataclass
class TrainingConfig:
    """
    Training hyperparameters

    A non-positive learning rate is not rejected here: train() reports it as
    an aborted run.
    """
    learning_rate: float = 1e-3
    batch_size: int = 32
    max_epochs: int = 100
    patience: int = 10
    min_delta: float = 1e-6
    seed: int = 42
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    validation_fraction: float = 0.2
    max_seconds: Optional[float] = None
    target_loss: Optional[float] = None
    loss_weights: LossWeights = field(default_factory=LossWeights)
    verbose: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_epochs < 1:
            raise ValueError(f"max_epochs must be >= 1, got {self.max_epochs}")
        if self.patience < 1:
            raise ValueError(f"patience must be >= 1, got {self.patience}")
        if self.min_delta < 0.0:
            raise ValueError(f"min_delta must be non-negative, got {self.min_delta}")
        for name in ("beta1", "beta2"):
            if not 0.0 <= getattr(self, name) < 1.0:
                raise ValueError(f"{name} must be in [0, 1), got {getattr(self, name)}")
        if not 0.0 <= self.validation_fraction < 1.0:
            raise ValueError(f"validation_fraction must be in [0, 1), got {self.validation_fraction}")


@dataclass
class LossBreakdown:
    total: float
    perceptual: float
    spectral_rmse: float
    energy: float
    correction_magnitude: float


class AdamState:
    """
    Adam moments (m, v) and step counter for one training run

    Gradients come from NeuralCorrectionMLP.backward and are assigned to
    .grad before each torch.optim.Adam step.
    """

    def __init__(
        self,
        network: NeuralCorrectionMLP,
        learning_rate: float,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8
    ):
        self.parameters = dict(network.named_parameters())
        self.optimizer = torch.optim.Adam(
            list(self.parameters.values()), lr=learning_rate, betas=betas, eps=eps)

    def step(self, gradients: Dict[str, torch.Tensor]):
        for name, param in self.parameters.items():
            param.grad = gradients[name].detach().clone()
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)

    @property
    def t(self) -> int:
        for param in self.parameters.values():
            state = self.optimizer.state.get(param)
            if state and "step" in state:
                return int(state["step"])
        return 0

    def first_moment(self, name: str) -> torch.Tensor:
        state = self.optimizer.state.get(self.parameters[name], {})
        return state.get("exp_avg", torch.zeros_like(self.parameters[name])).detach().clone()

    def second_moment(self, name: str) -> torch.Tensor:
        state = self.optimizer.state.get(self.parameters[name], {})
        return state.get("exp_avg_sq", torch.zeros_like(self.parameters[name])).detach().clone()

    def memory_bytes(self) -> int:
        return 2 * sum(p.numel() * p.element_size() for p in self.parameters.values())


@dataclass
class TrainingResult:
    network: NeuralCorrectionMLP
    status: str
    converged: bool
    epochs_completed: int
    final_loss: float
    best_loss: float
    loss_history: List[float] = field(default_factory=list)
    validation_history: List[float] = field(default_factory=list)
    abort_reason: Optional[str] = None
    mean_delta_e_before: float = 0.0
    mean_delta_e_after: float = 0.0
    perceptual_improvement_db: float = 0.0
    elapsed_seconds: float = 0.0

    @property
    def aborted(self) -> bool:
        return self.status == "aborted"

    def summary(self) -> str:
        lines = [
            f"Status: {self.status}" + (f" ({self.abort_reason})" if self.abort_reason else ""),
            f"Epochs: {self.epochs_completed}",
            f"Final loss: {self.final_loss:.6f}  Best loss: {self.best_loss:.6f}",
            f"Mean dE2000: {self.mean_delta_e_before:.4f} -> {self.mean_delta_e_after:.4f} "
            f"({self.perceptual_improvement_db:+.2f} dB)",
            f"Time: {self.elapsed_seconds:.2f}s",
        ]
        return "\n".join(lines)


def _snapshot(network: NeuralCorrectionMLP) -> Dict[str, torch.Tensor]:
    return {k: v.detach().clone() for k, v in network.state_dict().items()}


def _network_from_state(config: NeuralCorrectionConfig, state: Dict[str, torch.Tensor]) -> NeuralCorrectionMLP:
    network = NeuralCorrectionMLP(NeuralCorrectionConfig(**vars(config)), zero_init=True)
    network.load_state_dict(state)
    return network


class TrainingPipeline:
    """Offline trainer producing a new frozen NeuralCorrectionMLP"""

    def __init__(self, config: Optional[TrainingConfig] = None):
        self.config = config if config is not None else TrainingConfig()

    # Loss -----------------------------------------------------------------

    @staticmethod
    def _sample_terms(
        delta: torch.Tensor,
        physical: torch.Tensor,
        target: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Per-sample CIEDE2000 and squared (R, T) error of the normalized hybrid"""
        R, T, _ = apply_correction(physical[:, 0], physical[:, 1], delta[:, 0], delta[:, 1])
        delta_e = delta_e_reflectance(R, target[:, 0])
        squared = 0.5 * ((R - target[:, 0]) ** 2 + (T - target[:, 1]) ** 2)
        return delta_e, squared

    @staticmethod
    def _energy_terms(delta: torch.Tensor, physical: torch.Tensor) -> torch.Tensor:
        """Pre-normalization energy excess and range violation per sample"""
        r = physical[:, 0] + delta[:, 0]
        t = physical[:, 1] + delta[:, 1]
        return (
            torch.relu(r + t - 1.0)
            + torch.relu(-r) + torch.relu(-t)
            + torch.relu(r - 1.0) + torch.relu(t - 1.0)
        )

    def _loss_terms(
        self,
        delta: torch.Tensor,
        physical: torch.Tensor,
        target: torch.Tensor
    ) -> Tuple[torch.Tensor, ...]:
        """(total, perceptual, rmse, energy, magnitude) as scalar tensors"""
        w = self.config.loss_weights
        delta_e, squared = self._sample_terms(delta, physical, target)
        perceptual = delta_e.mean()
        rmse = torch.sqrt(squared.mean() + 1e-12)
        energy = self._energy_terms(delta, physical).mean()
        magnitude = delta.abs().sum(dim=-1).mean()
        total = (
            w.perceptual * perceptual
            + w.spectral_rmse * rmse
            + w.energy * energy
            + w.correction_magnitude * magnitude
        )
        return total, perceptual, rmse, energy, magnitude

    def loss_and_output_gradient(
        self,
        delta: torch.Tensor,
        physical: torch.Tensor,
        target: torch.Tensor
    ) -> Tuple[LossBreakdown, torch.Tensor]:
        """
        Batch loss and its gradient with respect to the network output

        Only this loss map goes through autograd; the network itself is
        differentiated by NeuralCorrectionMLP.backward.

        Args:
            delta: Network output (dR, dT) [N, 2]
            physical: Physical (R, T, A) [N, 3]
            target: Target (R, T, A) [N, 3]

        Returns:
            (LossBreakdown, dL/d(delta) [N, 2])
        """
        delta = delta.detach().to(DTYPE).requires_grad_(True)
        with torch.enable_grad():
            terms = self._loss_terms(delta, physical, target)
            grad, = torch.autograd.grad(terms[0], delta)
        breakdown = LossBreakdown(*(float(term) for term in terms))
        return breakdown, grad

    def compute_loss(
        self,
        network: NeuralCorrectionMLP,
        features: torch.Tensor,
        physical: torch.Tensor,
        target: torch.Tensor
    ) -> LossBreakdown:
        """Loss of a network on a full set of samples (no gradient)"""
        with torch.no_grad():
            delta = network(features)
            terms = self._loss_terms(delta, physical, target)
        return LossBreakdown(*(float(term) for term in terms))

    @staticmethod
    def mean_delta_e(
        network: Optional[NeuralCorrectionMLP],
        dataset: TrainingDataset
    ) -> float:
        """Mean CIEDE2000 of the hybrid (or of the bare physical model when network is None)"""
        if dataset.is_empty():
            return 0.0
        features, physical, target = dataset.to_tensors()
        if network is None:
            R = physical[:, 0]
        else:
            with torch.no_grad():
                delta = network(features)
            R, _, _ = apply_correction(physical[:, 0], physical[:, 1], delta[:, 0], delta[:, 1])
        return float(delta_e_reflectance(R, target[:, 0]).mean())

    # Resources ------------------------------------------------------------

    def estimate_memory(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """Bytes for weights, Adam moments and per-batch buffers"""
        batch_size = self.config.batch_size if batch_size is None else batch_size
        params = FEATURE_DIM * HIDDEN_DIM + HIDDEN_DIM + HIDDEN_DIM * HIDDEN_DIM + HIDDEN_DIM \
            + HIDDEN_DIM * OUTPUT_DIM + OUTPUT_DIM
        element = torch.finfo(DTYPE).bits // 8
        # x, z0, h0, z1, h1, tanh, out, grad_out, physical, target
        per_sample = FEATURE_DIM + 4 * HIDDEN_DIM + 3 * OUTPUT_DIM + 2 * 3
        weights = params * element
        optimizer = 2 * params * element
        buffers = batch_size * per_sample * element
        return {
            "weights": weights,
            "optimizer": optimizer,
            "buffers": buffers,
            "total": weights + optimizer + buffers,
        }

    # Training -------------------------------------------------------------

    def _initial_network(self, initial_network: Optional[NeuralCorrectionMLP]) -> NeuralCorrectionMLP:
        if initial_network is None:
            return NeuralCorrectionMLP(NeuralCorrectionConfig(seed=self.config.seed))
        if initial_network.is_zero():
            # All-zero hidden layers never receive a gradient
            if self.config.verbose:
                print("[INFO] Zero initial network, re-seeding hidden layers with output kept at zero")
            base = initial_network.config
            return NeuralCorrectionMLP.physical_start(NeuralCorrectionConfig(
                omega_0=base.omega_0, max_correction=base.max_correction, seed=self.config.seed))
        # Work on a private copy; the caller's network is never mutated
        return _network_from_state(initial_network.config, _snapshot(initial_network))

    def _aborted(
        self,
        reason: str,
        network: NeuralCorrectionMLP,
        state: Dict[str, torch.Tensor],
        epochs_completed: int,
        history: List[float],
        validation_history: List[float],
        best_loss: float,
        start: float
    ) -> TrainingResult:
        if self.config.verbose:
            print(f"\n[ABORT] {reason}")
        stable = _network_from_state(network.config, state).freeze()
        final_loss = validation_history[-1] if validation_history else math.nan
        return TrainingResult(
            network=stable,
            status="aborted",
            converged=False,
            epochs_completed=epochs_completed,
            final_loss=final_loss,
            best_loss=best_loss,
            loss_history=history,
            validation_history=validation_history,
            abort_reason=reason,
            elapsed_seconds=time.perf_counter() - start,
        )

    def train(
        self,
        dataset: TrainingDataset,
        initial_network: Optional[NeuralCorrectionMLP] = None
    ) -> TrainingResult:
        """
        Train a correction network

        Args:
            dataset: TrainingDataset (or any TrainingSample collection)
            initial_network: Starting weights (copied); seeded SIREN init when None

        Returns:
            TrainingResult holding a new frozen network
        """
        config = self.config
        start = time.perf_counter()
        network = self._initial_network(initial_network)
        stable_state = _snapshot(network)

        if not isinstance(dataset, TrainingDataset):
            dataset = TrainingDataset(list(dataset) if dataset is not None else [])

        if dataset.is_empty():
            return self._aborted("empty dataset", network, stable_state, 0, [], [], math.inf, start)
        if not math.isfinite(config.learning_rate) or config.learning_rate <= 0.0:
            return self._aborted(
                f"invalid learning rate {config.learning_rate}", network, stable_state, 0, [], [], math.inf, start)

        if config.validation_fraction > 0.0 and len(dataset) >= 2:
            train_set, val_set = dataset.split(1.0 - config.validation_fraction, config.seed)
            if train_set.is_empty() or val_set.is_empty():
                train_set, val_set = dataset, dataset
        else:
            train_set, val_set = dataset, dataset

        features, physical, target = train_set.to_tensors()
        val_features, val_physical, val_target = val_set.to_tensors()
        n = features.shape[0]

        adam = AdamState(network, config.learning_rate, (config.beta1, config.beta2), config.epsilon)
        generator = torch.Generator().manual_seed(int(config.seed))

        best_state = stable_state
        best_loss = math.inf
        history: List[float] = []
        validation_history: List[float] = []
        epochs_without_improvement = 0
        epochs_completed = 0
        status = "max_epochs"
        converged = False
        ema_loss_for_log = 0.0

        progress_bar = tqdm(range(1, config.max_epochs + 1), desc="Training progress", disable=not config.verbose)
        for epoch in progress_bar:
            order = torch.randperm(n, generator=generator)
            epoch_loss = 0.0
            num_batches = 0

            for batch_start in range(0, n, config.batch_size):
                idx = order[batch_start:batch_start + config.batch_size]
                out, cache = network.forward_cached(features[idx])
                breakdown, grad_out = self.loss_and_output_gradient(out, physical[idx], target[idx])

                if not math.isfinite(breakdown.total):
                    progress_bar.close()
                    return self._aborted(
                        f"non-finite loss at epoch {epoch}", network, stable_state,
                        epochs_completed, history, validation_history, best_loss, start)

                gradients = network.backward(cache, grad_out)
                if not all(bool(torch.isfinite(g).all()) for g in gradients.values()):
                    progress_bar.close()
                    return self._aborted(
                        f"non-finite gradient at epoch {epoch}", network, stable_state,
                        epochs_completed, history, validation_history, best_loss, start)

                adam.step(gradients)
                epoch_loss += breakdown.total
                num_batches += 1

            train_loss = epoch_loss / num_batches
            val_loss = self.compute_loss(network, val_features, val_physical, val_target).total
            if not math.isfinite(val_loss):
                progress_bar.close()
                return self._aborted(
                    f"non-finite validation loss at epoch {epoch}", network, stable_state,
                    epochs_completed, history, validation_history, best_loss, start)

            history.append(train_loss)
            validation_history.append(val_loss)
            stable_state = _snapshot(network)
            epochs_completed = epoch

            if val_loss < best_loss - config.min_delta:
                best_loss = val_loss
                best_state = stable_state
                epochs_without_improvement = 0
            else:
                epochs_without_improvement += 1

            ema_loss_for_log = 0.4 * train_loss + 0.6 * ema_loss_for_log
            progress_bar.set_postfix({"Loss": f"{ema_loss_for_log:.6f}", "Val": f"{val_loss:.6f}"})

            # Budget checks happen only at epoch boundaries
            if config.target_loss is not None and val_loss <= config.target_loss:
                status, converged = "converged", True
                break
            if epochs_without_improvement >= config.patience:
                status, converged = "early_stopped", True
                if config.verbose:
                    print(f"\n[EPOCH {epoch}] No improvement for {config.patience} epochs, stopping")
                break
            if config.max_seconds is not None and time.perf_counter() - start >= config.max_seconds:
                status = "time_budget"
                break
        progress_bar.close()

        trained = _network_from_state(network.config, best_state).freeze()
        before = self.mean_delta_e(None, dataset)
        after = self.mean_delta_e(trained, dataset)
        improvement_db = 10.0 * math.log10(before / after) if before > 0.0 and after > 0.0 else 0.0

        result = TrainingResult(
            network=trained,
            status=status,
            converged=converged,
            epochs_completed=epochs_completed,
            final_loss=validation_history[-1],
            best_loss=best_loss,
            loss_history=history,
            validation_history=validation_history,
            mean_delta_e_before=before,
            mean_delta_e_after=after,
            perceptual_improvement_db=improvement_db,
            elapsed_seconds=time.perf_counter() - start,
        )
        if config.verbose:
            print("\n" + result.summary())
        return result
