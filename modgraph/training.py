from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

import torch

from .core import Module
from .protos import Criterion

Sample = Tuple[Any, torch.Tensor]

if TYPE_CHECKING:
    from .diagnostics import GradientWatcher


@dataclass(frozen=True)
class TrainLoopConfig:
    epochs: int
    lr: float
    log_every: int = 0
    grad_clip: Optional[float] = None
    shuffle: bool = True


@dataclass
class EpochStats:
    avg_loss: float
    final_loss: float


class Trainer:
    """
    Plain SGD over a module (typically a GraphModule) and a criterion.

    Each sample runs forward, the criterion, zero_grad_parameters, backward,
    acc_grad_parameters and update_parameters.
    """

    def __init__(
        self,
        model: Module,
        criterion: Criterion,
        dataset: Sequence[Sample],
        config: TrainLoopConfig,
        *,
        grad_monitor: Optional["GradientWatcher"] = None,
        grad_summary_top_k: Optional[int] = 5,
    ) -> None:
        if config.epochs < 1:
            raise ValueError("epochs must be >= 1")
        if not dataset:
            raise ValueError("dataset must contain at least one sample")
        self.model = model
        self.criterion = criterion
        self.dataset = dataset
        self.config = config
        self.grad_monitor = grad_monitor
        self.grad_summary_top_k = grad_summary_top_k

    def run(self, *, seed: Optional[int] = None) -> List[float]:
        if seed is not None:
            torch.manual_seed(seed)
        history: List[float] = []
        for epoch in range(1, self.config.epochs + 1):
            stats = self._train_epoch(epoch)
            history.append(stats.avg_loss)
            self._log_epoch(epoch, stats)
        return history

    def step(self, inputs: Any, target: torch.Tensor) -> float:
        """Single optimisation step on one sample; returns the loss before the update."""
        model = self.model
        output = model.update_output(inputs)
        loss = self.criterion.update_output(output, target)
        grad = self.criterion.update_grad_input(output, target)
        model.zero_grad_parameters()
        model.update_grad_input(inputs, grad)
        model.acc_grad_parameters(inputs, grad, 1.0)
        if self.config.grad_clip is not None:
            self._clip_gradients(self.config.grad_clip)
        model.update_parameters(self.config.lr)
        return float(loss.item())

    def _train_epoch(self, epoch: int) -> EpochStats:
        total_loss = 0.0
        last_loss_value = 0.0
        count = len(self.dataset)
        if self.config.shuffle:
            order = torch.randperm(count).tolist()
        else:
            order = list(range(count))

        for step, idx in enumerate(order, start=1):
            inputs, target = self.dataset[idx]
            last_loss_value = self.step(inputs, target)
            total_loss += last_loss_value

            log_every = self.config.log_every
            if log_every > 0 and (step % log_every == 0 or step == count):
                print(f"[epoch {epoch}] step {step}/{count} loss={last_loss_value:.4f}")
                self._log_gradient_summary()

        return EpochStats(avg_loss=total_loss / count, final_loss=last_loss_value)

    def _clip_gradients(self, max_norm: float) -> None:
        found = self.model.parameters()
        if not found:
            return
        grads = list({id(g): g for g in found[1]}.values())
        total = torch.sqrt(sum((g.detach() ** 2).sum() for g in grads))
        if float(total) > max_norm:
            factor = max_norm / (float(total) + 1e-6)
            for grad in grads:
                grad.mul_(factor)

    def _log_epoch(self, epoch: int, stats: EpochStats) -> None:
        if self.config.log_every > 0:
            print(f"Epoch {epoch} avg loss: {stats.avg_loss:.4f} final loss: {stats.final_loss:.4f}")

    def _log_gradient_summary(self) -> None:
        if self.grad_monitor is None:
            return
        summary = self.grad_monitor.pop_summary(top_k=self.grad_summary_top_k)
        if summary is None:
            return
        text = summary.to_text()
        if not text:
            return
        for line in text.splitlines():
            print(f"    {line}")


def train_graph(
    model: Module,
    criterion: Criterion,
    dataset: Sequence[Sample],
    *,
    epochs: int,
    lr: float,
    log_every: int = 0,
    seed: Optional[int] = None,
    grad_clip: Optional[float] = None,
    shuffle: bool = True,
    grad_monitor: Optional["GradientWatcher"] = None,
    grad_summary_top_k: Optional[int] = 5,
) -> List[float]:
    """
    Train a graph on a sequence of (inputs, target) samples with plain SGD.

    Returns a list of average loss values per epoch.
    """
    config = TrainLoopConfig(
        epochs=epochs,
        lr=lr,
        log_every=log_every,
        grad_clip=grad_clip,
        shuffle=shuffle,
    )
    trainer = Trainer(
        model,
        criterion,
        dataset,
        config,
        grad_monitor=grad_monitor,
        grad_summary_top_k=grad_summary_top_k,
    )
    return trainer.run(seed=seed)
