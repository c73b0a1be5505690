# modgraph/protos.py

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence, Tuple

import torch

from .core import Module, ParamLists


class Linear(Module):
    """
    Prototype: affine map y = W x + b over a vector [in] or a batch [B, in].
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = True) -> None:
        super().__init__()
        if in_features < 1 or out_features < 1:
            raise ValueError("in_features and out_features must be >= 1")
        self.in_features = in_features
        self.out_features = out_features
        bound = 1.0 / math.sqrt(in_features)
        self.weight = torch.empty(out_features, in_features).uniform_(-bound, bound)
        self.grad_weight = torch.zeros_like(self.weight)
        self.bias: Optional[torch.Tensor] = None
        self.grad_bias: Optional[torch.Tensor] = None
        if bias:
            self.bias = torch.empty(out_features).uniform_(-bound, bound)
            self.grad_bias = torch.zeros_like(self.bias)

    def update_output(self, input: torch.Tensor) -> torch.Tensor:
        if input.dim() not in (1, 2):
            raise ValueError(f"Linear expects [in] or [B, in] input, got {tuple(input.shape)}")
        output = torch.matmul(input, self.weight.t())
        if self.bias is not None:
            output = output + self.bias
        self.output = output
        return output

    def update_grad_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        self.grad_input = torch.matmul(grad_output, self.weight)
        return self.grad_input

    def acc_grad_parameters(self, input: torch.Tensor, grad_output: torch.Tensor, scale: float = 1.0) -> None:
        if input.dim() == 1:
            self.grad_weight.add_(torch.outer(grad_output, input), alpha=scale)
            if self.grad_bias is not None:
                self.grad_bias.add_(grad_output, alpha=scale)
        else:
            self.grad_weight.add_(grad_output.t() @ input, alpha=scale)
            if self.grad_bias is not None:
                self.grad_bias.add_(grad_output.sum(dim=0), alpha=scale)

    def parameters(self) -> ParamLists:
        if self.bias is None:
            return [self.weight], [self.grad_weight]
        return [self.weight, self.bias], [self.grad_weight, self.grad_bias]

    def __repr__(self) -> str:
        return f"Linear({self.in_features} -> {self.out_features})"


class Identity(Module):
    """Prototype: passes its input (single value or tuple) through unchanged."""

    def update_output(self, input: Any) -> Any:
        self.output = input
        return input

    def update_grad_input(self, input: Any, grad_output: Any) -> Any:
        self.grad_input = grad_output
        return grad_output


class Tanh(Module):
    def update_output(self, input: torch.Tensor) -> torch.Tensor:
        self.output = torch.tanh(input)
        return self.output

    def update_grad_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        y = torch.tanh(input)
        self.grad_input = grad_output * (1 - y * y)
        return self.grad_input


class Sigmoid(Module):
    def update_output(self, input: torch.Tensor) -> torch.Tensor:
        self.output = torch.sigmoid(input)
        return self.output

    def update_grad_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        y = torch.sigmoid(input)
        self.grad_input = grad_output * y * (1 - y)
        return self.grad_input


class ReLU(Module):
    def update_output(self, input: torch.Tensor) -> torch.Tensor:
        self.output = torch.clamp(input, min=0)
        return self.output

    def update_grad_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        self.grad_input = grad_output * (input > 0).to(grad_output.dtype)
        return self.grad_input


class CAddTable(Module):
    """
    Prototype: element-wise sum of a tuple of tensors.
    """

    def update_output(self, input: Sequence[torch.Tensor]) -> torch.Tensor:
        output = input[0]
        for tensor in input[1:]:
            output = output + tensor
        self.output = output
        return output

    def update_grad_input(self, input: Sequence[torch.Tensor], grad_output: torch.Tensor) -> Tuple[torch.Tensor, ...]:
        self.grad_input = tuple(grad_output for _ in input)
        return self.grad_input


class JoinTable(Module):
    """
    Prototype: concatenate a tuple of tensors along ``dim``.
    """

    def __init__(self, dim: int = 0) -> None:
        super().__init__()
        self.dim = dim

    def update_output(self, input: Sequence[torch.Tensor]) -> torch.Tensor:
        self.output = torch.cat(list(input), dim=self.dim)
        return self.output

    def update_grad_input(self, input: Sequence[torch.Tensor], grad_output: torch.Tensor) -> Tuple[torch.Tensor, ...]:
        sizes = [tensor.shape[self.dim] for tensor in input]
        self.grad_input = tuple(torch.split(grad_output, sizes, dim=self.dim))
        return self.grad_input


class SplitTable(Module):
    """
    Prototype: split a tensor into a tuple of slices along ``dim``.
    """

    def __init__(self, dim: int = 0) -> None:
        super().__init__()
        self.dim = dim

    def update_output(self, input: torch.Tensor) -> Tuple[torch.Tensor, ...]:
        self.output = tuple(torch.unbind(input, dim=self.dim))
        return self.output

    def update_grad_input(self, input: torch.Tensor, grad_output: Sequence[torch.Tensor]) -> torch.Tensor:
        self.grad_input = torch.stack(list(grad_output), dim=self.dim)
        return self.grad_input


class SelectTable(Module):
    """
    Prototype: pick element ``index`` of a tuple input.
    """

    def __init__(self, index: int) -> None:
        super().__init__()
        self.index = index

    def update_output(self, input: Sequence[Any]) -> Any:
        self.output = input[self.index]
        return self.output

    def update_grad_input(self, input: Sequence[torch.Tensor], grad_output: torch.Tensor) -> Tuple[torch.Tensor, ...]:
        picked = self.index % len(input)
        self.grad_input = tuple(
            grad_output if i == picked else torch.zeros_like(tensor)
            for i, tensor in enumerate(input)
        )
        return self.grad_input


class Sequential(Module):
    """
    Prototype: chain of modules applied one after another.
    """

    def __init__(self, *modules: Module) -> None:
        super().__init__()
        self.modules: List[Module] = list(modules)
        self._inputs: List[Any] = []

    def add(self, module: Module) -> "Sequential":
        self.modules.append(module)
        return self

    def update_output(self, input: Any) -> Any:
        self._inputs = []
        for module in self.modules:
            self._inputs.append(input)
            input = module.update_output(input)
        self.output = input
        return input

    def _chain_inputs(self, input: Any) -> List[Any]:
        # the recorded chain belongs to the latest forward call only
        if not self._inputs or self._inputs[0] is not input:
            self.update_output(input)
        return self._inputs

    def update_grad_input(self, input: Any, grad_output: Any) -> Any:
        chain = self._chain_inputs(input)
        for module, module_input in zip(reversed(self.modules), reversed(chain)):
            grad_output = module.update_grad_input(module_input, grad_output)
        self.grad_input = grad_output
        return grad_output

    def acc_grad_parameters(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        chain = self._chain_inputs(input)
        for module, module_input in zip(reversed(self.modules), reversed(chain)):
            module.acc_grad_parameters(module_input, grad_output, scale)
            grad_output = module.update_grad_input(module_input, grad_output)

    def parameters(self) -> Optional[ParamLists]:
        return _collect_parameters(self.modules)


class ParallelTable(Module):
    """
    Prototype: apply the i-th module to the i-th element of a tuple input.
    """

    def __init__(self, *modules: Module) -> None:
        super().__init__()
        self.modules: List[Module] = list(modules)

    def add(self, module: Module) -> "ParallelTable":
        self.modules.append(module)
        return self

    def _check(self, input: Sequence[Any]) -> None:
        if len(input) != len(self.modules):
            raise ValueError(f"ParallelTable has {len(self.modules)} modules but got {len(input)} inputs.")

    def update_output(self, input: Sequence[Any]) -> Tuple[Any, ...]:
        self._check(input)
        self.output = tuple(m.update_output(x) for m, x in zip(self.modules, input))
        return self.output

    def update_grad_input(self, input: Sequence[Any], grad_output: Sequence[Any]) -> Tuple[Any, ...]:
        self._check(input)
        self.grad_input = tuple(
            m.update_grad_input(x, g) for m, x, g in zip(self.modules, input, grad_output)
        )
        return self.grad_input

    def acc_grad_parameters(self, input: Sequence[Any], grad_output: Sequence[Any], scale: float = 1.0) -> None:
        for m, x, g in zip(self.modules, input, grad_output):
            m.acc_grad_parameters(x, g, scale)

    def parameters(self) -> Optional[ParamLists]:
        return _collect_parameters(self.modules)


def _collect_parameters(modules: Sequence[Module]) -> Optional[ParamLists]:
    params: List[torch.Tensor] = []
    grads: List[torch.Tensor] = []
    for module in modules:
        found = module.parameters()
        if not found:
            continue
        params.extend(found[0])
        grads.extend(found[1])
    if not params:
        return None
    return params, grads


class Criterion:
    """
    Loss function with an explicit gradient.

    update_output(input, target) -> scalar loss
    update_grad_input(input, target) -> d loss / d input
    """

    def __init__(self) -> None:
        self.output: Optional[torch.Tensor] = None
        self.grad_input: Optional[torch.Tensor] = None

    def update_output(self, input: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def update_grad_input(self, input: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class MSECriterion(Criterion):
    def __init__(self, size_average: bool = True) -> None:
        super().__init__()
        self.size_average = size_average

    def update_output(self, input: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        diff = input - target
        loss = (diff * diff).sum()
        if self.size_average:
            loss = loss / diff.numel()
        self.output = loss
        return loss

    def update_grad_input(self, input: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        grad = 2 * (input - target)
        if self.size_average:
            grad = grad / grad.numel()
        self.grad_input = grad
        return grad
