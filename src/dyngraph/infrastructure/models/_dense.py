"""
Dense (fully connected) model with lazy input-dimension inference.

Only the output width is fixed at construction time. The input width is
inferred from the first input evaluated (``x.shape[-1]``), at which point
the weight ``(in_features, count)`` and optional bias ``(count,)`` are
created on the input's device.

With data parallelism every replica owns its own copy of each parameter on
the replica's device; replicas other than 0 start from replica 0's values.
"""

from __future__ import annotations

from typing import Any, List, Optional

import numpy as np

from ...domain._errors import ValidationError
from ..graph._functional import Functional
from ._model import Model


class Dense(Model):
    """
    ``y = x @ weight + bias``.

    Parameters
    ----------
    count : int
        Number of output features.
    no_bias : bool, optional
        Omit the bias term. Defaults to False.
    seed : Optional[int], optional
        Seed for the parameter initializer.

    Raises
    ------
    ValueError
        If `count` is not a positive integer.
    """

    def __init__(self, count: int, no_bias: bool = False, seed: Optional[int] = None) -> None:
        super().__init__()
        if count <= 0:
            raise ValueError("count must be a positive integer")
        self.count = int(count)
        self.no_bias = bool(no_bias)
        self.in_features: Optional[int] = None
        self._rng = np.random.default_rng(seed)

    @property
    def is_built(self) -> bool:
        return self.has_parameter("weight")

    def _init_weight(self) -> np.ndarray:
        # Same scheme as a uniform fan-in initializer: U(-1/sqrt(in), 1/sqrt(in)).
        k = 1.0 / np.sqrt(self.in_features)
        return self._rng.uniform(-k, k, size=(self.in_features, self.count)).astype(np.float32)

    def _init_bias(self) -> np.ndarray:
        k = 1.0 / np.sqrt(self.in_features)
        return self._rng.uniform(-k, k, size=(self.count,)).astype(np.float32)

    def _build(self, replica: int, in_features: int, device: Any) -> None:
        if self.in_features is None:
            self.in_features = int(in_features)
        elif self.in_features != int(in_features):
            raise ValidationError(
                f"Dense already built with in_features={self.in_features}, "
                f"but got in_features={int(in_features)}"
            )
        if not self.has_parameter("weight", replica):
            self.create_parameter("weight", replica, device, self._init_weight)
        if not self.no_bias and not self.has_parameter("bias", replica):
            self.create_parameter("bias", replica, device, self._init_bias)

    def forward(self, replica: int, inputs: List[Any], stream: Any = None) -> list:
        if len(inputs) != 1:
            raise ValidationError(f"Dense expects one input, got {len(inputs)}")
        x = inputs[0]
        if len(x.shape) < 2:
            raise ValidationError(f"Dense expects input of rank >= 2, got {x.shape}")
        self._build(replica, x.shape[-1], x.device)
        weight = self._params["weight"][replica]
        bias = None if self.no_bias else self._params["bias"][replica]
        return [Functional.matmul(x, weight, bias, stream=stream)]
