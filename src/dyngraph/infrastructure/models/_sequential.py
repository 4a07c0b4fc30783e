"""
Sequential container model.

`Sequential` composes child models into one model by applying them in order:

    y = M_n(...M_2(M_1(x)))

Children are registered as sub-models under their position ("0", "1", ...),
so their parameters are named ``"0.weight"``, ``"1.bias"`` and so on relative
to the container, and the container is their owner.
"""

from __future__ import annotations

from typing import Any, Iterator, List, Optional

from ._model import Model


class Sequential(Model):
    """
    Sequential container model.

    Parameters
    ----------
    *models : Model
        Zero or more child models appended in order.
    """

    def __init__(self, *models: Model) -> None:
        super().__init__()
        self._layers: List[Model] = []
        for m in models:
            self.add(m)

    def add(self, model: Model, name: Optional[str] = None) -> None:
        """
        Append `model` and register it as a sub-model.

        Raises
        ------
        TypeError
            If `model` is not a `Model`.
        ValueError
            If `name` is already used by another child.
        """
        if not isinstance(model, Model):
            raise TypeError(f"Sequential.add expects a Model, got: {type(model)}")
        layer_name = name if name is not None else str(len(self._layers))
        if layer_name in self._children:
            raise ValueError(f"Duplicate layer name '{layer_name}' in Sequential.")
        self.add_model(layer_name, model)
        self._layers.append(model)

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self) -> Iterator[Model]:
        return iter(self._layers)

    def __getitem__(self, idx: int) -> Model:
        return self._layers[idx]

    @property
    def output_size(self) -> Optional[int]:
        """Outputs of the last layer; an empty container passes its inputs through."""
        return self._layers[-1].output_size if self._layers else None

    def forward(self, replica: int, inputs: List[Any], stream: Any = None) -> list:
        out = list(inputs)
        for layer in self._layers:
            out = layer.forward(replica, out, stream)
        return out
