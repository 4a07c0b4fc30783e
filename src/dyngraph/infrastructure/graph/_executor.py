"""
Command execution on graph variables.

`GraphExecutor` turns a command plus graph inputs into fresh output
variables:

1. validate that there is at least one input and that every input belongs to
   this executor's graph (`CrossGraphError` otherwise);
2. for replica groups, check that every group has the same replica count and
   flatten the inputs parallel-major (``replica * input_count + index``);
3. allocate the outputs from the inferred metadata;
4. dispatch, optionally on a stream;
5. record the operation on the graph's tape when gradients are enabled and
   any input is tracked.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple

from ...domain._command import NO_HINT, Command, CommandKind, Hint
from ...domain._errors import CrossGraphError, ValidationError
from ...domain._types import ShapeFormat, TensorFormat
from ..native._kernels import get_kernel
from ..tensor._group import TensorGroup
from ..tensor._storage import TensorStorage
from ..tensor._tensor import Tensor
from ._tape import TapeEntry
from ._variable import GraphVariable


class GraphExecutor:
    """
    Executes commands for one `DynamicGraph`.
    """

    def __init__(self, graph: Any) -> None:
        self.graph = graph

    # ------------------------------------------------------------------
    # argument handling
    # ------------------------------------------------------------------
    def _check(self, op: str, v: GraphVariable) -> None:
        if v.graph is not self.graph:
            raise CrossGraphError(op)
        if not v.has_value:
            raise ValidationError(f"{op}: input variable has no value.")

    def _flatten(self, op: str, args: Sequence[Any]) -> Tuple[List[Any], int, bool]:
        bound = [x for x in args if x is not None]
        if not bound:
            raise ValidationError(f"{op} requires at least one input.")
        grouped = isinstance(bound[0], TensorGroup)
        if any(isinstance(x, TensorGroup) != grouped for x in bound):
            raise ValidationError(f"{op}: cannot mix groups and single variables.")
        if not grouped:
            for v in bound:
                self._check(op, v)
            return list(args), 1, False
        parallel = len(bound[0])
        for g in bound:
            if len(g) != parallel:
                raise ValidationError(
                    f"{op}: groups have different replica counts ({parallel} vs {len(g)})."
                )
        flat = [None if x is None else x[j] for j in range(parallel) for x in args]
        for v in flat:
            if v is not None:
                self._check(op, v)
        return flat, parallel, True

    @staticmethod
    def _regroup(outs: List[GraphVariable], size: int, parallel: int, grouped: bool) -> list:
        if not grouped:
            return outs
        return [TensorGroup([outs[j * size + i] for j in range(parallel)]) for i in range(size)]

    def _stream(self, stream: Any) -> Any:
        return stream if stream is not None else self.graph.stream_context

    def _record(self, entry: TapeEntry) -> None:
        if not self.graph.grad_enabled:
            return
        if not any(v is not None and v.tracked for v in entry.inputs):
            return
        self.graph.tape.record(entry)
        for o in entry.outputs:
            o.mark_produced()

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------
    def exec(
        self,
        cmd: Command,
        inputs: Sequence[Any],
        output_size: int = 1,
        hint: Hint = NO_HINT,
        stream: Any = None,
    ) -> list:
        """
        Execute `cmd` on `inputs` and return `output_size` new variables (or
        groups, when the inputs are groups).

        Raises
        ------
        ValidationError
            If there are no inputs or group replica counts differ.
        CrossGraphError
            If an input belongs to another graph.
        """
        flat, parallel, grouped = self._flatten(cmd.name, inputs)
        runtime = self.graph.runtime
        storages = runtime.graph_exec(
            cmd,
            hint,
            [None if v is None else v.storage for v in flat],
            [None] * (output_size * parallel),
            parallel,
            self._stream(stream),
            allocate=lambda meta: TensorStorage.from_meta(meta, runtime),
        )
        outs = [GraphVariable(self.graph, Tensor(s)) for s in storages]
        if get_kernel(cmd.kind).differentiable:
            self._record(TapeEntry(cmd, hint, flat, outs, parallel))
        return self._regroup(outs, output_size, parallel, grouped)

    def exec_into(
        self,
        cmd: Command,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        hint: Hint = NO_HINT,
        stream: Any = None,
    ) -> list:
        """
        Execute `cmd` writing into existing `outputs`. Not recorded.
        """
        out_flat, parallel, grouped = self._flatten(cmd.name, outputs)
        if inputs:
            in_flat, in_parallel, in_grouped = self._flatten(cmd.name, inputs)
            if in_grouped != grouped or in_parallel != parallel:
                raise ValidationError(f"{cmd.name}: inputs and outputs use different replica layouts.")
        else:
            in_flat = []
        self.graph.runtime.graph_exec(
            cmd,
            hint,
            [None if v is None else v.storage for v in in_flat],
            [v.storage for v in out_flat],
            parallel,
            self._stream(stream),
        )
        return list(outputs)

    def evaluate(
        self,
        model: Any,
        inputs: Sequence[Any],
        output_count: Optional[int] = None,
        is_test: bool = False,
        stream: Any = None,
    ) -> list:
        """
        Evaluate `model` on `inputs`. For groups the model is configured for
        the replica count first (idempotent for repeated counts).

        Parameters
        ----------
        output_count : Optional[int]
            Expected outputs per replica. Checked against
            `model.output_size` before dispatch and against what every
            replica returned afterwards. None accepts whatever the model
            produces, as long as every replica agrees.

        Raises
        ------
        ValidationError
            If the output counts disagree.
        """
        if output_count is not None:
            if output_count < 1:
                raise ValidationError(f"output_count must be >= 1, got {output_count}")
            declared = model.output_size
            if declared is not None and declared != output_count:
                raise ValidationError(
                    f"{type(model).__name__} produces {declared} output(s), {output_count} requested."
                )
        flat, parallel, grouped = self._flatten("evaluate", inputs)
        self.graph.register_model(model)
        outs = self.graph.runtime.graph_evaluate(model, is_test, flat, parallel, self._stream(stream))
        size = len(outs) // parallel if output_count is None else output_count
        if len(outs) != size * parallel:
            raise ValidationError(
                f"{type(model).__name__} returned {len(outs)} output(s) over {parallel} "
                f"replica(s), expected {size} per replica."
            )
        return self._regroup(outs, size, parallel, grouped)

    def reshape(
        self,
        var: GraphVariable,
        shape_format: Optional[ShapeFormat] = None,
        *,
        format: Optional[TensorFormat] = None,
        shape: Optional[Sequence[int]] = None,
        offset: Optional[Sequence[int]] = None,
        step: Optional[Sequence[int]] = None,
    ) -> GraphVariable:
        self._check("reshape", var)
        tensor = var.tensor.reshaped(shape_format, format=format, shape=shape, offset=offset, step=step)
        out = GraphVariable(self.graph, tensor, is_constant=var.is_constant)
        if offset is None and tensor.size == var.tensor.size:
            in_shape = var.shape
            self._record(
                TapeEntry(
                    Command(CommandKind.NOOP),
                    NO_HINT,
                    [var],
                    [out],
                    grad_fn=lambda grads: [None if grads[0] is None else grads[0].reshape(in_shape)],
                )
            )
        return out
