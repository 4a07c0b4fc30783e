"""
Reference native runtime.

`NativeRuntime` is the single entry point the tensor and graph layers use to
allocate device memory and execute commands. It dispatches to the NumPy
kernels in `_kernels` and the update rules in `_minimizers`, optionally on an
asynchronous `StreamContext` lane.

Argument layout
---------------
Multi-replica calls take flat argument lists in parallel-major order: the
k-th argument of replica j sits at index ``j * size + k`` where ``size`` is
the per-replica argument count. Saved auxiliary state for parameter i of
replica j, slot s, sits at ``(j * parameter_count + i) * aux_size + s``.

Errors
------
Precondition violations raise `ValidationError` synchronously. Failures
inside a kernel are reported as `ExecutionError` carrying a diagnostic (the
full traceback when `RuntimeConfig.debug` is on); on a stream they surface
from `StreamContext.join()`.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence
import threading
import traceback

import numpy as np

from ...domain._command import NO_HINT, Command, Hint
from ...domain._errors import DeviceNotSupportedError, ExecutionError, ValidationError
from ...domain.device._device import Device, as_device
from .._config import RuntimeConfig
from ._kernels import TensorMeta, get_kernel
from ._memory import DeviceBuffer, MemoryManager
from ._minimizers import apply_update, saved_aux_size
from ._stream import StreamContext

Allocator = Callable[[TensorMeta], Any]


def _array(storage: Any) -> Optional[np.ndarray]:
    return None if storage is None else storage.ndarray()


def _touch(storages: Sequence[Any]) -> None:
    for s in storages:
        if s is not None:
            s.buffer.touch()


def _split(items: Sequence[Any], parallel: int, what: str) -> List[List[Any]]:
    if parallel < 1:
        raise ValidationError(f"parallel must be >= 1, got {parallel}")
    if len(items) % parallel != 0:
        raise ValidationError(
            f"{len(items)} {what} cannot be split evenly across {parallel} replica(s)."
        )
    size = len(items) // parallel
    return [list(items[j * size : (j + 1) * size]) for j in range(parallel)]


class NativeRuntime:
    """
    NumPy-backed execution runtime.

    Parameters
    ----------
    config : Optional[RuntimeConfig]
        Runtime configuration. Defaults to `RuntimeConfig()`.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None) -> None:
        self.config = config if config is not None else RuntimeConfig()
        self.memory = MemoryManager(self.config.memory_limit_bytes)
        self.command_log: List[str] = []
        self._log_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"NativeRuntime({self.config!r})"

    # ------------------------------------------------------------------
    # devices and memory
    # ------------------------------------------------------------------
    def device_count(self) -> int:
        """Number of accelerator devices exposed by this runtime."""
        return int(self.config.gpu_count)

    def check_device(self, device: Any, op: str = "allocate") -> Device:
        """
        Normalize `device` and ensure this runtime exposes it.

        Raises
        ------
        DeviceNotSupportedError
            If an accelerator ordinal beyond `device_count()` is requested.
        """
        dev = as_device(device)
        if dev.is_gpu() and dev.index >= self.device_count():
            raise DeviceNotSupportedError(op, str(dev))
        return dev

    def allocate(self, device: Any, nbytes: int) -> DeviceBuffer:
        dev = self.check_device(device)
        return self.memory.allocate(dev, nbytes)

    def bytes_in_use(self, device: Any) -> int:
        return self.memory.bytes_in_use(as_device(device))

    def create_stream(self, device: Any = None, name: Optional[str] = None) -> StreamContext:
        """Create an ordered asynchronous lane bound to `device`."""
        return StreamContext(self.check_device(device, "create_stream"), name)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def infer(self, cmd: Command, metas: Sequence[Optional[TensorMeta]]) -> List[TensorMeta]:
        """Output metadata of `cmd` for the given input metadata."""
        return get_kernel(cmd.kind).infer(cmd, metas)

    def _log(self, entry: str) -> None:
        if self.config.debug:
            with self._log_lock:
                self.command_log.append(entry)

    def _guard(self, cmd: Command, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except ValidationError:
            raise
        except Exception as e:
            if self.config.debug:
                diagnostic = traceback.format_exc()
            else:
                diagnostic = f"{type(e).__name__}: {e}"
            raise ExecutionError(cmd.name, diagnostic) from e

    def _launch(self, stream: Optional[StreamContext], job: Callable[[], None]) -> None:
        if stream is None:
            job()
        else:
            stream.submit(job)

    def exec_command(
        self,
        cmd: Command,
        hint: Hint,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        stream: Optional[StreamContext] = None,
    ) -> None:
        """
        Run one command on explicit storages.

        `inputs` may contain None for unbound optional arguments; every
        output must be bound.
        """
        kernel = get_kernel(cmd.kind)
        if any(o is None for o in outputs):
            raise ValidationError(f"{cmd.name}: every output of exec_command must be bound.")
        in_arrays = [_array(s) for s in inputs]
        out_arrays = [_array(s) for s in outputs]
        _touch(outputs)
        self._log(f"exec {cmd!r} inputs={len(inputs)} outputs={len(outputs)}")
        self._launch(stream, lambda: self._guard(cmd, kernel.forward, cmd, in_arrays, out_arrays))

    def graph_exec(
        self,
        cmd: Command,
        hint: Hint,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        parallel: int = 1,
        stream: Optional[StreamContext] = None,
        allocate: Optional[Allocator] = None,
    ) -> List[Any]:
        """
        Run `cmd` once per replica over flattened parallel-major arguments.

        Unbound (None) outputs are allocated through `allocate` from the
        inferred output metadata before anything is dispatched.

        Returns
        -------
        list
            The flattened output storages (bound and newly allocated).
        """
        hint = NO_HINT if hint is None else hint
        kernel = get_kernel(cmd.kind)
        in_groups = _split(inputs, parallel, "inputs")
        out_groups = _split(outputs, parallel, "outputs")

        resolved: List[List[Any]] = []
        for ins, outs in zip(in_groups, out_groups):
            if any(o is None for o in outs):
                if allocate is None:
                    raise ValidationError(f"{cmd.name}: unbound outputs need an allocator.")
                metas = [None if s is None else s.meta for s in ins]
                inferred = kernel.infer(cmd, metas)
                if len(inferred) < len(outs):
                    raise ValidationError(
                        f"{cmd.name} produces {len(inferred)} output(s), {len(outs)} requested."
                    )
                outs = [allocate(inferred[k]) if o is None else o for k, o in enumerate(outs)]
            resolved.append(list(outs))

        self._log(f"graph_exec {cmd!r} parallel={parallel}")
        for ins, outs in zip(in_groups, resolved):
            in_arrays = [_array(s) for s in ins]
            out_arrays = [_array(s) for s in outs]
            _touch(outs)
            self._launch(
                stream,
                lambda i=in_arrays, o=out_arrays: self._guard(cmd, kernel.forward, cmd, i, o),
            )
        return [o for outs in resolved for o in outs]

    def graph_evaluate(
        self,
        model: Any,
        is_test: bool,
        inputs: Sequence[Any],
        parallel: int = 1,
        stream: Optional[StreamContext] = None,
    ) -> List[Any]:
        """
        Evaluate `model` once per replica over flattened parallel-major inputs.

        The model is configured for `parallel` replicas before dispatch.
        """
        in_groups = _split(inputs, parallel, "inputs")
        model.set_data_parallel(parallel)
        self._log(f"graph_evaluate {type(model).__name__} parallel={parallel} is_test={is_test}")
        outputs: List[Any] = []
        size: Optional[int] = None
        for j, ins in enumerate(in_groups):
            outs = model.evaluate_replica(j, ins, is_test=is_test, stream=stream)
            if size is None:
                size = len(outs)
            elif len(outs) != size:
                raise ValidationError(
                    f"{type(model).__name__}: replica {j} returned {len(outs)} output(s), "
                    f"replica 0 returned {size}."
                )
            outputs.extend(outs)
        return outputs

    def backward(
        self,
        cmd: Command,
        grads: Sequence[Optional[np.ndarray]],
        inputs: Sequence[Optional[np.ndarray]],
        outputs: Sequence[np.ndarray],
    ) -> List[Optional[np.ndarray]]:
        """
        Gradients of one recorded command w.r.t. its inputs.

        Non-differentiable commands yield no gradients.
        """
        kernel = get_kernel(cmd.kind)
        if not kernel.differentiable:
            return [None] * len(inputs)
        return self._guard(cmd, kernel.backward, cmd, grads, inputs, outputs)

    # ------------------------------------------------------------------
    # minimizers
    # ------------------------------------------------------------------
    def minimizer_saved_aux_size(self, minimizer: Command) -> int:
        return saved_aux_size(minimizer)

    def apply_replicated(
        self,
        minimizer: Command,
        gradients: Sequence[Any],
        parameters: Sequence[Any],
        saved_aux: Sequence[Sequence[Any]],
        stream: Optional[StreamContext] = None,
    ) -> None:
        """
        Update the replicas of one parameter.

        Gradients present on several replicas are averaged before the rule is
        applied to every replica with that replica's auxiliary state.
        """
        if not (len(gradients) == len(parameters) == len(saved_aux)):
            raise ValidationError("Gradients, parameters and saved aux must have one entry per replica.")
        grads = [_array(g) for g in gradients if g is not None]
        if not grads:
            return
        params = [_array(p) for p in parameters]
        auxes = [[_array(a) for a in slots] for slots in saved_aux]
        _touch(parameters)
        for slots in saved_aux:
            _touch(slots)

        def job() -> None:
            mean = grads[0] if len(grads) == 1 else np.mean(np.stack(grads), axis=0)
            for param, aux in zip(params, auxes):
                apply_update(minimizer, mean, param, aux)

        self._launch(stream, lambda: self._guard(minimizer, job))

    def apply_gradients(
        self,
        minimizer: Command,
        gradients: Sequence[Any],
        parameters: Sequence[Any],
        saved_aux: Sequence[Any],
        parallel: int = 1,
        stream: Optional[StreamContext] = None,
        models: Sequence[Any] = (),
    ) -> None:
        """
        Apply `minimizer` to flattened raw parameters, then let every model in
        `models` apply its own per-parameter rules.

        Parameters
        ----------
        gradients, parameters : Sequence
            Flattened ``parallel * parameter_count`` storages (gradients may
            contain None).
        saved_aux : Sequence
            Flattened ``parallel * parameter_count * aux_size`` storages.
        models : Sequence
            Models whose pending gradients are applied with their assigned
            minimizers.
        """
        aux_size = saved_aux_size(minimizer)
        if len(gradients) != len(parameters):
            raise ValidationError(
                f"{len(gradients)} gradients given for {len(parameters)} parameters."
            )
        if parameters:
            grad_groups = _split(gradients, parallel, "gradients")
            param_groups = _split(parameters, parallel, "parameters")
            count = len(param_groups[0])
            if len(saved_aux) != parallel * count * aux_size:
                raise ValidationError(
                    f"{minimizer.name} needs {parallel * count * aux_size} saved aux tensors, "
                    f"got {len(saved_aux)}."
                )
            self._log(f"apply_gradients {minimizer!r} parameters={count} parallel={parallel}")
            for i in range(count):
                aux = [
                    [saved_aux[(j * count + i) * aux_size + s] for s in range(aux_size)]
                    for j in range(parallel)
                ]
                self.apply_replicated(
                    minimizer,
                    [grad_groups[j][i] for j in range(parallel)],
                    [param_groups[j][i] for j in range(parallel)],
                    aux,
                    stream,
                )
        for model in models:
            model.apply_gradients(self, stream)


_DEFAULT_LOCK = threading.Lock()
_DEFAULT_RUNTIME: Optional[NativeRuntime] = None


def default_runtime() -> NativeRuntime:
    """
    Return the process runtime, building it from the environment on first use.
    """
    global _DEFAULT_RUNTIME
    with _DEFAULT_LOCK:
        if _DEFAULT_RUNTIME is None:
            _DEFAULT_RUNTIME = NativeRuntime(RuntimeConfig.from_env())
        return _DEFAULT_RUNTIME


def set_default_runtime(runtime: Optional[NativeRuntime]) -> None:
    """Replace the process runtime (None rebuilds it lazily)."""
    global _DEFAULT_RUNTIME
    with _DEFAULT_LOCK:
        _DEFAULT_RUNTIME = runtime
