"""
Operation tape for reverse-mode differentiation.

Every differentiable command executed on tracked inputs appends a `TapeEntry`
holding the command, its hint, the flattened parallel-major input and output
variables, and the replica count. `Tape.backward` walks the entries in reverse
order, asks the runtime for input gradients of each entry, and accumulates
them per variable.

Entries hold their inputs strongly and their outputs weakly. Once every
output of an entry has been collected nothing can seed a gradient through
it, so the entry is pruned; dropping it releases its inputs, which may in
turn leave earlier entries without live outputs.

Each entry also stamps the device buffer and write version of every
argument. A runtime backward reads the argument values at backward time, so
an argument written in place after recording (or detached by a
copy-on-write) raises `InvalidOperationError` instead of producing a wrong
gradient.
"""

from __future__ import annotations

import weakref
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ...domain._command import Command, Hint
from ...domain._errors import InvalidOperationError

GradFn = Callable[[Sequence[Optional[np.ndarray]]], List[Optional[np.ndarray]]]

Stamp = Optional[Tuple["weakref.ref", int]]

# Recording prunes once the tape doubles past its last pruned length.
_PRUNE_MIN = 64


def _stamp(var: Any) -> Stamp:
    if var is None:
        return None
    buffer = var.storage.buffer
    return weakref.ref(buffer), buffer.version


def _unchanged(var: Any, stamp: Stamp) -> bool:
    if var is None or stamp is None:
        return True
    ref, version = stamp
    buffer = var.storage.buffer
    return ref() is buffer and buffer.version == version


class TapeEntry:
    """
    One recorded operation.

    Parameters
    ----------
    command : Command
        The executed command.
    hint : Hint
        Hint the command was executed with.
    inputs : list
        Flattened input variables (None for unbound optional inputs).
    outputs : list
        Flattened output variables. Held through weak references.
    parallel : int
        Replica count; arguments are laid out ``replica * size + index``.
    grad_fn : Optional[Callable]
        Replaces the runtime backward for entries that are not commands
        (e.g. reshaped aliases). Receives output gradients of one replica.
    """

    def __init__(
        self,
        command: Command,
        hint: Hint,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        parallel: int = 1,
        grad_fn: Optional[GradFn] = None,
    ) -> None:
        self.command = command
        self.hint = hint
        self.inputs = list(inputs)
        self._outputs = [weakref.ref(o) for o in outputs]
        self.parallel = parallel
        self.grad_fn = grad_fn
        self._stamps = [_stamp(v) for v in self.inputs] + [_stamp(o) for o in outputs]

    def __repr__(self) -> str:
        return (
            f"TapeEntry({self.command!r}, inputs={len(self.inputs)}, "
            f"outputs={len(self._outputs)}, parallel={self.parallel})"
        )

    @property
    def outputs(self) -> List[Any]:
        """Output variables; collected ones read as None."""
        return [ref() for ref in self._outputs]

    def alive(self) -> bool:
        return any(ref() is not None for ref in self._outputs)

    def replica(self, j: int):
        outputs = self.outputs
        n_in = len(self.inputs) // self.parallel
        n_out = len(outputs) // self.parallel
        return (
            self.inputs[j * n_in : (j + 1) * n_in],
            outputs[j * n_out : (j + 1) * n_out],
        )

    def check_versions(self) -> None:
        """
        Raises
        ------
        InvalidOperationError
            If an argument was written or detached after recording.
        """
        args = self.inputs + self.outputs
        for var, stamp in zip(args, self._stamps):
            if not _unchanged(var, stamp):
                raise InvalidOperationError(
                    f"{self.command.name}: a variable needed for backward was "
                    "modified in place after it was recorded."
                )


class Tape:
    """Ordered list of recorded operations."""

    def __init__(self) -> None:
        self._entries: List[TapeEntry] = []
        self._prune_at = _PRUNE_MIN

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)

    @property
    def entries(self) -> List[TapeEntry]:
        self.prune()
        return list(self._entries)

    def record(self, entry: TapeEntry) -> None:
        if len(self._entries) >= self._prune_at:
            self.prune()
            self._prune_at = max(_PRUNE_MIN, 2 * len(self._entries))
        self._entries.append(entry)

    def clear(self) -> None:
        self._entries.clear()
        self._prune_at = _PRUNE_MIN

    def prune(self) -> None:
        """Drop entries whose outputs have all been collected."""
        pending = self._entries
        self._entries = []
        kept: List[TapeEntry] = []
        # Newest first: dropping an entry may free the outputs of older ones.
        while pending:
            entry = pending.pop()
            if entry.alive():
                kept.append(entry)
            del entry
        kept.reverse()
        self._entries = kept

    def backward(
        self,
        runtime: Any,
        seeds: Dict[int, np.ndarray],
        retain: bool = False,
    ) -> Tuple[Dict[int, np.ndarray], Dict[int, Any]]:
        """
        Propagate `seeds` (variable id -> gradient) back through the tape.

        Returns
        -------
        tuple[dict, dict]
            Accumulated gradient per variable id (including the seeds), and
            the variables reached, by id.

        Raises
        ------
        InvalidOperationError
            If a variable an entry depends on was modified in place after
            the entry was recorded.
        """
        self.prune()
        grads: Dict[int, np.ndarray] = dict(seeds)
        reached: Dict[int, Any] = {}
        visited: List[int] = []
        for pos in range(len(self._entries) - 1, -1, -1):
            entry = self._entries[pos]
            if not any(o is not None and id(o) in grads for o in entry.outputs):
                continue
            if entry.grad_fn is None:
                entry.check_versions()
            visited.append(pos)
            for j in range(entry.parallel):
                ins, outs = entry.replica(j)
                out_grads = [None if o is None else grads.get(id(o)) for o in outs]
                if all(g is None for g in out_grads):
                    continue
                if entry.grad_fn is not None:
                    in_grads = entry.grad_fn(out_grads)
                else:
                    in_grads = runtime.backward(
                        entry.command,
                        out_grads,
                        [None if v is None else v.storage.ndarray() for v in ins],
                        [None if o is None else o.storage.ndarray() for o in outs],
                    )
                for var, g in zip(ins, in_grads):
                    if var is None or g is None or not var.tracked:
                        continue
                    key = id(var)
                    reached[key] = var
                    grads[key] = g if key not in grads else grads[key] + g
        if not retain:
            drop = set(visited)
            self._entries = [e for i, e in enumerate(self._entries) if i not in drop]
        return grads, reached
