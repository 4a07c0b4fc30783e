"""
SQLite-backed parameter store.

Each tensor is one row of the table

    tensors(name TEXT PRIMARY KEY, type INTEGER, format INTEGER,
            datatype INTEGER, dim BLOB, data BLOB)

Keys for replica groups are suffixed with the replica index, ``"{key}({i})"``;
model parameters are stored as ``"__{key}__[{name}]"`` where `name` is the
parameter's name relative to the top-level model.

Reads fail soft: a missing key reports "not found" (None / False), and a
malformed entry additionally emits a `StoreReadWarning`. Using a store after
`close()` raises `StoreError`.

Example
-------
>>> with Store.open("checkpoint.sqlite3") as store:
...     store.write("w", variable=w)
...     store.read("w", variable=w)
True
"""

from __future__ import annotations

from contextlib import contextmanager
from enum import Flag
import sqlite3
from typing import Any, Iterator, List, Optional, Union
import warnings

from typing_extensions import Self

from ...domain._errors import StoreError, StoreReadWarning, ValidationError
from ..graph._variable import GraphVariable
from ..models._model import Model
from ..native._runtime import default_runtime
from ..tensor._group import TensorGroup
from ..tensor._tensor import Tensor
from ._codec import ndarray_to_row, row_to_ndarray

_CREATE = (
    "CREATE TABLE IF NOT EXISTS tensors "
    "(name TEXT PRIMARY KEY, type INTEGER, format INTEGER, datatype INTEGER, dim BLOB, data BLOB)"
)
_SELECT = "SELECT type, format, datatype, dim, data FROM tensors WHERE name=?"
_REPLACE = "REPLACE INTO tensors (name, type, format, datatype, dim, data) VALUES (?, ?, ?, ?, ?, ?)"


class OpenFlag(Flag):
    """Options for opening a store."""

    NONE = 0
    # Checkpoint the write-ahead log into the database file and truncate it
    # when the store is closed.
    TRUNCATE_WHEN_CLOSE = 1
    READ_ONLY = 2


def _group_key(key: str, i: int) -> str:
    return f"{key}({i})"


def _model_key(key: str, name: str) -> str:
    return f"__{key}__[{name}]"


class Store:
    """
    Key-value store of tensors.

    Parameters
    ----------
    path : str
        Database file path (``":memory:"`` for a transient store).
    graph : Optional[DynamicGraph]
        Graph whose runtime allocates tensors created by reads.
    flags : OpenFlag
        Open options.

    Raises
    ------
    StoreError
        If the database cannot be opened.
    """

    def __init__(self, path: str, graph: Any = None, flags: OpenFlag = OpenFlag.NONE) -> None:
        self._path = str(path)
        self._graph = graph
        self._flags = flags
        try:
            if flags & OpenFlag.READ_ONLY:
                self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
                    f"file:{self._path}?mode=ro", uri=True
                )
            else:
                self._conn = sqlite3.connect(self._path)
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute(_CREATE)
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(self._path, str(e)) from e

    @classmethod
    @contextmanager
    def open(cls, path: str, graph: Any = None, flags: OpenFlag = OpenFlag.NONE) -> Iterator["Store"]:
        """Open a store for the duration of the block."""
        store = cls(path, graph=graph, flags=flags)
        try:
            yield store
        finally:
            store.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._conn is None else "open"
        return f"Store('{self._path}', {state})"

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._conn is None

    def close(self) -> None:
        """Close the database; repeated calls are no-ops."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            if self._flags & OpenFlag.TRUNCATE_WHEN_CLOSE and not self._flags & OpenFlag.READ_ONLY:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        finally:
            conn.close()

    def _execute(self, sql: str, args: tuple = (), commit: bool = False) -> list:
        if self._conn is None:
            raise StoreError(self._path, "The store is closed.")
        try:
            rows = self._conn.execute(sql, args).fetchall()
            if commit:
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(self._path, str(e)) from e
        return rows

    def _runtime(self) -> Any:
        return self._graph.runtime if self._graph is not None else default_runtime()

    # ------------------------------------------------------------------
    # raw rows
    # ------------------------------------------------------------------
    def _load(self, key: str) -> Optional[Tensor]:
        rows = self._execute(_SELECT, (key,))
        if not rows:
            return None
        row = rows[0]
        try:
            arr, fmt, dtype = row_to_ndarray(row)
        except ValidationError as e:
            warnings.warn(f"Cannot decode stored tensor '{key}': {e}", StoreReadWarning, stacklevel=3)
            return None
        return Tensor(arr, format=fmt, dtype=dtype, runtime=self._runtime())

    def _save(self, key: str, tensor: Tensor) -> None:
        row = ndarray_to_row(tensor.to_numpy(), tensor.format, tensor.dtype, tensor.device)
        self._execute(_REPLACE, (key,) + tuple(row), commit=True)

    def keys(self) -> List[str]:
        """All stored keys, sorted."""
        return [r[0] for r in self._execute("SELECT name FROM tensors ORDER BY name")]

    def __contains__(self, key: str) -> bool:
        return bool(self._execute("SELECT 1 FROM tensors WHERE name=?", (key,)))

    def remove(self, key: str) -> None:
        self._execute("DELETE FROM tensors WHERE name=?", (key,), commit=True)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def read(
        self,
        key: str,
        variable: Union[GraphVariable, TensorGroup, None] = None,
        *,
        model: Optional[Model] = None,
    ) -> Union[Tensor, bool, None]:
        """
        Read a stored entry.

        - ``read(key)`` returns a new CPU `Tensor`, or None if the key is
          absent or malformed.
        - ``read(key, variable)`` loads into a graph variable (or each
          replica of a group, from ``"{key}({i})"``) and returns whether every
          replica was found.
        - ``read(key, model=m)`` loads the model's parameters and returns
          whether any was found. Parameters the model has not created yet
          are kept and used when they are.
        """
        if variable is not None and model is not None:
            raise ValidationError("Pass either a variable or a model, not both.")
        if model is not None:
            return self._read_model(key, model)
        if variable is None:
            return self._load(key)
        if isinstance(variable, TensorGroup):
            found = [self._read_variable(_group_key(key, i), v) for i, v in enumerate(variable)]
            return all(found)
        return self._read_variable(key, variable)

    def _read_variable(self, key: str, var: GraphVariable) -> bool:
        loaded = self._load(key)
        if loaded is None:
            return False
        if not var.has_value:
            var.attach(loaded, retain=True)
            return True
        if loaded.shape != var.shape:
            warnings.warn(
                f"Stored tensor '{key}' has shape {loaded.shape}, variable has {var.shape}.",
                StoreReadWarning,
                stacklevel=3,
            )
            return False
        storage = var.storage
        source = Tensor.from_any(loaded, var.dtype).storage
        storage.range_set([(0, d) for d in var.shape], source)
        # Loaded in place: the variable keeps its storage.
        if var.storage is not storage:
            raise ValidationError(f"Reading '{key}' replaced the variable's storage.")
        return True

    def _read_model(self, key: str, model: Model) -> bool:
        root = model.root
        prefix = root.path_to(model)
        pattern = _model_key(key, "")[:-1]
        rows = self._execute(
            "SELECT name FROM tensors WHERE substr(name, 1, ?)=?", (len(pattern), pattern)
        )
        found = False
        for (stored,) in rows:
            name = stored[len(pattern) : -1]
            if not stored.endswith("]") or not name.startswith(prefix):
                continue
            loaded = self._load(stored)
            if loaded is None:
                continue
            found = True
            if name in root.parameter_names():
                for v in root.parameter_replicas(name):
                    self._read_into(loaded, v)
            else:
                root.load_pending(name, loaded)
        return found

    @staticmethod
    def _read_into(loaded: Tensor, var: GraphVariable) -> None:
        source = Tensor.from_any(loaded, var.dtype).storage
        var.storage.range_set([(0, d) for d in var.shape], source)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def write(
        self,
        key: str,
        tensor: Optional[Tensor] = None,
        *,
        variable: Union[GraphVariable, TensorGroup, None] = None,
        model: Optional[Model] = None,
    ) -> None:
        """
        Store a tensor, a variable (each replica of a group under
        ``"{key}({i})"``) or every parameter of a model (replica 0),
        overwriting existing entries.
        """
        given = [x for x in (tensor, variable, model) if x is not None]
        if len(given) != 1:
            raise ValidationError("write needs exactly one of tensor, variable or model.")
        if tensor is not None:
            self._save(key, tensor)
        elif model is not None:
            root = model.root
            prefix = root.path_to(model)
            for name in root.parameter_names():
                if name.startswith(prefix):
                    self._save(_model_key(key, name), root.parameter(name, 0).tensor)
        elif isinstance(variable, TensorGroup):
            for i, v in enumerate(variable):
                self._save(_group_key(key, i), v.tensor)
        else:
            self._save(key, variable.tensor)
