from unittest import TestCase
import os
import sqlite3
import tempfile
import unittest

import numpy as np

from src.dyngraph.domain._errors import StoreError, StoreReadWarning, ValidationError
from src.dyngraph.domain._types import DataType, TensorFormat
from src.dyngraph.domain.device._device import Device
from src.dyngraph.infrastructure._config import RuntimeConfig
from src.dyngraph.infrastructure.graph._graph import DynamicGraph
from src.dyngraph.infrastructure.models._dense import Dense
from src.dyngraph.infrastructure.models._sequential import Sequential
from src.dyngraph.infrastructure.native._runtime import NativeRuntime
from src.dyngraph.infrastructure.store._codec import (
    CPU_MEMORY,
    GPU_MEMORY,
    ndarray_to_row,
    row_to_ndarray,
)
from src.dyngraph.infrastructure.store._store import OpenFlag, Store
from src.dyngraph.infrastructure.tensor._tensor import Tensor


def _graph(**config):
    return DynamicGraph(NativeRuntime(RuntimeConfig(**config)))


class _StoreTestCase(TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = os.path.join(self._tmp.name, "params.sqlite3")
        self.graph = _graph(gpu_count=1)
        self.store = Store(self.path, graph=self.graph)
        self.addCleanup(self.store.close)


class TestCodec(TestCase):

    def test_row_layout(self):
        arr = np.arange(6, dtype=np.float32).reshape(2, 3)
        row = ndarray_to_row(arr, TensorFormat.NCHW, DataType.FLOAT32, Device.cpu())
        self.assertEqual(row.type, CPU_MEMORY)
        self.assertEqual(row.format, TensorFormat.NCHW.code)
        self.assertEqual(row.datatype, DataType.FLOAT32.code)
        self.assertEqual(np.frombuffer(row.dim, dtype="<i4").tolist(), [2, 3])
        self.assertEqual(len(row.data), 24)

        out, fmt, dtype = row_to_ndarray(tuple(row))
        np.testing.assert_array_equal(out, arr)
        self.assertIs(fmt, TensorFormat.NCHW)
        self.assertIs(dtype, DataType.FLOAT32)

    def test_gpu_rows_record_memory_type(self):
        row = ndarray_to_row(np.zeros(1, np.float32), TensorFormat.NCHW, DataType.FLOAT32, Device.gpu(0))
        self.assertEqual(row.type, GPU_MEMORY)

    def test_malformed_rows(self):
        good = ndarray_to_row(np.zeros((2, 2), np.float32), TensorFormat.NCHW, DataType.FLOAT32, Device.cpu())
        bad_rows = [
            good._replace(type=0x9),
            good._replace(format=0x7),
            good._replace(datatype=0x3),
            good._replace(dim=b""),
            good._replace(dim=b"\x02\x00\x00"),
            good._replace(dim=np.asarray([2, 0], dtype="<i4").tobytes()),
            good._replace(data=good.data[:-4]),
            good._replace(format=None),
            good._replace(datatype="1"),
            good._replace(type=True),
            good._replace(dim=None),
            good._replace(data="text"),
            (1, None, None, None, None),
        ]
        for row in bad_rows:
            with self.subTest(row=row[:4]):
                with self.assertRaises(ValidationError):
                    row_to_ndarray(tuple(row))


class TestTensorEntries(_StoreTestCase):

    def test_tensor_round_trip(self):
        self.store.write("t", Tensor([[1.0, 2.0], [3.0, 4.0]], runtime=self.graph.runtime))
        loaded = self.store.read("t")
        self.assertEqual(loaded.shape, (2, 2))
        self.assertIs(loaded.dtype, DataType.FLOAT32)
        self.assertIs(loaded.runtime, self.graph.runtime)
        np.testing.assert_array_equal(loaded.to_numpy(), [[1, 2], [3, 4]])
        self.assertEqual(self.store.keys(), ["t"])
        self.assertIn("t", self.store)

    def test_integer_tensor_keeps_dtype(self):
        self.store.write("i", Tensor([1, 2, 3]))
        self.assertIs(self.store.read("i").dtype, DataType.INT32)

    def test_gpu_tensor_reads_back_on_cpu(self):
        t = Tensor([1.0, 2.0], runtime=self.graph.runtime).to_gpu(0)
        self.store.write("g", t)
        loaded = self.store.read("g")
        self.assertTrue(loaded.device.is_cpu())
        np.testing.assert_array_equal(loaded.to_numpy(), [1.0, 2.0])

    def test_overwrite_and_remove(self):
        self.store.write("t", Tensor([1.0]))
        self.store.write("t", Tensor([2.0]))
        self.assertEqual(self.store.read("t").tolist(), [2.0])
        self.store.remove("t")
        self.assertNotIn("t", self.store)

    def test_missing_key(self):
        self.assertIsNone(self.store.read("nope"))
        self.assertFalse(self.store.read("nope", self.graph.variable([0.0])))

    def test_write_takes_exactly_one_value(self):
        with self.assertRaises(ValidationError):
            self.store.write("t")
        with self.assertRaises(ValidationError):
            self.store.write("t", Tensor([1.0]), variable=self.graph.variable([1.0]))

    def test_malformed_entry_warns_and_reads_as_missing(self):
        rows = {
            "short_dim": (CPU_MEMORY, TensorFormat.NCHW.code, DataType.FLOAT32.code, b"\x01", b""),
            "null_columns": (1, None, None, None, None),
            "text_code": (CPU_MEMORY, "nchw", DataType.FLOAT32.code, b"\x01\x00\x00\x00", b""),
        }
        conn = sqlite3.connect(self.path)
        try:
            for key, row in rows.items():
                conn.execute(
                    "REPLACE INTO tensors (name, type, format, datatype, dim, data) VALUES (?, ?, ?, ?, ?, ?)",
                    (key,) + row,
                )
            conn.commit()
        finally:
            conn.close()
        for key in rows:
            with self.subTest(key=key):
                with self.assertWarns(StoreReadWarning):
                    self.assertIsNone(self.store.read(key))


class TestVariableEntries(_StoreTestCase):

    def test_read_into_bound_variable_keeps_its_memory(self):
        self.store.write("v", variable=self.graph.variable([1.0, 2.0]))
        w = self.graph.variable([0.0, 0.0])
        storage = w.storage
        self.assertTrue(self.store.read("v", w))
        self.assertIs(w.storage, storage)
        np.testing.assert_array_equal(w.to_numpy(), [1.0, 2.0])

    def test_read_into_unbound_variable(self):
        self.store.write("v", Tensor([[5.0, 6.0]]))
        u = self.graph.variable()
        self.assertTrue(self.store.read("v", u))
        self.assertEqual(u.shape, (1, 2))

    def test_values_are_converted_to_the_variable_dtype(self):
        self.store.write("v", Tensor([1.5, 2.5]))
        w = self.graph.variable(np.zeros(2, dtype=np.float64))
        self.assertTrue(self.store.read("v", w))
        self.assertIs(w.dtype, DataType.FLOAT64)
        np.testing.assert_array_equal(w.to_numpy(), [1.5, 2.5])

    def test_shape_mismatch_warns(self):
        self.store.write("v", Tensor([1.0, 2.0]))
        w = self.graph.variable([0.0])
        with self.assertWarns(StoreReadWarning):
            self.assertFalse(self.store.read("v", w))
        self.assertEqual(w.tolist(), [0.0])

    def test_group_entries_per_replica(self):
        g = self.graph.variable_group([[1.0], [2.0]])
        self.store.write("g", variable=g)
        self.assertEqual(self.store.keys(), ["g(0)", "g(1)"])

        target = self.graph.variable_group([[0.0], [0.0]])
        self.assertTrue(self.store.read("g", target))
        self.assertEqual([r.tolist() for r in target], [[1.0], [2.0]])

        larger = self.graph.variable_group([[0.0], [0.0], [0.0]])
        self.assertFalse(self.store.read("g", larger))


class TestModelEntries(_StoreTestCase):

    def setUp(self):
        super().setUp()
        self.x = self.graph.variable(np.ones((2, 3), dtype=np.float32))

    def test_model_keys(self):
        seq = Sequential(Dense(2), Dense(1, no_bias=True))
        seq(self.x)
        self.store.write("net", model=seq)
        self.assertEqual(
            self.store.keys(), ["__net__[0.bias]", "__net__[0.weight]", "__net__[1.weight]"]
        )

    def test_read_into_built_model(self):
        source = Dense(2, seed=0)
        source(self.x)
        self.store.write("m", model=source)

        target = Dense(2, seed=1)
        target(self.x)
        self.assertTrue(self.store.read("m", model=target))
        for name in ("weight", "bias"):
            np.testing.assert_array_equal(
                target.parameter(name).to_numpy(), source.parameter(name).to_numpy()
            )

    def test_read_before_build_is_applied_on_creation(self):
        source = Dense(2, seed=0)
        source(self.x)
        self.store.write("m", model=source)

        graph = _graph()
        target = Dense(2, seed=1)
        self.assertTrue(self.store.read("m", model=target))
        self.assertEqual(target.parameter_names(), [])
        target(graph.variable(np.ones((1, 3), dtype=np.float32)))
        np.testing.assert_array_equal(
            target.parameter("weight").to_numpy(), source.parameter("weight").to_numpy()
        )

    def test_sub_model_entries(self):
        seq = Sequential(Dense(2, seed=0), Dense(1, seed=1))
        seq(self.x)
        self.store.write("net", model=seq[1])
        self.assertEqual(self.store.keys(), ["__net__[1.bias]", "__net__[1.weight]"])

    def test_missing_model_entries(self):
        self.assertFalse(self.store.read("m", model=Dense(2)))


class TestStoreLifecycle(TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = os.path.join(self._tmp.name, "params.sqlite3")

    def test_use_after_close(self):
        store = Store(self.path)
        store.close()
        self.assertTrue(store.closed)
        store.close()
        with self.assertRaises(StoreError):
            store.read("t")
        with self.assertRaises(StoreError):
            store.write("t", Tensor([1.0]))

    def test_context_manager_and_reopen(self):
        with Store.open(self.path) as store:
            store.write("t", Tensor([3.0]))
        self.assertTrue(store.closed)
        with Store(self.path) as store:
            self.assertEqual(store.read("t").tolist(), [3.0])

    def test_truncate_when_close(self):
        with Store.open(self.path, flags=OpenFlag.TRUNCATE_WHEN_CLOSE) as store:
            store.write("t", Tensor(np.zeros(256, dtype=np.float32)))
        wal = self.path + "-wal"
        self.assertTrue(not os.path.exists(wal) or os.path.getsize(wal) == 0)

    def test_read_only(self):
        with Store.open(self.path) as store:
            store.write("t", Tensor([1.0]))
        with Store.open(self.path, flags=OpenFlag.READ_ONLY) as ro:
            self.assertEqual(ro.read("t").tolist(), [1.0])
            with self.assertRaises(StoreError):
                ro.write("u", Tensor([2.0]))

    def test_read_only_requires_existing_file(self):
        with self.assertRaises(StoreError):
            Store(os.path.join(self._tmp.name, "missing.sqlite3"), flags=OpenFlag.READ_ONLY)

    def test_graph_open_store(self):
        graph = _graph()
        v = graph.variable([4.0, 5.0])
        with graph.open_store(self.path) as store:
            store.write("v", variable=v)
            loaded = store.read("v")
            self.assertIs(loaded.runtime, graph.runtime)
        self.assertTrue(store.closed)


if __name__ == "__main__":
    unittest.main()
