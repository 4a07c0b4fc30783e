from unittest import TestCase
import unittest

import numpy as np

from src.dyngraph.domain._errors import GroupConsistencyError, ValidationError
from src.dyngraph.domain._tensor import IAnyTensor, IGraphTensor
from src.dyngraph.domain._types import DataType, TensorFormat
from src.dyngraph.infrastructure._config import RuntimeConfig
from src.dyngraph.infrastructure.graph._graph import DynamicGraph
from src.dyngraph.infrastructure.native._runtime import NativeRuntime
from src.dyngraph.infrastructure.tensor._group import TensorGroup
from src.dyngraph.infrastructure.tensor._tensor import Tensor


class TestTensorGroup(TestCase):

    def setUp(self):
        self.rt = NativeRuntime(RuntimeConfig(gpu_count=2))

    def _t(self, shape, **kw):
        return Tensor.empty(kw.pop("dtype", DataType.FLOAT32), shape=shape, runtime=self.rt, **kw)

    def test_consistent_group_exposes_shared_attributes(self):
        g = TensorGroup([self._t((2, 3)), self._t((2, 3))])
        self.assertEqual(len(g), 2)
        self.assertEqual(g.parallel, 2)
        self.assertEqual(g.shape, (2, 3))
        self.assertIs(g.dtype, DataType.FLOAT32)
        self.assertIs(g.format, TensorFormat.NCHW)

    def test_replicas_on_different_gpus_are_allowed(self):
        g = TensorGroup([self._t((2,), device="gpu:0"), self._t((2,), device="gpu:1")])
        self.assertTrue(g.device.is_gpu())
        self.assertEqual([str(d) for d in g.devices], ["gpu:0", "gpu:1"])

    def test_mismatched_shapes(self):
        with self.assertRaises(GroupConsistencyError) as ctx:
            TensorGroup([self._t((2, 3)), self._t((3, 2))])
        self.assertEqual(ctx.exception.attribute, "shape")

    def test_mismatched_dtype(self):
        with self.assertRaises(GroupConsistencyError):
            TensorGroup([self._t((2,)), self._t((2,), dtype=DataType.FLOAT64)])

    def test_mismatched_device_type(self):
        with self.assertRaises(GroupConsistencyError):
            TensorGroup([self._t((2,)), self._t((2,), device="gpu:0")])

    def test_empty_group(self):
        with self.assertRaises(ValidationError):
            TensorGroup([])

    def test_reshaped_applies_to_every_replica(self):
        g = TensorGroup([Tensor(np.arange(4.0), runtime=self.rt) for _ in range(2)])
        r = g.reshaped(shape=(2, 2))
        self.assertEqual(r.shape, (2, 2))
        for arr in r.to_numpy():
            np.testing.assert_array_equal(arr, [[0, 1], [2, 3]])


class TestTensorInterfaces(TestCase):

    def setUp(self):
        self.graph = DynamicGraph(NativeRuntime(RuntimeConfig()))

    def test_tensor_is_any_tensor(self):
        t = Tensor([1.0, 2.0], runtime=self.graph.runtime)
        self.assertIsInstance(t, IAnyTensor)
        self.assertNotIsInstance(t, IGraphTensor)

    def test_variable_is_graph_tensor(self):
        v = self.graph.variable([1.0, 2.0])
        self.assertIsInstance(v, IAnyTensor)
        self.assertIsInstance(v, IGraphTensor)
        self.assertFalse(v.is_view)
        self.assertEqual(v.kind, v.device)

    def test_variable_group_is_graph_tensor(self):
        g = self.graph.variable_group([[1.0], [2.0]])
        self.assertIsInstance(g, IGraphTensor)
        self.assertIs(g.graph, self.graph)


if __name__ == "__main__":
    unittest.main()
