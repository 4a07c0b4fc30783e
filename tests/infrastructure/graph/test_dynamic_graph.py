from unittest import TestCase
import unittest

import numpy as np

from src.dyngraph.domain._command import Command, CommandKind
from src.dyngraph.domain._errors import (
    CrossGraphError,
    InvalidOperationError,
    ValidationError,
)
from src.dyngraph.infrastructure._config import RuntimeConfig
from src.dyngraph.infrastructure.graph._functional import Functional
from src.dyngraph.infrastructure.graph._graph import DynamicGraph
from src.dyngraph.infrastructure.models._dense import Dense
from src.dyngraph.infrastructure.native._runtime import NativeRuntime
from src.dyngraph.infrastructure.tensor._group import TensorGroup
from src.dyngraph.infrastructure.tensor._tensor import Tensor


def _graph(**config):
    return DynamicGraph(NativeRuntime(RuntimeConfig(**config)))


class TestGraphOperations(TestCase):

    def setUp(self):
        self.graph = _graph()

    def test_gemm(self):
        a = self.graph.variable([[1.1], [2.2]])
        b = self.graph.variable([[2.2, 3.3]])
        c = a @ b
        self.assertEqual(c.shape, (2, 2))
        np.testing.assert_allclose(c.to_numpy(), [[2.42, 3.63], [4.84, 7.26]], rtol=1e-6)

    def test_gemm_with_bias_and_transpose(self):
        a = self.graph.variable([[1.0, 2.0]])
        b = self.graph.variable([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        bias = self.graph.variable([10.0, 20.0, 30.0])
        out = Functional.matmul(a, b, bias, transpose_b=True)
        np.testing.assert_allclose(out.to_numpy(), [[11.0, 22.0, 33.0]])

    def test_gemm_shape_mismatch(self):
        a = self.graph.variable([[1.0, 2.0]])
        with self.assertRaises(ValidationError):
            a @ a

    def test_element_wise_ops(self):
        x = self.graph.variable([1.0, -2.0, 3.0])
        y = self.graph.variable([2.0, 2.0, 2.0])
        np.testing.assert_allclose((x + y).to_numpy(), [3.0, 0.0, 5.0])
        np.testing.assert_allclose((x - y).to_numpy(), [-1.0, -4.0, 1.0])
        np.testing.assert_allclose((x * y).to_numpy(), [2.0, -4.0, 6.0])
        np.testing.assert_allclose((3 * x).to_numpy(), [3.0, -6.0, 9.0])
        np.testing.assert_allclose(x.relu().to_numpy(), [1.0, 0.0, 3.0])
        np.testing.assert_allclose(Functional.sum(x, y, y).to_numpy(), [5.0, 2.0, 7.0])

    def test_reductions_keep_rank(self):
        x = self.graph.variable([[1.0, 2.0], [3.0, 4.0]])
        self.assertEqual(x.sum().shape, (1, 1))
        np.testing.assert_allclose(x.sum(axis=0).to_numpy(), [[4.0, 6.0]])
        np.testing.assert_allclose(x.mean(axis=1).to_numpy(), [[1.5], [3.5]])

    def test_full(self):
        x = self.graph.variable(shape=(2, 2))
        out = x.full(3.0)
        self.assertIs(out, x)
        np.testing.assert_array_equal(x.to_numpy(), np.full((2, 2), 3.0))

    def test_lerp(self):
        x = self.graph.variable([10.0])
        to = self.graph.variable([-1.0])
        x.lerp(0.3, to)
        np.testing.assert_allclose(x.to_numpy(), [6.7], rtol=1e-6)
        with self.assertRaises(ValidationError):
            x.lerp(1.5, to)

    def test_clamp(self):
        x = self.graph.variable([-2.0, 0.5, 3.0])
        y = x.clamped(0.0, 1.0)
        np.testing.assert_allclose(x.to_numpy(), [-2.0, 0.5, 3.0])
        np.testing.assert_allclose(y.to_numpy(), [0.0, 0.5, 1.0])
        x.clamp(max=0.0)
        np.testing.assert_allclose(x.to_numpy(), [-2.0, 0.0, 0.0])
        with self.assertRaises(ValidationError):
            x.clamp()
        with self.assertRaises(ValidationError):
            x.clamp(1.0, 0.0)

    def test_in_place_ops_are_not_recorded(self):
        x = self.graph.variable([1.0], requires_grad=True)
        x.full(2.0)
        x.clamp(0.0, 1.0)
        self.assertEqual(len(self.graph.tape), 0)

    def test_raw_value_aliases_variable(self):
        x = self.graph.variable([[1.0, 2.0]])
        raw = x.raw_value
        raw[0, 0] = 5.0
        self.assertEqual(x.tensor[0, 0], 5.0)
        detached = x.raw_value.copied()
        detached[0, 1] = 9.0
        self.assertEqual(x.tensor[0, 1], 2.0)

    def test_subscript_write_updates_variable(self):
        x = self.graph.variable(shape=(3, 2))
        x[0:3, 1:2] = [1.0, 2.0, 3.0]
        np.testing.assert_array_equal(x.to_numpy(), [[0, 1], [0, 2], [0, 3]])

    def test_executor_requires_an_input(self):
        with self.assertRaises(ValidationError):
            self.graph.executor.exec(Command(CommandKind.RELU), [])

    def test_unbound_variable(self):
        v = self.graph.variable()
        self.assertFalse(v.has_value)
        with self.assertRaises(InvalidOperationError):
            v.tensor

    def test_constants_cannot_require_grad(self):
        c = self.graph.constant([1.0])
        self.assertTrue(c.is_constant)
        with self.assertRaises(InvalidOperationError):
            c.requires_grad = True


class TestGraphBackward(TestCase):

    def setUp(self):
        self.graph = _graph()

    def test_gemm_gradients(self):
        a = self.graph.variable([[1.1], [2.2]], requires_grad=True)
        b = self.graph.variable([[2.2, 3.3]], requires_grad=True)
        c = a @ b
        self.graph.backward([c])
        np.testing.assert_allclose(a.grad.to_numpy(), [[5.5], [5.5]], rtol=1e-6)
        np.testing.assert_allclose(b.grad.to_numpy(), [[3.3, 3.3]], rtol=1e-6)

    def test_gradient_restricted_to_requested_variables(self):
        a = self.graph.variable([[1.0]], requires_grad=True)
        b = self.graph.variable([[2.0]], requires_grad=True)
        (a @ b).backward(to=[a])
        self.assertIsNotNone(a.grad)
        self.assertIsNone(b.grad)

    def test_constants_receive_no_gradient(self):
        a = self.graph.variable([1.0, 2.0], requires_grad=True)
        k = self.graph.constant([3.0, 4.0])
        loss = (a * k).sum()
        loss.backward()
        np.testing.assert_allclose(a.grad.to_numpy(), [3.0, 4.0])
        self.assertIsNone(k.grad)

    def test_mse_loss(self):
        pred = self.graph.variable([1.0, 2.0], requires_grad=True)
        target = self.graph.constant([0.0, 0.0])
        loss = Functional.mse_loss(pred, target)
        np.testing.assert_allclose(loss.to_numpy(), [2.5])
        loss.backward()
        np.testing.assert_allclose(pred.grad.to_numpy(), [1.0, 2.0])

    def test_chain_through_activation(self):
        x = self.graph.variable([0.0], requires_grad=True)
        x.sigmoid().backward()
        np.testing.assert_allclose(x.grad.to_numpy(), [0.25])

    def test_contiguous_reshape_passes_gradient(self):
        x = self.graph.variable([[1.0, 2.0], [3.0, 4.0]], requires_grad=True)
        x.reshaped(shape=(4,)).sum().backward()
        np.testing.assert_array_equal(x.grad.to_numpy(), np.ones((2, 2)))

    def test_custom_seed(self):
        x = self.graph.variable([1.0, 2.0], requires_grad=True)
        y = 2 * x
        self.graph.backward([y], grads=[[1.0, 10.0]])
        np.testing.assert_allclose(x.grad.to_numpy(), [2.0, 20.0])

    def test_tape_consumed_unless_retained(self):
        x = self.graph.variable([1.0, 2.0], requires_grad=True)
        loss = (x * x).sum()
        self.graph.backward([loss], retain_graph=True)
        self.assertGreater(len(self.graph.tape), 0)
        np.testing.assert_allclose(x.grad.to_numpy(), [2.0, 4.0])

        self.graph.backward([loss])
        np.testing.assert_allclose(x.grad.to_numpy(), [4.0, 8.0])
        self.assertEqual(len(self.graph.tape), 0)

    def test_no_grad(self):
        x = self.graph.variable([1.0], requires_grad=True)
        with self.graph.no_grad():
            y = 2 * x
        self.assertEqual(len(self.graph.tape), 0)
        self.assertFalse(y.tracked)
        self.assertTrue(self.graph.grad_enabled)

    def test_untracked_inputs_are_not_recorded(self):
        x = self.graph.variable([1.0])
        x.relu()
        self.assertEqual(len(self.graph.tape), 0)

    def test_backward_needs_a_target(self):
        with self.assertRaises(ValidationError):
            self.graph.backward([])


class TestGroupsAndGraphs(TestCase):

    def setUp(self):
        self.graph = _graph()

    def test_group_gemm_runs_per_replica(self):
        a = self.graph.variable_group([[[1.0]], [[2.0]]], requires_grad=True)
        b = self.graph.variable_group([[[3.0, 4.0]], [[5.0, 6.0]]])
        c = Functional.matmul(a, b)
        self.assertIsInstance(c, TensorGroup)
        self.assertEqual(c.parallel, 2)
        np.testing.assert_allclose(c[0].to_numpy(), [[3.0, 4.0]])
        np.testing.assert_allclose(c[1].to_numpy(), [[10.0, 12.0]])

        self.graph.backward([c])
        np.testing.assert_allclose(a[0].grad.to_numpy(), [[7.0]])
        np.testing.assert_allclose(a[1].grad.to_numpy(), [[11.0]])

    def test_group_requires_grad_reaches_every_replica(self):
        g = self.graph.variable_group([[1.0], [2.0]])
        self.assertFalse(g.requires_grad)
        g.requires_grad = True
        self.assertTrue(all(r.requires_grad for r in g))
        self.assertTrue(g.requires_grad)

    def test_group_replica_counts_must_match(self):
        a = self.graph.variable_group([[1.0], [2.0]])
        b = self.graph.variable_group([[1.0], [2.0], [3.0]])
        with self.assertRaises(ValidationError):
            Functional.add(a, b)

    def test_groups_and_single_variables_do_not_mix(self):
        a = self.graph.variable_group([[1.0], [2.0]])
        b = self.graph.variable([1.0])
        with self.assertRaises(ValidationError):
            Functional.add(a, b)

    def test_cross_graph_operation(self):
        other = _graph()
        a = self.graph.variable([1.0])
        b = other.variable([1.0])
        with self.assertRaises(CrossGraphError):
            a + b
        with self.assertRaises(CrossGraphError):
            self.graph.backward([b])

    def test_release_drops_values(self):
        x = self.graph.variable([1.0])
        self.graph.release()
        self.assertFalse(x.has_value)
        self.assertEqual(len(self.graph.tape), 0)

    def test_variable_shares_tensor(self):
        t = Tensor([1.0, 2.0], runtime=self.graph.runtime)
        v = self.graph.variable(t)
        self.assertIs(v.storage, t.storage)


class TestTapeLifetime(TestCase):

    def setUp(self):
        self.graph = _graph()

    def test_repeated_inference_keeps_tape_and_memory_flat(self):
        x = self.graph.variable(np.ones((2, 3), dtype=np.float32))
        model = Dense(4, seed=0)
        (y,) = model(x, is_test=True)
        del y
        tape_len = len(self.graph.tape)
        in_use = self.graph.runtime.bytes_in_use(x.device)

        for _ in range(200):
            (y,) = model(x, is_test=True)
            del y

        self.assertEqual(len(self.graph.tape), tape_len)
        self.assertLessEqual(tape_len, 1)
        self.assertEqual(self.graph.runtime.bytes_in_use(x.device), in_use)

    def test_dropped_chain_is_pruned(self):
        x = self.graph.variable([1.0, -2.0], requires_grad=True)
        y = x * x
        z = y.relu()
        del y
        self.assertEqual(len(self.graph.tape), 2)
        del z
        self.assertEqual(len(self.graph.tape), 0)

    def test_dropped_branch_does_not_block_backward(self):
        x = self.graph.variable([3.0], requires_grad=True)
        kept = 2 * x
        dropped = x * x
        del dropped
        self.graph.backward([kept])
        np.testing.assert_allclose(x.grad.to_numpy(), [2.0])
        self.assertEqual(len(self.graph.tape), 0)

    def test_in_place_fill_after_recording_raises(self):
        a = self.graph.variable([2.0], requires_grad=True)
        b = self.graph.variable([3.0])
        c = Functional.mul(a, b)
        b.full(100.0)
        with self.assertRaises(InvalidOperationError):
            self.graph.backward([c], to=[a])
        self.assertIsNone(a.grad)

    def test_subscript_write_after_recording_raises(self):
        x = self.graph.variable([1.0, 2.0], requires_grad=True)
        y = x * x
        x[0:1] = [5.0]
        with self.assertRaises(InvalidOperationError):
            y.backward()

    def test_write_before_recording_is_allowed(self):
        a = self.graph.variable([2.0], requires_grad=True)
        b = self.graph.variable([3.0])
        b.full(4.0)
        c = Functional.mul(a, b)
        self.graph.backward([c], to=[a])
        np.testing.assert_allclose(a.grad.to_numpy(), [4.0])


class TestDevicesAndStreams(TestCase):

    def setUp(self):
        self.graph = _graph(gpu_count=1)

    def test_transfer(self):
        x = self.graph.variable([1.0, 2.0], requires_grad=True)
        y = x.to("gpu:0")
        self.assertTrue(y.device.is_gpu())
        y.backward()
        np.testing.assert_array_equal(x.grad.to_numpy(), [1.0, 1.0])

    def test_operations_on_stream(self):
        x = self.graph.variable([1.0, 2.0])
        with self.graph.runtime.create_stream() as stream:
            y = Functional.scale(x, 2.0, stream=stream)
            z = Functional.scale(y, 2.0, stream=stream)
            stream.join()
        np.testing.assert_allclose(z.to_numpy(), [4.0, 8.0])

    def test_default_stream(self):
        stream = self.graph.runtime.create_stream()
        graph = DynamicGraph(self.graph.runtime, stream=stream)
        x = graph.variable([1.0], requires_grad=True)
        y = 3 * x
        graph.backward([y])
        np.testing.assert_allclose(y.to_numpy(), [3.0])
        np.testing.assert_allclose(x.grad.to_numpy(), [3.0])
        stream.close()


if __name__ == "__main__":
    unittest.main()
