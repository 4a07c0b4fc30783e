import unittest
from unittest.mock import patch

import numpy as np

from src.dyngraph.domain._command import NO_HINT, Command, CommandKind
from src.dyngraph.domain._errors import (
    AllocationError,
    DeviceNotSupportedError,
    ExecutionError,
    ValidationError,
)
from src.dyngraph.domain._types import DataType, TensorFormat
from src.dyngraph.domain.device._device import Device
from src.dyngraph.infrastructure._config import RuntimeConfig
from src.dyngraph.infrastructure.native import _kernels
from src.dyngraph.infrastructure.native._kernels import TensorMeta, get_kernel, register_kernel
from src.dyngraph.infrastructure.native._minimizers import apply_update, saved_aux_size
from src.dyngraph.infrastructure.native._runtime import NativeRuntime
from src.dyngraph.infrastructure.tensor._storage import TensorStorage


def _storage(runtime, values, device="cpu"):
    arr = np.asarray(values, dtype=np.float32)
    s = TensorStorage.allocate(device, DataType.FLOAT32, TensorFormat.NCHW, arr.shape, runtime)
    np.copyto(s.ndarray(), arr)
    return s


class TestRuntimeConfig(unittest.TestCase):
    def test_from_env(self):
        cfg = RuntimeConfig.from_env(
            {"DYNGRAPH_GPU_COUNT": "2", "DYNGRAPH_MEMORY_LIMIT": "1024", "DYNGRAPH_DEBUG": "1"}
        )
        self.assertEqual(cfg.gpu_count, 2)
        self.assertEqual(cfg.memory_limit_bytes, 1024)
        self.assertTrue(cfg.debug)

    def test_from_env_defaults(self):
        cfg = RuntimeConfig.from_env({})
        self.assertEqual(cfg.gpu_count, 0)
        self.assertIsNone(cfg.memory_limit_bytes)
        self.assertFalse(cfg.debug)

    def test_from_env_rejects_garbage(self):
        with self.assertRaises(ValueError):
            RuntimeConfig.from_env({"DYNGRAPH_GPU_COUNT": "many"})


class TestMemory(unittest.TestCase):
    def test_allocation_is_accounted_and_released(self):
        rt = NativeRuntime()
        buf = rt.allocate("cpu", 64)
        self.assertEqual(rt.bytes_in_use("cpu"), 64)
        buf.free()
        self.assertEqual(rt.bytes_in_use("cpu"), 0)

    def test_out_of_memory_is_recoverable(self):
        rt = NativeRuntime(RuntimeConfig(memory_limit_bytes=128))
        first = rt.allocate("cpu", 100)
        with self.assertRaises(AllocationError):
            rt.allocate("cpu", 100)
        first.free()
        rt.allocate("cpu", 100)

    def test_unknown_gpu_is_rejected(self):
        rt = NativeRuntime(RuntimeConfig(gpu_count=1))
        rt.allocate("gpu:0", 8)
        with self.assertRaises(DeviceNotSupportedError):
            rt.allocate("gpu:1", 8)

    def test_root_storage_frees_buffer_with_last_reference(self):
        rt = NativeRuntime()
        s = TensorStorage.allocate("cpu", DataType.FLOAT32, TensorFormat.NCHW, (4,), rt)
        s.incref()
        self.assertEqual(rt.bytes_in_use("cpu"), 16)
        s.decref()
        self.assertEqual(rt.bytes_in_use("cpu"), 0)


class TestExecution(unittest.TestCase):
    def setUp(self):
        self.rt = NativeRuntime()

    def test_infer_gemm(self):
        cpu = Device.cpu()
        metas = [
            TensorMeta((2, 1), DataType.FLOAT32, TensorFormat.NCHW, cpu),
            TensorMeta((1, 3), DataType.FLOAT32, TensorFormat.NCHW, cpu),
        ]
        (out,) = self.rt.infer(Command(CommandKind.GEMM), metas)
        self.assertEqual(out.shape, (2, 3))

    def test_infer_gemm_shape_mismatch(self):
        cpu = Device.cpu()
        metas = [
            TensorMeta((2, 2), DataType.FLOAT32, TensorFormat.NCHW, cpu),
            TensorMeta((3, 1), DataType.FLOAT32, TensorFormat.NCHW, cpu),
        ]
        with self.assertRaises(ValidationError):
            self.rt.infer(Command(CommandKind.GEMM), metas)

    def test_exec_command_into_bound_outputs(self):
        a = _storage(self.rt, [[1.0, -2.0]])
        out = _storage(self.rt, [[0.0, 0.0]])
        self.rt.exec_command(Command(CommandKind.RELU), NO_HINT, [a], [out])
        np.testing.assert_array_equal(out.ndarray(), [[1.0, 0.0]])

    def test_graph_exec_allocates_per_replica(self):
        a0, a1 = _storage(self.rt, [1.0, 2.0]), _storage(self.rt, [3.0, 4.0])
        outs = self.rt.graph_exec(
            Command(CommandKind.SCALAR_MUL, {"a": 2.0}),
            NO_HINT,
            [a0, a1],
            [None, None],
            parallel=2,
            allocate=lambda meta: TensorStorage.from_meta(meta, self.rt),
        )
        self.assertEqual(len(outs), 2)
        np.testing.assert_array_equal(outs[0].ndarray(), [2.0, 4.0])
        np.testing.assert_array_equal(outs[1].ndarray(), [6.0, 8.0])

    def test_graph_exec_rejects_uneven_split(self):
        a = _storage(self.rt, [1.0])
        with self.assertRaises(ValidationError):
            self.rt.graph_exec(Command(CommandKind.RELU), NO_HINT, [a, a, a], [None, None], parallel=2)

    def test_kernel_failure_becomes_execution_error(self):
        def boom(cmd, inputs, outputs):
            raise ZeroDivisionError("division by zero")

        with patch.dict(_kernels._KERNELS):
            register_kernel(CommandKind.RELU, infer=lambda cmd, metas: [metas[0]])(boom)
            a = _storage(self.rt, [1.0])
            out = _storage(self.rt, [0.0])
            with self.assertRaises(ExecutionError) as ctx:
                self.rt.exec_command(Command(CommandKind.RELU), NO_HINT, [a], [out])
            self.assertIn("ZeroDivisionError", str(ctx.exception))
        self.assertIsNot(get_kernel(CommandKind.RELU).forward, boom)

    def test_debug_mode_keeps_command_log(self):
        rt = NativeRuntime(RuntimeConfig(debug=True))
        a = _storage(rt, [1.0])
        out = _storage(rt, [0.0])
        rt.exec_command(Command(CommandKind.RELU), NO_HINT, [a], [out])
        self.assertEqual(len(rt.command_log), 1)
        self.assertEqual(self.rt.command_log, [])


class TestStreams(unittest.TestCase):
    def test_stream_runs_in_issue_order(self):
        rt = NativeRuntime()
        a = _storage(rt, [1.0, 2.0])
        with rt.create_stream() as stream:
            for _ in range(5):
                rt.exec_command(Command(CommandKind.SCALAR_MUL, {"a": 2.0}), NO_HINT, [a], [a], stream)
            stream.join()
            np.testing.assert_array_equal(a.ndarray(), [32.0, 64.0])

    def test_stream_failure_surfaces_on_join(self):
        rt = NativeRuntime()

        def boom(cmd, inputs, outputs):
            raise RuntimeError("device fault")

        with patch.dict(_kernels._KERNELS):
            register_kernel(CommandKind.SIGMOID, infer=lambda cmd, metas: [metas[0]])(boom)
            a = _storage(rt, [1.0])
            stream = rt.create_stream()
            rt.exec_command(Command(CommandKind.SIGMOID), NO_HINT, [a], [a], stream)
            with self.assertRaises(ExecutionError):
                stream.join()
            stream.close()


class TestMinimizers(unittest.TestCase):
    def test_saved_aux_sizes(self):
        self.assertEqual(saved_aux_size(Command(CommandKind.NOOP)), 0)
        self.assertEqual(saved_aux_size(Command(CommandKind.SGD)), 1)
        self.assertEqual(saved_aux_size(Command(CommandKind.ADAM)), 2)
        with self.assertRaises(ValidationError):
            saved_aux_size(Command(CommandKind.GEMM))

    def test_plain_sgd(self):
        p = np.array([1.0, 2.0], dtype=np.float32)
        m = np.zeros_like(p)
        applied = apply_update(Command(CommandKind.SGD, {"rate": 0.5}), np.array([2.0, 2.0]), p, [m])
        self.assertTrue(applied)
        np.testing.assert_allclose(p, [0.0, 1.0])

    def test_adam_first_step_moves_by_rate(self):
        p = np.array([1.0], dtype=np.float32)
        aux = [np.zeros_like(p), np.zeros_like(p)]
        apply_update(Command(CommandKind.ADAM, {"rate": 0.1, "step": 1}), np.array([3.0]), p, aux)
        np.testing.assert_allclose(p, [0.9], rtol=1e-5)

    def test_noop_and_missing_gradient_do_nothing(self):
        p = np.array([1.0], dtype=np.float32)
        self.assertFalse(apply_update(Command(CommandKind.NOOP), np.array([1.0]), p, []))
        self.assertFalse(apply_update(Command(CommandKind.SGD, {"rate": 1.0}), None, p, [np.zeros(1)]))
        np.testing.assert_array_equal(p, [1.0])

    def test_apply_replicated_averages_gradients(self):
        rt = NativeRuntime()
        p0, p1 = _storage(rt, [1.0]), _storage(rt, [1.0])
        g0, g1 = _storage(rt, [1.0]), _storage(rt, [3.0])
        m0, m1 = _storage(rt, [0.0]), _storage(rt, [0.0])
        rt.apply_replicated(Command(CommandKind.SGD, {"rate": 1.0}), [g0, g1], [p0, p1], [[m0], [m1]])
        np.testing.assert_allclose(p0.ndarray(), [-1.0])
        np.testing.assert_allclose(p1.ndarray(), [-1.0])

    def test_apply_gradients_checks_aux_count(self):
        rt = NativeRuntime()
        p, g = _storage(rt, [1.0]), _storage(rt, [1.0])
        with self.assertRaises(ValidationError):
            rt.apply_gradients(Command(CommandKind.ADAM, {"rate": 0.1, "step": 1}), [g], [p], [])


if __name__ == "__main__":
    unittest.main()
