import unittest

import numpy as np

from src.dyngraph.domain._command import Command, CommandKind, noop
from src.dyngraph.domain._errors import (
    AllocationError,
    CrossGraphError,
    GroupConsistencyError,
    IndexOutOfRangeError,
    ValidationError,
)
from src.dyngraph.domain._types import (
    MAX_DIM,
    DataType,
    ShapeFormat,
    TensorFormat,
    element_strides,
    flat_offset,
    normalize_shape,
    numel,
)
from src.dyngraph.domain.device._device import Device, as_device


class TestDataType(unittest.TestCase):
    def test_numpy_mapping_round_trips(self):
        for dt in DataType:
            self.assertIs(DataType.from_numpy(dt.numpy_dtype), dt)

    def test_codes_round_trip(self):
        for dt in DataType:
            self.assertIs(DataType.from_code(dt.code), dt)

    def test_unknown_code_raises(self):
        with self.assertRaises(ValidationError):
            DataType.from_code(0x7)

    def test_unsupported_numpy_dtype_raises(self):
        with self.assertRaises(ValidationError):
            DataType.from_numpy(np.complex64)

    def test_itemsize(self):
        self.assertEqual(DataType.FLOAT32.itemsize, 4)
        self.assertEqual(DataType.FLOAT16.itemsize, 2)
        self.assertEqual(DataType.INT64.itemsize, 8)


class TestShapes(unittest.TestCase):
    def test_normalize_shape_accepts_positive_dims(self):
        self.assertEqual(normalize_shape([2, 3]), (2, 3))

    def test_normalize_shape_rejects_bad_shapes(self):
        for bad in ([], [0], [2, -1], [1] * (MAX_DIM + 1)):
            with self.subTest(shape=bad):
                with self.assertRaises(ValidationError):
                    normalize_shape(bad)

    def test_numel(self):
        self.assertEqual(numel((2, 3, 4)), 24)

    def test_flat_offset_and_strides(self):
        self.assertEqual(element_strides((3, 2)), (2, 1))
        self.assertEqual(flat_offset((2, 1), (3, 2)), 5)

    def test_shape_format_factories(self):
        sf = ShapeFormat.NC(2, 1)
        self.assertIs(sf.format, TensorFormat.NCHW)
        self.assertEqual(sf.shape, (2, 1))
        self.assertIs(ShapeFormat.NHWC(1, 2, 2, 3).format, TensorFormat.NHWC)
        with self.assertRaises(ValidationError):
            ShapeFormat.C(0)


class TestCommand(unittest.TestCase):
    def test_commands_compare_by_value(self):
        a = Command(CommandKind.SGD, {"rate": 0.1})
        b = Command(CommandKind.SGD, {"rate": 0.1})
        self.assertEqual(a, b)
        self.assertEqual(hash(a), hash(b))
        self.assertNotEqual(a, a.with_params(rate=0.2))

    def test_params_are_read_only(self):
        cmd = Command(CommandKind.SET, {"value": 1.0})
        with self.assertRaises(TypeError):
            cmd.params["value"] = 2.0

    def test_noop_is_minimizer(self):
        self.assertTrue(noop().kind.is_minimizer)
        self.assertFalse(CommandKind.GEMM.is_minimizer)


class TestErrors(unittest.TestCase):
    def test_taxonomy(self):
        self.assertTrue(issubclass(IndexOutOfRangeError, ValidationError))
        self.assertTrue(issubclass(GroupConsistencyError, ValidationError))
        self.assertTrue(issubclass(AllocationError, MemoryError))
        self.assertIn("backward", str(CrossGraphError("backward")))


class TestDevice(unittest.TestCase):
    def test_parse(self):
        self.assertTrue(Device("cpu").is_cpu())
        self.assertEqual(Device("gpu:1"), Device.gpu(1))
        self.assertEqual(as_device(None), Device.cpu())

    def test_invalid(self):
        with self.assertRaises(ValueError):
            Device("tpu")


if __name__ == "__main__":
    unittest.main()
