import copy
import gc
import unittest

from cudnnlayer.domain._errors import (
    ConfigurationError,
    ExecutionError,
    InitializationError,
)
from cudnnlayer.infrastructure.convolution._cudnn_context import CudnnContext
from cudnnlayer.infrastructure.native_cuda.python.cudnn_ctypes import (
    CUDNN_DATA_DOUBLE,
    CUDNN_TENSOR_NCHW,
)

from .._fake_cudnn import FakeCudnn

_ALL_KINDS = sorted(
    ["handle", "tensor", "tensor", "tensor", "tensor", "filter", "convolution", "activation"]
)


class TestCudnnContextLifecycle(unittest.TestCase):
    def setUp(self):
        self.lib = FakeCudnn()

    def test_creates_handle_and_seven_descriptors(self):
        ctx = CudnnContext(self.lib)
        self.assertEqual(self.lib.live_kinds(), _ALL_KINDS)
        self.assertTrue(ctx.alive)
        handles = {ctx.src.handle, ctx.dst.handle, ctx.bias.handle, ctx.delta.handle}
        self.assertEqual(len(handles), 4)
        ctx.destroy()

    def test_destroy_releases_everything_descriptors_before_handle(self):
        ctx = CudnnContext(self.lib)
        ctx.destroy()
        self.assertEqual(self.lib.live, {})
        self.assertFalse(ctx.alive)
        destroys = [n for n in self.lib.names() if n.startswith("destroy")]
        self.assertEqual(
            destroys,
            [
                "destroy_activation_descriptor",
                "destroy_convolution_descriptor",
                "destroy_filter_descriptor",
                "destroy_tensor_descriptor",
                "destroy_tensor_descriptor",
                "destroy_tensor_descriptor",
                "destroy_tensor_descriptor",
                "destroy",
            ],
        )

    def test_destroy_is_idempotent(self):
        ctx = CudnnContext(self.lib)
        ctx.destroy()
        n_calls = len(self.lib.calls)
        ctx.destroy()
        self.assertEqual(len(self.lib.calls), n_calls)

    def test_context_manager_destroys(self):
        with CudnnContext(self.lib) as ctx:
            self.assertTrue(ctx.alive)
        self.assertFalse(ctx.alive)
        self.assertEqual(self.lib.live, {})

    def test_require_alive_after_destroy(self):
        ctx = CudnnContext(self.lib)
        ctx.require_alive()
        ctx.destroy()
        with self.assertRaises(InitializationError):
            ctx.require_alive()

    def test_failed_descriptor_creation_rolls_back(self):
        # fourth tensor descriptor (delta) fails
        self.lib.fail("create_tensor_descriptor", after=3)
        with self.assertRaises(InitializationError) as cm:
            CudnnContext(self.lib)
        self.assertEqual(cm.exception.call, "create_tensor_descriptor")
        self.assertEqual(self.lib.live, {})

    def test_failed_handle_creation_creates_nothing(self):
        self.lib.fail("create")
        with self.assertRaises(InitializationError):
            CudnnContext(self.lib)
        self.assertEqual(self.lib.live, {})
        self.assertEqual(self.lib.names(), ["create"])

    def test_failed_activation_descriptor_creation_rolls_back(self):
        self.lib.fail("create_activation_descriptor")
        with self.assertRaises(InitializationError):
            CudnnContext(self.lib)
        self.assertEqual(self.lib.live, {})

    def test_strict_destroy_attempts_every_release_then_raises(self):
        ctx = CudnnContext(self.lib)
        self.lib.fail("destroy_filter_descriptor")
        with self.assertRaises(ExecutionError):
            ctx.destroy()
        # only the failing filter descriptor survives
        self.assertEqual(list(self.lib.live.values()), ["filter"])
        self.assertFalse(ctx.alive)

    def test_garbage_collection_releases_and_warns(self):
        ctx = CudnnContext(self.lib)
        with self.assertLogs(
            "cudnnlayer.infrastructure.convolution._cudnn_context", level="WARNING"
        ):
            del ctx
            gc.collect()
        self.assertEqual(self.lib.live, {})

    def test_data_type_is_recorded(self):
        ctx = CudnnContext(self.lib, CUDNN_DATA_DOUBLE)
        self.assertEqual(ctx.data_type, CUDNN_DATA_DOUBLE)
        ctx.destroy()


class TestCudnnContextCopy(unittest.TestCase):
    def setUp(self):
        self.lib = FakeCudnn()
        self.ctx = CudnnContext(self.lib)
        self.ctx.bias.apply(
            "set_tensor4d_descriptor", CUDNN_TENSOR_NCHW, self.ctx.data_type, 1, 8, 1, 1
        )
        self.ctx.conv.apply("set_convolution2d_descriptor", 1, 1, 2, 2, 1, 1, 1, 0)

    def tearDown(self):
        self.ctx.destroy()

    def test_copy_owns_fresh_descriptors_with_same_settings(self):
        dup = self.ctx.copy()
        try:
            for name in ("src", "dst", "bias", "delta", "filter", "conv", "activation"):
                with self.subTest(name=name):
                    a, b = getattr(self.ctx, name), getattr(dup, name)
                    self.assertNotEqual(a.handle, b.handle)
                    self.assertEqual(a.settings, b.settings)
            self.assertNotEqual(self.ctx.handle, dup.handle)
            self.assertEqual(
                self.lib.settings[dup.bias.handle], self.lib.settings[self.ctx.bias.handle]
            )
        finally:
            dup.destroy()

    def test_copies_are_independent(self):
        dup = copy.deepcopy(self.ctx)
        dup.destroy()
        self.assertTrue(self.ctx.alive)
        self.assertIn(self.ctx.bias.handle, self.lib.live)
        self.ctx.bias.apply(
            "set_tensor4d_descriptor", CUDNN_TENSOR_NCHW, self.ctx.data_type, 1, 4, 1, 1
        )

    def test_copy_of_destroyed_context_rejected(self):
        self.ctx.destroy()
        with self.assertRaises(InitializationError):
            self.ctx.copy()

    def test_failed_copy_rolls_back_and_is_initialization_error(self):
        before = dict(self.lib.live)
        self.lib.fail("set_convolution2d_descriptor")
        with self.assertRaises(InitializationError) as cm:
            self.ctx.copy()
        self.assertIsInstance(cm.exception.__cause__, ConfigurationError)
        self.assertEqual(self.lib.live, before)


if __name__ == "__main__":
    unittest.main()
