import unittest

import numpy as np

from cudnnlayer.domain._errors import AllocationError, InputError
from cudnnlayer.domain._memory_coordinator import IDeviceMemoryCoordinator
from cudnnlayer.infrastructure.memory import HostMirroredMemoryCoordinator, host_span

from .._fake_cudnn import FakeCudaRuntime, address_of, host_view


class TestHostSpan(unittest.TestCase):
    def test_c_contiguous(self):
        a = np.zeros((2, 3), np.float32)
        self.assertEqual(host_span(a), (address_of(a), 24))

    def test_strided_view_covers_gaps(self):
        base = np.zeros((4, 6), np.float64)
        view = base[::2, 1::2]
        addr, nbytes = host_span(view)
        self.assertEqual(addr, address_of(base) + 8)
        # first element at flat index 1, last at 2 * 6 + 5
        self.assertEqual(nbytes, (17 - 1) * 8 + 8)

    def test_negative_strides_rejected(self):
        with self.assertRaises(InputError):
            host_span(np.arange(4.0)[::-1])

    def test_empty(self):
        self.assertEqual(host_span(np.zeros((0, 3), np.float32)), (0, 0))


class TestHostMirroredMemoryCoordinator(unittest.TestCase):
    def setUp(self):
        self.rt = FakeCudaRuntime()
        self.coord = HostMirroredMemoryCoordinator(self.rt)
        self.x = np.arange(6, dtype=np.float32).reshape(2, 3)
        self.y = np.zeros((2, 3), np.float32)

    def _device(self, a, ctx):
        ptr = self.coord.get_pointer(a, ctx)
        return host_view(ptr, a.dtype, a.shape, [s // a.itemsize for s in a.strides])

    def test_satisfies_protocol(self):
        self.assertIsInstance(self.coord, IDeviceMemoryCoordinator)

    def test_prepare_stages_a_copy(self):
        ctx = self.coord.prepare_action(reads=(self.x,), writes=(self.y,))
        self.assertEqual(self.rt.malloc_sizes, [24, 24])
        dev_x = self._device(self.x, ctx)
        self.assertNotEqual(self.coord.get_pointer(self.x, ctx), address_of(self.x))
        np.testing.assert_array_equal(dev_x, self.x)
        self.coord.register_action(ctx)

    def test_duplicate_tensor_staged_once(self):
        ctx = self.coord.prepare_action(reads=(self.x,), writes=(self.x,))
        self.assertEqual(len(self.rt.malloc_sizes), 1)
        self.coord.register_action(ctx)

    def test_register_copies_back_modified_writes_only(self):
        ctx = self.coord.prepare_action(reads=(self.x,), writes=(self.y,))
        self._device(self.x, ctx)[...] = -1.0
        self._device(self.y, ctx)[...] = 7.0
        self.coord.register_action(ctx, self.x, self.y)

        np.testing.assert_array_equal(self.x, np.arange(6).reshape(2, 3))
        np.testing.assert_array_equal(self.y, np.full((2, 3), 7.0))
        self.assertTrue(ctx.closed)
        self.assertEqual(self.rt.allocations, {})
        self.assertEqual(self.rt.free_count, 2)

    def test_unmodified_writes_not_copied_back(self):
        ctx = self.coord.prepare_action(writes=(self.y,))
        self._device(self.y, ctx)[...] = 3.0
        self.coord.register_action(ctx)
        np.testing.assert_array_equal(self.y, np.zeros((2, 3)))

    def test_strided_write_round_trips_through_span(self):
        base = np.zeros((4, 4), np.float32)
        view = base[:, ::2]
        ctx = self.coord.prepare_action(writes=(view,))
        self._device(view, ctx)[...] = 5.0
        self.coord.register_action(ctx, view)
        np.testing.assert_array_equal(base[:, ::2], np.full((4, 2), 5.0))
        np.testing.assert_array_equal(base[:, 1::2], np.zeros((4, 2)))

    def test_register_is_idempotent(self):
        ctx = self.coord.prepare_action(reads=(self.x,))
        self.coord.register_action(ctx)
        self.coord.register_action(ctx)
        self.assertEqual(self.rt.free_count, 1)

    def test_get_pointer_errors(self):
        ctx = self.coord.prepare_action(reads=(self.x,))
        with self.assertRaises(InputError):
            self.coord.get_pointer(self.y, ctx)
        self.coord.register_action(ctx)
        with self.assertRaises(InputError):
            self.coord.get_pointer(self.x, ctx)

    def test_empty_array_is_not_allocated(self):
        e = np.zeros((0, 3), np.float32)
        ctx = self.coord.prepare_action(reads=(e,))
        self.assertEqual(self.coord.get_pointer(e, ctx), 0)
        self.assertEqual(self.rt.malloc_sizes, [])
        self.coord.register_action(ctx)

    def test_non_array_rejected(self):
        with self.assertRaises(InputError):
            self.coord.prepare_action(reads=([1.0, 2.0],))

    def test_staging_failure_frees_buffers(self):
        self.rt.fail_malloc_after = 1
        with self.assertRaises(AllocationError):
            self.coord.prepare_action(reads=(self.x,), writes=(self.y,))
        self.assertEqual(self.rt.allocations, {})
        self.assertEqual(self.rt.free_count, 1)


if __name__ == "__main__":
    unittest.main()
