import unittest

import numpy as np

from cudnnlayer.domain._errors import ExecutionError
from cudnnlayer.domain._memory_coordinator import IDeviceMemoryCoordinator
from cudnnlayer.infrastructure.convolution._device_action import device_action

from .._fake_cudnn import ZeroCopyCoordinator


class TestDeviceAction(unittest.TestCase):
    def setUp(self):
        self.coord = ZeroCopyCoordinator()
        self.a = np.zeros(4, np.float32)
        self.b = np.zeros(4, np.float32)

    def test_fake_satisfies_protocol(self):
        self.assertIsInstance(self.coord, IDeviceMemoryCoordinator)

    def test_one_prepare_one_register_with_modified(self):
        with device_action(self.coord, reads=(self.a,), writes=(self.b,)) as action:
            self.coord.get_pointer(self.a, action.context)
            self.coord.get_pointer(self.b, action.context)
            action.modified(self.b)

        self.assertEqual(len(self.coord.prepared), 1)
        self.assertEqual(len(self.coord.registered), 1)
        ctx, modified = self.coord.registered[0]
        self.assertIs(ctx, self.coord.prepared[0])
        self.assertEqual(len(modified), 1)
        self.assertIs(modified[0], self.b)
        self.assertEqual(ctx.reads, (self.a,))
        self.assertEqual(ctx.writes, (self.b,))

    def test_failure_registers_nothing_modified_and_propagates(self):
        with self.assertRaises(ExecutionError):
            with device_action(self.coord, reads=(self.a,), writes=(self.b,)) as action:
                action.modified(self.b)
                raise ExecutionError("rejected")
        self.assertEqual(self.coord.open_actions, 0)
        _, modified = self.coord.registered[0]
        self.assertEqual(modified, ())

    def test_nothing_modified(self):
        with device_action(self.coord, reads=(self.a,)):
            pass
        self.assertEqual(self.coord.registered[0][1], ())


if __name__ == "__main__":
    unittest.main()
