import unittest

import numpy as np

from cudnnlayer.domain._errors import ConfigurationError
from cudnnlayer.infrastructure.ops.host_transforms import (
    HostTransform,
    get_transform,
    has_transform,
    register_transform,
)


def _numeric_derivative(fn, z, h=1e-6):
    return (fn(z + h) - fn(z - h)) / (2 * h)


class TestRegistry(unittest.TestCase):
    def test_lookup_is_case_insensitive(self):
        self.assertIs(get_transform("ReLU"), get_transform("relu"))
        self.assertTrue(has_transform("LeakyReLU"))

    def test_unknown_name_raises_configuration_error_listing_known_names(self):
        with self.assertRaises(ConfigurationError) as cm:
            get_transform("swishy")
        self.assertIn("swishy", str(cm.exception))
        self.assertIn("relu", str(cm.exception))
        self.assertFalse(has_transform("swishy"))

    def test_duplicate_registration_rejected(self):
        with self.assertRaises(ValueError):

            @register_transform("tanh")
            class _Again(HostTransform):
                pass


class TestTransforms(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(42)
        # keep away from kinks of relu-like transforms
        z = rng.uniform(-3.0, 3.0, size=(2, 3, 4, 4))
        z[np.abs(z) < 0.05] = 0.5
        z[np.abs(np.abs(z) - 1.0) < 0.05] = 0.5
        z[np.abs(np.abs(z) - 2.5) < 0.05] = 0.5
        self.z = z

    def test_forward_returns_new_array(self):
        for name in ("identity", "sigmoid", "relu", "leakyrelu", "cube", "softmax"):
            with self.subTest(name=name):
                z = self.z.copy()
                out = get_transform(name).forward(z)
                self.assertIsNot(out, z)
                np.testing.assert_array_equal(z, self.z)

    def test_derivatives_match_finite_differences(self):
        elementwise = (
            "identity",
            "sigmoid",
            "relu",
            "tanh",
            "leakyrelu",
            "elu",
            "softplus",
            "softsign",
            "hardtanh",
            "hardsigmoid",
            "cube",
        )
        for name in elementwise:
            with self.subTest(name=name):
                t = get_transform(name)
                np.testing.assert_allclose(
                    t.derivative(self.z),
                    _numeric_derivative(t.forward, self.z),
                    rtol=1e-5,
                    atol=1e-6,
                )

    def test_derivative_in_place(self):
        z = self.z.astype(np.float32)
        expected = get_transform("tanh").derivative(z.copy())
        out = get_transform("tanh").derivative(z, out=z)
        self.assertIs(out, z)
        np.testing.assert_allclose(z, expected, rtol=1e-6)

    def test_derivative_keeps_dtype(self):
        z = self.z.astype(np.float32)
        for name in ("relu", "leakyrelu", "hardsigmoid", "elu"):
            with self.subTest(name=name):
                self.assertEqual(get_transform(name).derivative(z).dtype, np.float32)

    def test_softmax_normalizes_over_channels(self):
        s = get_transform("softmax").forward(self.z)
        np.testing.assert_allclose(s.sum(axis=1), np.ones((2, 4, 4)), rtol=1e-12)
        self.assertTrue(np.all(s > 0))

    def test_logsoftmax_is_log_of_softmax(self):
        np.testing.assert_allclose(
            get_transform("logsoftmax").forward(self.z),
            np.log(get_transform("softmax").forward(self.z)),
            rtol=1e-10,
        )

    def test_softmax_family_derivatives_are_jacobian_diagonals(self):
        s = get_transform("softmax").forward(self.z)
        np.testing.assert_allclose(get_transform("softmax").derivative(self.z), s * (1 - s))
        np.testing.assert_allclose(get_transform("logsoftmax").derivative(self.z), 1 - s)

    def test_softmax_is_shift_invariant(self):
        s1 = get_transform("softmax").forward(self.z)
        s2 = get_transform("softmax").forward(self.z + 1000.0)
        np.testing.assert_allclose(s1, s2, rtol=1e-9)


if __name__ == "__main__":
    unittest.main()
