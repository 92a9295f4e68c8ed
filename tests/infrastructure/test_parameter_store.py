import unittest

import numpy as np

from cudnnlayer.domain._errors import InputError
from cudnnlayer.domain._parameter_store import BIAS_KEY, WEIGHT_KEY, IParameterStore
from cudnnlayer.infrastructure._parameter_store import DictParameterStore, Gradient


class TestDictParameterStore(unittest.TestCase):
    def test_for_convolution_shapes_and_init(self):
        store = DictParameterStore.for_convolution(
            3, 8, (5, 5), rng=np.random.default_rng(0)
        )
        w = store.get_param(WEIGHT_KEY)
        b = store.get_param(BIAS_KEY)
        self.assertEqual(w.shape, (8, 3, 5, 5))
        self.assertEqual(b.shape, (8,))
        self.assertEqual(w.dtype, np.float32)
        np.testing.assert_array_equal(b, 0)
        # He-normal: std close to sqrt(2 / fan_in)
        self.assertAlmostEqual(float(w.std()), np.sqrt(2.0 / 75.0), delta=0.03)

    def test_for_convolution_dtype(self):
        store = DictParameterStore.for_convolution(1, 2, (3, 3), dtype="float64")
        self.assertEqual(store.get_param(WEIGHT_KEY).dtype, np.float64)
        self.assertEqual(store.get_gradient_view(WEIGHT_KEY).dtype, np.float64)

    def test_gradient_views_are_zeroed_c_order_and_stable(self):
        store = DictParameterStore.for_convolution(2, 4, (3, 3))
        view = store.get_gradient_view(WEIGHT_KEY)
        self.assertEqual(view.shape, (4, 2, 3, 3))
        self.assertTrue(view.flags.c_contiguous)
        np.testing.assert_array_equal(view, 0)
        self.assertIs(store.get_gradient_view(WEIGHT_KEY), view)

    def test_explicit_gradient_views_are_used(self):
        w = np.zeros((2, 1, 1, 1), dtype=np.float32)
        gw = np.empty_like(w)
        store = DictParameterStore({WEIGHT_KEY: w}, {WEIGHT_KEY: gw})
        self.assertIs(store.get_gradient_view(WEIGHT_KEY), gw)

    def test_mismatched_gradient_view_rejected(self):
        with self.assertRaises(InputError):
            DictParameterStore(
                {BIAS_KEY: np.zeros(3, np.float32)},
                {BIAS_KEY: np.zeros(4, np.float32)},
            )

    def test_missing_keys_raise_input_error(self):
        store = DictParameterStore({})
        with self.assertRaises(InputError):
            store.get_param(WEIGHT_KEY)
        with self.assertRaises(InputError):
            store.get_gradient_view(BIAS_KEY)

    def test_set_param_keeps_view_shape(self):
        store = DictParameterStore.for_convolution(1, 2, (1, 1))
        new_b = np.ones(2, np.float32)
        store.set_param(BIAS_KEY, new_b)
        self.assertIs(store.get_param(BIAS_KEY), new_b)
        with self.assertRaises(InputError):
            store.set_param(BIAS_KEY, np.ones(3, np.float32))

    def test_satisfies_protocol(self):
        self.assertIsInstance(DictParameterStore({}), IParameterStore)


class TestGradient(unittest.TestCase):
    def test_mapping_behaviour_and_orders(self):
        g = Gradient()
        gb = np.zeros(3)
        gw = np.zeros((3, 1, 2, 2))
        g.set_gradient_for(BIAS_KEY, gb)
        g.set_gradient_for(WEIGHT_KEY, gw, "c")

        self.assertEqual(list(g), [BIAS_KEY, WEIGHT_KEY])
        self.assertEqual(len(g), 2)
        self.assertIn(WEIGHT_KEY, g)
        self.assertIs(g[BIAS_KEY], gb)
        self.assertIs(g.get_gradient_for(WEIGHT_KEY), gw)
        self.assertIsNone(g.flattening_order_for(BIAS_KEY))
        self.assertEqual(g.flattening_order_for(WEIGHT_KEY), "c")
        self.assertEqual(set(g.gradient_for_variable()), {BIAS_KEY, WEIGHT_KEY})
        self.assertIn("(3, 1, 2, 2)", repr(g))


if __name__ == "__main__":
    unittest.main()
