import json
import unittest

from cudnnlayer.domain._activation import ActivationKind
from cudnnlayer.domain._conv_config import ConvolutionLayerConfig
from cudnnlayer.domain._errors import ConfigurationError


class TestConvolutionLayerConfig(unittest.TestCase):
    def test_scalars_are_normalized_to_pairs(self):
        cfg = ConvolutionLayerConfig(kernel_size=3, stride=2, padding=1)
        self.assertEqual(cfg.kernel_size, (3, 3))
        self.assertEqual(cfg.stride, (2, 2))
        self.assertEqual(cfg.padding, (1, 1))

    def test_defaults(self):
        cfg = ConvolutionLayerConfig(kernel_size=(5, 3))
        self.assertEqual(cfg.stride, (1, 1))
        self.assertEqual(cfg.padding, (0, 0))
        self.assertEqual(cfg.activation, "identity")
        self.assertEqual(cfg.dtype, "float32")
        self.assertFalse(cfg.separate_backward_data_algorithm)
        self.assertIs(cfg.parsed_activation.kind, ActivationKind.IDENTITY)

    def test_activation_is_canonicalized(self):
        cfg = ConvolutionLayerConfig(kernel_size=1, activation=" Sigmoid")
        self.assertEqual(cfg.activation, "sigmoid")
        self.assertIs(cfg.parsed_activation.kind, ActivationKind.SIGMOID)

    def test_invalid_hyperparameters_raise_configuration_error(self):
        bad = [
            dict(kernel_size=0),
            dict(kernel_size=(3, -1)),
            dict(kernel_size=3, stride=0),
            dict(kernel_size=3, padding=-1),
            dict(kernel_size=(1, 2, 3)),
            dict(kernel_size=3, dtype="float16"),
            dict(kernel_size=3, activation=""),
        ]
        for kwargs in bad:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ConfigurationError):
                    ConvolutionLayerConfig(**kwargs)

    def test_is_immutable(self):
        cfg = ConvolutionLayerConfig(kernel_size=3)
        with self.assertRaises(AttributeError):
            cfg.stride = (2, 2)  # type: ignore[misc]

    def test_get_config_is_json_serializable_and_round_trips(self):
        cfg = ConvolutionLayerConfig(
            kernel_size=(3, 5),
            stride=(1, 2),
            padding=(0, 2),
            activation="tanh",
            dtype="float64",
            separate_backward_data_algorithm=True,
        )
        payload = json.loads(json.dumps(cfg.get_config()))
        self.assertEqual(ConvolutionLayerConfig.from_config(payload), cfg)

    def test_from_config_fills_defaults(self):
        cfg = ConvolutionLayerConfig.from_config({"kernel_size": [2, 2]})
        self.assertEqual(cfg, ConvolutionLayerConfig(kernel_size=2))


if __name__ == "__main__":
    unittest.main()
