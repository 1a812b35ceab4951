"""
Tests for configuration and presets.
"""

import json

import pytest

from luckystack.config import PRESETS, WAVELET_PRESETS, StackConfig
from luckystack.errors import ConfigurationError


class TestStackConfig:
    """Tests for StackConfig validation."""

    def test_defaults_are_valid(self):
        StackConfig().validate()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"keep_fraction": 0.0},
            {"keep_fraction": 1.5},
            {"min_frames": 0},
            {"min_frames": 100, "max_frames": 50},
            {"sample_step": 0},
            {"spread_window": 0},
            {"quality_weights": (0.0, 0.0, 0.0)},
            {"quality_weights": (0.5, 0.5)},
            {"hf_band": (0.8, 0.3)},
            {"tile_size": 24},
            {"local_min_valid_fraction": 0.0},
            {"local_interpolation": "linear"},
            {"resampling": "nearest"},
            {"sigma": 0.0},
            {"sigma_iterations": -1},
            {"weight_floor": 1.5},
            {"wavelet_gains": (1.0, 1.0)},
            {"chunk_size": 0},
            {"band_rows": 0},
            {"workers": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigurationError):
            StackConfig(**overrides).validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            StackConfig(sigma=-1).validate()

    def test_keep_all_frames(self):
        StackConfig(keep_fraction=1.0).validate()

    def test_to_dict_is_json_serializable(self):
        d = StackConfig().to_dict()
        text = json.dumps(d)
        assert json.loads(text)["wavelet_gains"] == list(WAVELET_PRESETS["moderate"])


class TestPresets:
    """Tests for named presets."""

    @pytest.mark.parametrize("name", sorted(PRESETS))
    def test_presets_are_valid(self, name):
        PRESETS[name].validate()

    def test_from_preset_with_overrides(self):
        config = StackConfig.from_preset("moon", min_frames=5)
        assert config.tile_size == 48
        assert config.min_frames == 5
        assert PRESETS["moon"].min_frames == 50

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError, match="Unknown preset"):
            StackConfig.from_preset("comet")

    def test_wavelet_presets_have_five_layers(self):
        assert all(len(g) == 5 for g in WAVELET_PRESETS.values())
        assert WAVELET_PRESETS["none"] == (1.0,) * 5
