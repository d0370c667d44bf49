"""
Unit tests for device and benchmark configuration.
"""

import pytest

from simtgemm.config import (
    DEFAULT_DEVICE_CONFIG,
    DEVICE_CONFIGS,
    LARGE_DEVICE_CONFIG,
    SMALL_DEVICE_CONFIG,
    DeviceConfig,
    GridOrder,
    MatrixMulConfig,
    SchedulingPolicy,
    TileMapping,
    get_device_config,
)


class TestDeviceConfig:
    """Test device configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = DeviceConfig()
        assert config.warp_size == 32
        assert config.num_sms == 4
        assert config.max_threads_per_block == 1024
        assert config.shared_memory_kb == 48
        assert config.shared_memory_banks == 32
        assert config.warp_policy == SchedulingPolicy.ROUND_ROBIN
        assert config.grid_order == GridOrder.ROW_MAJOR
        assert not config.racecheck

    def test_derived_properties(self):
        """Test derived configuration properties."""
        config = DeviceConfig()
        assert config.shared_memory_bytes == 48 * 1024
        assert config.global_memory_bytes == 256 * 1024 * 1024

    def test_invalid_config(self):
        """Test that non-positive resources are rejected."""
        with pytest.raises(AssertionError):
            DeviceConfig(warp_size=0)
        with pytest.raises(AssertionError):
            DeviceConfig(num_sms=0)
        with pytest.raises(AssertionError):
            DeviceConfig(shared_memory_kb=-1)


class TestMatrixMulConfig:
    """Test benchmark configuration."""

    def test_defaults(self):
        """Defaults match the classic benchmark."""
        config = MatrixMulConfig()
        assert config.block_size == 32
        assert config.iterations == 300
        assert config.val_a == 1.0
        assert config.val_b == pytest.approx(0.01)
        assert config.epsilon == 1e-6
        assert config.mapping == TileMapping.REFERENCE

    def test_block_size_must_be_supported(self):
        """Only instantiated tile sizes are accepted."""
        MatrixMulConfig(block_size=16)
        with pytest.raises(AssertionError):
            MatrixMulConfig(block_size=8)

    def test_iterations_must_be_positive(self):
        with pytest.raises(AssertionError):
            MatrixMulConfig(iterations=0)


class TestDeviceSelection:
    """Test device lookup by index."""

    def test_presets_by_index(self):
        assert get_device_config(0) is DEFAULT_DEVICE_CONFIG
        assert get_device_config(1) is SMALL_DEVICE_CONFIG
        assert get_device_config(2) is LARGE_DEVICE_CONFIG
        assert len(DEVICE_CONFIGS) == 3

    def test_names_are_unique(self):
        names = [cfg.name for cfg in DEVICE_CONFIGS]
        assert len(set(names)) == len(names)

    @pytest.mark.parametrize("device_id", [-1, 3, 100])
    def test_unknown_device(self, device_id):
        with pytest.raises(ValueError, match="invalid device"):
            get_device_config(device_id)
