"""Unit tests for the manager configuration."""

import pytest
from pydantic import ValidationError

from clusterlink.config import ManagerConfig


def test_defaults():
    config = ManagerConfig()

    assert config.cluster_prefix(4) == 16
    assert config.cluster_prefix(6) == 32
    assert config.bridge_port == 4876
    assert config.share_bridge_device is False
    assert config.publish_workers == 8


@pytest.mark.parametrize(
    "overrides",
    [
        {"cluster_prefix_v4": 0},
        {"cluster_prefix_v6": 127},
        {"bridge_port": 70000},
        {"bridge_vni": 0},
        {"link_vni_base": 2**24},
        {"publish_workers": 0},
        {"debounce_seconds": -1},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValidationError):
        ManagerConfig(**overrides)


def test_fixed_vnis_must_be_distinct():
    with pytest.raises(ValidationError, match="distinct"):
        ManagerConfig(bridge_vni=55)


def test_fixed_vnis_below_link_range():
    with pytest.raises(ValidationError, match="link_vni_base"):
        ManagerConfig(link_vni_base=50)


def test_save_and_load(tmp_path):
    path = tmp_path / "config.yml"
    config = ManagerConfig(share_bridge_device=True, reconcile_interval=10.0)

    config.save(str(path))
    loaded = ManagerConfig.load(str(path))

    assert loaded == config


def test_load_empty_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("")

    assert ManagerConfig.load(str(path)) == ManagerConfig()
