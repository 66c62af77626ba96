"""Shared test fixtures: an isolated config tree and VM spec helpers."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from qemulab.models import CommandsConfig, Config, ImagesConfig

_QEMULAB_ENV_VARS = [
    "QEMULAB_CONFIG_DIR",
    "QEMULAB_DATA_DIR",
    "QEMULAB_VMS_DIR",
    "QEMULAB_IMAGES_DIR",
    "XDG_CONFIG_HOME",
    "XDG_DATA_HOME",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Clear every environment variable that changes where qemulab looks for files."""
    for key in _QEMULAB_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def qemulab_dirs(tmp_path, monkeypatch):
    """Point config and data directories into ``tmp_path``."""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    monkeypatch.setenv("QEMULAB_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("QEMULAB_DATA_DIR", str(data_dir))
    return config_dir, data_dir


@pytest.fixture
def images_config(tmp_path) -> ImagesConfig:
    directory = tmp_path / "images"
    directory.mkdir()
    return ImagesConfig(directory=directory, update_after_days=30)


@pytest.fixture
def config(tmp_path, images_config) -> Config:
    """A Config without defaults or templates; VMs live in ``tmp_path/vms``."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    vms_dir = tmp_path / "vms"
    vms_dir.mkdir()
    return Config(
        config_dir=config_dir,
        vms_dir=vms_dir,
        images=images_config,
        commands=CommandsConfig(),
        default={},
        templates={},
    )


@pytest.fixture
def write_spec(config):
    """Write ``vms_dir/<dirname>/vm.yaml`` from keyword fields."""

    def _write(dirname: str, **fields) -> Path:
        vm_dir = config.vms_dir / dirname
        vm_dir.mkdir(parents=True, exist_ok=True)
        path = vm_dir / "vm.yaml"
        path.write_text(yaml.safe_dump(fields, sort_keys=True))
        return path

    return _write
