"""Configuration loading for qemulab."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab.constants import (
    CONFIG_FILE_NAME,
    CREATE_EXISTS_ACTIONS,
    EMBEDDED_CONFIG,
    EMBEDDED_IMAGES,
    IMAGES_FILE_NAME,
    SYSTEM_CONFIG_DIR,
    URL_RESOLVERS_DIR_NAME,
    config_dir,
    data_dir,
)
from qemulab.exceptions import ConfigParseError, ConfigReadError, FileSystemError
from qemulab.models import CommandsConfig, Config, ImagesConfig, WaitSSHConfig
from qemulab.utils import ensure_directory, get_env, log


def read_yaml(path: Path, what: str = "config") -> Any:
    """Parse a YAML file, mapping I/O and syntax problems to config errors."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigReadError(f"failed to read {what} file `{path}`: {exc}")
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"failed to parse {what} file `{path}`: {exc}")


def _section(data: Dict[str, Any], key: str, path: Path) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigParseError(f"`{key}` in {path} must be a mapping")
    return value


def _path(raw: Any, default: Path) -> Path:
    if raw is None or str(raw).strip() == "":
        return default
    return Path(str(raw)).expanduser()


def _int_or_none(raw: Any, key: str, path: Path) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigParseError(f"`{key}` in {path} must be a non-negative integer (got {raw!r})")
    return raw


def parse_config(data: Any, path: Path, base_dir: Optional[Path] = None) -> Config:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigParseError(f"{path} must contain a YAML mapping")
    base_dir = base_dir or config_dir()
    share = data_dir()

    vms_dir = _path(get_env("QEMULAB_VMS_DIR") or data.get("vms_dir"), share / "vms")

    images_raw = _section(data, "images", path)
    other_dirs: List[Path] = [
        Path(str(item)).expanduser() for item in images_raw.get("other_directories_ro") or []
    ]
    images = ImagesConfig(
        directory=_path(get_env("QEMULAB_IMAGES_DIR") or images_raw.get("directory"), share / "images"),
        other_directories_ro=other_dirs,
        update_after_days=_int_or_none(images_raw.get("update_after_days"), "images.update_after_days", path),
    )

    commands_raw = _section(data, "commands", path)
    list_raw = _section(commands_raw, "list", path)
    create_raw = _section(commands_raw, "create", path)
    start_raw = _section(commands_raw, "start", path)
    wait_raw = _section(start_raw, "wait_ssh", path)

    exists = str(create_raw.get("exists", "fail")).strip().lower()
    if exists not in CREATE_EXISTS_ACTIONS:
        supported = ", ".join(sorted(CREATE_EXISTS_ACTIONS))
        raise ConfigParseError(f"Unsupported commands.create.exists '{exists}' in {path}. Supported: {supported}")

    defaults = WaitSSHConfig()
    wait_ssh = WaitSSHConfig(
        repeat=int(wait_raw.get("repeat", defaults.repeat)),
        sleep=float(wait_raw.get("sleep", defaults.sleep)),
        attempts=int(wait_raw.get("attempts", defaults.attempts)),
        timeout=int(wait_raw.get("timeout", defaults.timeout)),
    )
    commands = CommandsConfig(
        list_fold=bool(list_raw.get("fold", False)),
        list_all=bool(list_raw.get("all", False)),
        create_exists=exists,
        start_cloud_init=bool(start_raw.get("cloud_init", False)),
        wait_ssh=wait_ssh,
    )

    templates = _section(data, "templates", path)
    for name, template in templates.items():
        if not isinstance(template, dict):
            raise ConfigParseError(f"template '{name}' in {path} must be a mapping")

    return Config(
        config_dir=base_dir,
        vms_dir=vms_dir,
        images=images,
        commands=commands,
        default=_section(data, "default", path),
        templates=dict(templates),
    )


def load_config(config_path: Optional[Path] = None) -> Config:
    if config_path is None:
        config_path = config_dir() / CONFIG_FILE_NAME
    if not config_path.exists():
        raise ConfigReadError(f"Config file missing: {config_path}")
    return parse_config(read_yaml(config_path), config_path, base_dir=config_path.parent)


def install_config(filename: str, embedded: Path, directory: Optional[Path] = None) -> Path:
    """Seed ``directory/filename`` from /etc or the embedded copy if it is absent."""
    directory = directory or config_dir()
    target = directory / filename
    if target.exists():
        return target
    try:
        ensure_directory(directory)
        system_copy = SYSTEM_CONFIG_DIR / filename
        if system_copy.exists():
            shutil.copyfile(system_copy, target)
            log("INFO", f"Installed {target} from {system_copy}")
        else:
            shutil.copyfile(embedded, target)
            log("INFO", f"Installed default {target}")
    except OSError as exc:
        raise FileSystemError(f"Cannot install {target}: {exc}")
    return target


def install_main_config(directory: Optional[Path] = None) -> Path:
    return install_config(CONFIG_FILE_NAME, EMBEDDED_CONFIG, directory)


def install_all(config: Config) -> None:
    """Create the storage directories and seed the image catalog."""
    try:
        ensure_directory(config.vms_dir)
        ensure_directory(config.images.directory)
        ensure_directory(config.config_dir / URL_RESOLVERS_DIR_NAME)
    except OSError as exc:
        raise FileSystemError(f"Cannot create qemulab directories: {exc}")
    install_config(IMAGES_FILE_NAME, EMBEDDED_IMAGES, config.config_dir)
