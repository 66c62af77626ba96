"""Base image catalog: loading, upgrade merge, freshness and download."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab import template
from qemulab.constants import CATALOG_FIELDS, EMBEDDED_IMAGES_HEADER, SECONDS_PER_DAY, URL_RESOLVERS_DIR_NAME
from qemulab.exceptions import (
    CatalogParseError,
    CatalogReadError,
    CatalogWriteError,
    FileSystemError,
    ImageNotFound,
    ManagerError,
    TemplateError,
    UnknownImage,
)
from qemulab.models import CatalogEntry, Directives, ImagesConfig
from qemulab.utils import download_file, ensure_directory, host_arch, log, run

_ENTRY_KEYS = set(CATALOG_FIELDS)


class Image:
    """A catalog entry bound to the local image directory settings."""

    def __init__(
        self,
        name: str,
        entry: CatalogEntry,
        config: ImagesConfig,
        resolvers_dir: Optional[Path] = None,
        arch: Optional[str] = None,
    ) -> None:
        self.name = name
        self.description = entry.description
        self.get_url_prog = entry.get_url_prog
        self.update_after_days = entry.update_after_days
        self.config = config
        self.resolvers_dir = resolvers_dir

        arch = arch or host_arch()
        if entry.arch_mapping and arch in entry.arch_mapping:
            arch = entry.arch_mapping[arch]
        context = template.create_context([("arch", arch)])
        try:
            self._url = template.render(context, entry.url, "read image url")
        except TemplateError:
            self._url = entry.url

    def __repr__(self) -> str:
        return f"Image(name={self.name!r}, url={self._url!r})"

    def __str__(self) -> str:
        return self.name

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Image) and self.name == other.name

    def __lt__(self, other: "Image") -> bool:
        return self.name < other.name

    def __hash__(self) -> int:
        return hash(self.name)

    @property
    def path(self) -> Path:
        return self.config.directory / self.name

    def exists(self) -> bool:
        return self.path.is_file()

    def outdated(self, now: Optional[float] = None) -> bool:
        """True when the local file is older than the freshness threshold.

        A missing or unreadable file is never reported as outdated.
        """
        days = self.update_after_days
        if days is None:
            days = self.config.update_after_days
        if days is None:
            return False
        try:
            modified = self.path.stat().st_mtime
        except OSError:
            return False
        age = (time.time() if now is None else now) - modified
        if age < 0:
            return False
        return age > days * SECONDS_PER_DAY

    def url(self) -> str:
        """Catalog URL, or the output of the entry's URL resolver program."""
        if not self.get_url_prog:
            return self._url
        prog = Path(self.get_url_prog).expanduser()
        if not prog.is_absolute() and self.resolvers_dir is not None:
            prog = self.resolvers_dir / prog
        try:
            result = run([str(prog), self.name], check=False, capture_output=True)
        except (ManagerError, OSError) as exc:
            log("WARN", f"URL resolver {prog} for image '{self.name}' failed: {exc}")
            return self._url
        output = (result.stdout or "").strip()
        if result.returncode != 0:
            log("WARN", f"URL resolver {prog} for image '{self.name}' exited with {result.returncode}")
            return self._url
        return output or self._url

    def pull(self) -> Path:
        url = self.url()
        ensure_directory(self.config.directory)
        log("INFO", f"Downloading image {self.name} {url}")
        download_file(url, self.path, label=f"Downloading {self.name}")
        return self.path


class Images:
    """Name-sorted collection of catalog images."""

    def __init__(self, images: Optional[Dict[str, Image]] = None) -> None:
        self._images = dict(sorted((images or {}).items()))

    def __iter__(self) -> Iterator[Image]:
        return iter(self._images.values())

    def __len__(self) -> int:
        return len(self._images)

    def __contains__(self, name: object) -> bool:
        return name in self._images

    def filter(self, predicate: Callable[[Image], bool]) -> "Images":
        return Images({name: image for name, image in self._images.items() if predicate(image)})

    def exists(self) -> "Images":
        return self.filter(lambda image: image.exists())

    def outdated(self) -> "Images":
        return self.filter(lambda image: image.outdated())

    def names(self) -> List[str]:
        return list(self._images)

    def get(self, name: str) -> Optional[Image]:
        return self._images.get(name)

    def get_result(self, name: str) -> Image:
        image = self._images.get(name)
        if image is None:
            raise UnknownImage(f"Unknown image '{name}'")
        return image


def parse_directives(change: Sequence[str]) -> Directives:
    keep = set()
    update = set()
    for directive in change:
        if directive.startswith("keep-") and directive[5:] in _ENTRY_KEYS:
            keep.add(directive[5:])
        elif directive.startswith("update-") and directive[7:] in _ENTRY_KEYS:
            update.add(directive[7:])
    return Directives(
        delete="delete" in change,
        update_all="update-all" in change,
        keep=frozenset(keep),
        update=frozenset(update),
    )


def parse_catalog(data: Any, source: str) -> Dict[str, CatalogEntry]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise CatalogParseError(f"failed to parse images file `{source}`: expected a mapping of images")
    catalog: Dict[str, CatalogEntry] = {}
    for name, raw in data.items():
        if not isinstance(raw, dict):
            raise CatalogParseError(f"failed to parse images file `{source}`: image '{name}' is not a mapping")
        unknown = sorted(set(raw) - _ENTRY_KEYS)
        if unknown:
            raise CatalogParseError(
                f"failed to parse images file `{source}`: image '{name}' has unknown field(s) {', '.join(unknown)}"
            )
        if not isinstance(raw.get("url"), str):
            raise CatalogParseError(f"failed to parse images file `{source}`: image '{name}' needs a string `url`")
        change = raw.get("change") or []
        if not isinstance(change, list) or not all(isinstance(item, str) for item in change):
            raise CatalogParseError(
                f"failed to parse images file `{source}`: `change` of image '{name}' must be a list of strings"
            )
        for key in ("description", "get-url-prog"):
            if raw.get(key) is not None and not isinstance(raw[key], str):
                raise CatalogParseError(
                    f"failed to parse images file `{source}`: `{key}` of image '{name}' must be a string"
                )
        days = raw.get("update-after-days")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days < 0):
            raise CatalogParseError(
                f"failed to parse images file `{source}`: `update-after-days` of image '{name}' "
                "must be a non-negative integer"
            )
        mapping = raw.get("arch-mapping")
        if mapping is not None and (
            not isinstance(mapping, dict)
            or not all(isinstance(k, str) and isinstance(v, str) for k, v in mapping.items())
        ):
            raise CatalogParseError(
                f"failed to parse images file `{source}`: `arch-mapping` of image '{name}' "
                "must map architecture names to strings"
            )
        catalog[str(name)] = CatalogEntry.from_dict(raw)
    return catalog


def read_catalog(path: Path) -> Dict[str, CatalogEntry]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogReadError(f"failed to read images file `{path}`: {exc}")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CatalogParseError(f"failed to parse images file `{path}`: {exc}")
    return parse_catalog(data, str(path))


def _merge_entry(new: CatalogEntry, old: CatalogEntry) -> CatalogEntry:
    directives = parse_directives(old.change)
    merged: Dict[str, Any] = {}
    for field_name in CATALOG_FIELDS:
        attr = field_name.replace("-", "_")
        source = new if directives.takes_new(field_name) else old
        merged[attr] = getattr(source, attr)
    return CatalogEntry(**merged)


def merge_catalogs(new: Dict[str, CatalogEntry], old: Dict[str, CatalogEntry]) -> Dict[str, CatalogEntry]:
    """Merge the upstream catalog ``new`` into the local catalog ``old``.

    Both sides are walked in name order with two cursors. A name only in
    ``old`` survives unless it carries ``delete``; a name only in ``new`` is
    added as is; a name on both sides keeps each old field unless the old
    entry's directives ask for the new one (``update-all`` minus
    ``keep-<field>``, or ``update-<field>``).
    """
    new_items = sorted(new.items())
    old_items = sorted(old.items())
    merged: Dict[str, CatalogEntry] = {}
    i = j = 0
    while i < len(new_items) or j < len(old_items):
        if j >= len(old_items) or (i < len(new_items) and new_items[i][0] < old_items[j][0]):
            name, entry = new_items[i]
            merged[name] = entry
            i += 1
        elif i >= len(new_items) or old_items[j][0] < new_items[i][0]:
            name, entry = old_items[j]
            if not parse_directives(entry.change).delete:
                merged[name] = entry
            j += 1
        else:
            name = old_items[j][0]
            merged[name] = _merge_entry(new_items[i][1], old_items[j][1])
            i += 1
            j += 1
    return merged


def dump_catalog(catalog: Dict[str, CatalogEntry]) -> str:
    data = {name: entry.to_dict() for name, entry in catalog.items()}
    return yaml.safe_dump(data, sort_keys=True, default_flow_style=False, allow_unicode=True)


def synchronize(embedded: bytes, catalog_path: Path, header: Optional[bytes] = None) -> Dict[str, CatalogEntry]:
    """Merge the embedded catalog into the local file and rewrite it."""
    try:
        new = parse_catalog(yaml.safe_load(embedded), "<embedded>")
    except yaml.YAMLError as exc:
        raise CatalogParseError(f"Bad embedded images catalog: {exc}")
    old = read_catalog(catalog_path)
    merged = merge_catalogs(new, old)
    if header is None:
        header = EMBEDDED_IMAGES_HEADER.read_bytes()
    try:
        with open(catalog_path, "wb") as f:
            f.write(header)
            f.write(dump_catalog(merged).encode("utf-8"))
    except OSError as exc:
        raise CatalogWriteError(f"failed to write images file `{catalog_path}`: {exc}")
    log("SUCCESS", f"Updated {catalog_path} ({len(merged)} images)")
    return merged


def available(config: ImagesConfig, catalog_path: Path, resolvers_dir: Optional[Path] = None) -> Images:
    if resolvers_dir is None:
        resolvers_dir = catalog_path.parent / URL_RESOLVERS_DIR_NAME
    catalog = read_catalog(catalog_path)
    return Images({name: Image(name, entry, config, resolvers_dir) for name, entry in catalog.items()})


def list_images(dirs: Sequence[Path]) -> List[str]:
    """Sorted, de-duplicated file names across ``dirs``."""
    names = set()
    for directory in dirs:
        try:
            entries = os.listdir(directory)
        except OSError as exc:
            raise FileSystemError(f"Cannot list images directory {directory}: {exc}")
        names.update(name for name in entries if not name.startswith("."))
    return sorted(names)


def path(directory: Path, name: str) -> Path:
    image_path = directory / name
    if image_path.is_file():
        return image_path
    raise ImageNotFound(f"Image '{name}' does not exist in {directory}")


def find(dirs: Sequence[Path], name: str) -> Path:
    """Return the image file from the first directory that has it."""
    for directory in dirs:
        image_path = directory / name
        if image_path.is_file():
            return image_path
    raise ImageNotFound(f"Image '{name}' does not exist")


def remove(directory: Path, name: str) -> None:
    image_path = directory / name
    try:
        image_path.unlink()
    except FileNotFoundError:
        raise FileSystemError(f"Image '{name}' does not exist in {directory}")
    except OSError as exc:
        raise FileSystemError(f"Cannot remove image {image_path}: {exc}")
    log("INFO", f"Removed image {image_path}")


def pull_outdated(images: Images) -> List[Path]:
    """Re-download every image that is present on disk but outdated."""
    pulled = []
    for image in images.exists().outdated():
        pulled.append(image.pull())
    return pulled
