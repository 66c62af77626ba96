"""VM spec storage, name-pattern fan-out and parent cascade."""

from __future__ import annotations

import itertools
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from qemulab.config import read_yaml
from qemulab.constants import VM_SPEC_FILE_NAME
from qemulab.exceptions import ConfigParseError, CyclicParentError, UnknownParentError
from qemulab.models import Config, DeclaredSpec

SPEC_FIELDS = {
    "name",
    "parent",
    "tags",
    "description",
    "arch",
    "memory",
    "cpus",
    "image",
    "disk",
    "disk_size",
    "display",
    "net",
    "ssh",
    "cloud_init",
    "qemu_args",
    "minimal",
}
MAPPING_FIELDS = {"net", "ssh", "cloud_init"}
UNION_FIELDS = {"tags"}
# Never inherited: they describe the declaring file, not the VM.
OWN_FIELDS = {"name", "parent", "minimal"}

_BRACE_RE = re.compile(r"\{([^{}]*)\}")
_RANGE_RE = re.compile(r"^(-?\d+)\.\.(-?\d+)$")


def _brace_choices(body: str) -> Optional[List[str]]:
    match = _RANGE_RE.match(body)
    if match:
        start_raw, end_raw = match.groups()
        start, end = int(start_raw), int(end_raw)
        width = max(len(start_raw), len(end_raw)) if start_raw.startswith("0") or end_raw.startswith("0") else 0
        step = 1 if end >= start else -1
        return [str(n).zfill(width) for n in range(start, end + step, step)]
    if "," in body:
        return body.split(",")
    return None


def expand_name(pattern: str) -> List[Tuple[str, str]]:
    """Expand ``{a,b}`` and ``{1..3}`` groups into ``(name, index)`` pairs.

    Several groups expand to their cartesian product; ``index`` joins the
    chosen pieces with ``-``. Braces that are not a valid group stay literal.
    """
    parts: List[Any] = []
    position = 0
    for match in _BRACE_RE.finditer(pattern):
        choices = _brace_choices(match.group(1))
        if choices is None:
            continue
        parts.append(pattern[position:match.start()])
        parts.append(choices)
        position = match.end()
    parts.append(pattern[position:])

    groups = [part for part in parts if isinstance(part, list)]
    if not groups:
        return [(pattern, "")]

    expanded = []
    for combination in itertools.product(*groups):
        pieces = iter(combination)
        name = "".join(part if isinstance(part, str) else next(pieces) for part in parts)
        expanded.append((name, "-".join(combination)))
    return expanded


def validate_spec(data: Any, source: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigParseError(f"VM spec {source} must contain a YAML mapping")
    unknown = sorted(set(data) - SPEC_FIELDS)
    if unknown:
        raise ConfigParseError(f"VM spec {source} has unknown field(s): {', '.join(unknown)}")
    for key in MAPPING_FIELDS:
        if key in data and data[key] is not None and not isinstance(data[key], dict):
            raise ConfigParseError(f"`{key}` in VM spec {source} must be a mapping")
    for key in ("tags", "qemu_args"):
        if key in data and data[key] is not None and not isinstance(data[key], list):
            raise ConfigParseError(f"`{key}` in VM spec {source} must be a list")
    return data


def merge_spec(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay ``override`` on ``base``: set values win, unset values inherit.

    Mappings merge key by key with the same rule, ``tags`` accumulate and
    every other list is replaced whole.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if key in MAPPING_FIELDS:
            inner = dict(merged.get(key) or {})
            inner.update({k: v for k, v in value.items() if v is not None})
            merged[key] = inner
        elif key in UNION_FIELDS:
            tags = list(merged.get(key) or [])
            tags.extend(tag for tag in value if tag not in tags)
            merged[key] = tags
        else:
            merged[key] = value
    return merged


class SpecStore:
    """Name-keyed view over the VM spec files below ``vms_dir`` and config templates."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._declared: Optional[List[DeclaredSpec]] = None
        self._by_name: Dict[str, Dict[str, Any]] = {}

    def _load(self) -> List[DeclaredSpec]:
        declared: List[DeclaredSpec] = []
        origins: Dict[str, Path] = {}
        vms_dir = self.config.vms_dir
        if not vms_dir.is_dir():
            return declared
        for spec_file in sorted(vms_dir.rglob(VM_SPEC_FILE_NAME)):
            source_dir = spec_file.parent
            data = validate_spec(read_yaml(spec_file, "VM spec"), str(spec_file))
            folded = str(data.get("name") or source_dir.relative_to(vms_dir).as_posix())
            self._by_name.setdefault(folded, data)
            for name, index in expand_name(folded):
                if name in origins:
                    raise ConfigParseError(f"VM '{name}' is declared by both {origins[name]} and {spec_file}")
                origins[name] = spec_file
                declared.append(DeclaredSpec(name=name, folded_name=folded, source_dir=source_dir, data=data, index=index))
                self._by_name.setdefault(name, data)
        declared.sort(key=lambda spec: spec.name)
        return declared

    def declared(self) -> List[DeclaredSpec]:
        if self._declared is None:
            self._declared = self._load()
        return list(self._declared)

    def lookup(self, name: str) -> Optional[Dict[str, Any]]:
        self.declared()
        if name in self._by_name:
            return self._by_name[name]
        template = self.config.templates.get(name)
        if template is not None:
            return validate_spec(template, f"template '{name}'")
        return None


def effective_spec(store: SpecStore, spec: DeclaredSpec, minimal: bool = False) -> Tuple[Dict[str, Any], List[str]]:
    """Merge ``spec`` with its parent chain; return the result and the lineage.

    The chain is walked by name with a visited set so a loop raises
    ``CyclicParentError`` instead of recursing forever. The lineage lists
    parent names nearest first.
    """
    chain = [spec.data]
    lineage: List[str] = []
    visited = {spec.name, spec.folded_name}
    trail = [spec.name]
    current = spec.data
    while current.get("parent"):
        parent = str(current["parent"])
        trail.append(parent)
        if parent in visited:
            raise CyclicParentError(trail)
        visited.add(parent)
        data = store.lookup(parent)
        if data is None:
            raise UnknownParentError(trail[-2], parent)
        lineage.append(parent)
        chain.append(data)
        current = data

    minimal = minimal or bool(spec.data.get("minimal"))
    merged: Dict[str, Any] = {}
    if not minimal:
        chain.append(validate_spec(store.config.default, "config `default`"))
    for data in reversed(chain):
        merged = merge_spec(merged, {k: v for k, v in data.items() if k not in OWN_FIELDS})
    return merged, lineage


def spec_file(vms_dir: Path, name: str) -> Path:
    return vms_dir / name / VM_SPEC_FILE_NAME
