"""Turn selection criteria into concrete, rendered VM definitions."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Union

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab import template
from qemulab.constants import ARCH_ALIASES
from qemulab.exceptions import (
    ConfigParseError,
    ManagerError,
    NoMatchingVMError,
    NotRunningError,
    RenderError,
    TemplateError,
)
from qemulab.models import Config, DeclaredSpec, ResolvedVM, RunningStateMode, SelectionCriteria
from qemulab.runtime import find_pid
from qemulab.specs import SpecStore, effective_spec, merge_spec, validate_spec
from qemulab.utils import host_arch, log

Probe = Callable[[ResolvedVM], Optional[int]]


class VMSelector:
    """Builder for one resolution call.

    Setters accumulate criteria; :meth:`resolve` runs the whole pipeline and
    either returns every selected VM fully rendered or raises before any
    runtime action can happen.
    """

    def __init__(self, config: Config, store: Optional[SpecStore] = None, probe: Optional[Probe] = None) -> None:
        self.config = config
        self.store = store or SpecStore(config)
        self.probe = probe or find_pid
        self.criteria = SelectionCriteria()

    def name(self, name: str) -> "VMSelector":
        self.criteria.names.add(name)
        return self

    def names(self, names: Iterable[str]) -> "VMSelector":
        self.criteria.names.update(names)
        return self

    def parents(self, parents: Iterable[str]) -> "VMSelector":
        self.criteria.parents.update(parents)
        return self

    def tags(self, tags: Iterable[str]) -> "VMSelector":
        self.criteria.tags.update(tags)
        return self

    def all(self) -> "VMSelector":
        self.criteria.all = True
        return self

    def is_all(self) -> bool:
        return self.criteria.all

    def vm_config(self, vm_config: Union[str, Dict[str, Any]]) -> "VMSelector":
        if isinstance(vm_config, str):
            try:
                vm_config = yaml.safe_load(vm_config)
            except yaml.YAMLError as exc:
                raise ConfigParseError(f"failed to parse VM config override: {exc}")
        data = validate_spec(vm_config, "override")
        self.criteria.vm_config = {k: v for k, v in data.items() if k not in ("name", "parent")}
        return self

    def minimal_vm_config(self) -> "VMSelector":
        self.criteria.minimal_vm_config = True
        return self

    def with_pid(self, mode: RunningStateMode) -> "VMSelector":
        self.criteria.running_mode = mode
        return self

    def error_on_empty(self) -> "VMSelector":
        self.criteria.error_on_empty = True
        return self

    def _candidates(self) -> List[DeclaredSpec]:
        declared = self.store.declared()
        names = self.criteria.names
        if names:
            return [spec for spec in declared if spec.name in names or spec.folded_name in names]
        if self.criteria.all:
            return declared
        return []

    def _render(self, spec: DeclaredSpec, merged: Dict[str, Any], lineage: List[str]) -> ResolvedVM:
        vm_dir = spec.vm_dir()
        arch = str(merged.get("arch") or host_arch()).lower()
        base = template.create_context(
            [
                ("name", spec.name),
                ("h_name", spec.name.replace("/", "-")),
                ("folded_name", spec.folded_name),
                ("index", spec.index),
                ("vm_dir", vm_dir),
                ("vms_dir", self.config.vms_dir),
                ("images_dir", self.config.images.directory),
                ("arch", ARCH_ALIASES.get(arch, arch)),
            ]
        )
        scalars = {
            key: str(value)
            for key, value in merged.items()
            if key not in base and isinstance(value, (str, int, float, bool))
        }
        # Plain scalars first so templated ones may refer to them.
        context = dict(base)
        context.update({key: value for key, value in scalars.items() if "{{" not in value})
        try:
            fields = dict(context)
            for key, value in sorted(scalars.items()):
                if key not in context:
                    fields[key] = template.render(context, value, f"{spec.name}.{key}")
            context = fields
            rendered = _render_value(context, merged, spec.name)
        except TemplateError as exc:
            raise RenderError(spec.name, str(exc))
        rendered["arch"] = context["arch"]
        return ResolvedVM(
            name=spec.name,
            folded_name=spec.folded_name,
            vm_dir=vm_dir,
            spec=rendered,
            lineage=lineage,
            tags=list(rendered.get("tags") or []),
            context_vars=context,
        )

    def resolve(self) -> List[ResolvedVM]:
        criteria = self.criteria
        selected = []
        for spec in self._candidates():
            merged, lineage = effective_spec(self.store, spec, criteria.minimal_vm_config)
            if criteria.vm_config:
                merged = merge_spec(merged, criteria.vm_config)
            if criteria.parents and not criteria.parents.intersection(lineage):
                continue
            if criteria.tags and not criteria.tags.intersection(merged.get("tags") or []):
                continue
            selected.append((spec, merged, lineage))

        vms = [self._render(spec, merged, lineage) for spec, merged, lineage in selected]
        vms = self._apply_running_mode(vms)
        vms.sort(key=lambda vm: vm.name)

        if criteria.error_on_empty and not vms:
            raise NoMatchingVMError()
        log("DEBUG", f"Resolved {len(vms)} VM(s): {', '.join(vm.name for vm in vms)}")
        return vms

    def _apply_running_mode(self, vms: List[ResolvedVM]) -> List[ResolvedVM]:
        mode = self.criteria.running_mode
        if mode is RunningStateMode.WITHOUT:
            return vms
        for vm in vms:
            vm.pid = self.probe(vm)
        if mode is RunningStateMode.FILTER:
            return [vm for vm in vms if vm.has_pid()]
        if mode is RunningStateMode.ERROR:
            for vm in vms:
                if not vm.has_pid():
                    raise NotRunningError(vm.name)
            return vms
        if mode is RunningStateMode.OPTION:
            return vms
        raise ManagerError(f"Unhandled running state mode: {mode}")


def _render_value(context: Dict[str, str], value: Any, what: str) -> Any:
    if isinstance(value, str):
        return template.render(context, value, what)
    if isinstance(value, dict):
        return {key: _render_value(context, item, f"{what}.{key}") for key, item in value.items()}
    if isinstance(value, list):
        return [_render_value(context, item, what) for item in value]
    return value
