#!/usr/bin/env python3
"""Validate qemulab/data/images.yaml: catalog schema and URL reachability."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

from qemulab import template
from qemulab.exceptions import ManagerError
from qemulab.images import parse_catalog

IMAGES_PATH = Path(__file__).resolve().parents[2] / "qemulab" / "data" / "images.yaml"
CHECKED_ARCHES = ("x86_64", "aarch64")
URL_RE = re.compile(r"^https?://")
REQUEST_TIMEOUT = 30
USER_AGENT = "qemulab/image-validator (GitHub Actions)"


def load_catalog(path: Path):
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data) -> list[str]:
    try:
        catalog = parse_catalog(data, str(IMAGES_PATH))
    except ManagerError as exc:
        return [str(exc)]

    errors: list[str] = []
    for key, entry in catalog.items():
        if not URL_RE.match(entry.url):
            errors.append(f"[{key}] 'url' must start with http:// or https://")
        if entry.change:
            errors.append(f"[{key}] shipped entries must not carry 'change' directives")
    return errors


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def rendered_urls(key: str, entry) -> list[tuple[str, str]]:
    """Per-arch URLs; entries without an arch placeholder yield one URL."""
    if not template.PLACEHOLDER_RE.search(entry.url):
        return [(key, entry.url)]
    urls = []
    for arch in CHECKED_ARCHES:
        mapped = (entry.arch_mapping or {}).get(arch, arch)
        context = template.create_context([("arch", mapped)])
        urls.append((f"{key}/{arch}", template.render(context, entry.url, key)))
    return urls


def check_url(key: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        if resp.status_code in (403, 405):
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(data) -> tuple[int, list[str]]:
    errors: list[str] = []
    checked = 0
    for key, entry in parse_catalog(data, str(IMAGES_PATH)).items():
        for label, url in rendered_urls(key, entry):
            checked += 1
            err = check_url(label, url)
            if err:
                errors.append(err)
    return checked, errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {IMAGES_PATH}")
    data = load_catalog(IMAGES_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    print(f"  OK: {len(data)} images, all entries valid")

    print("\n=== Phase 2: URL reachability ===")
    checked, url_errors = validate_urls(data)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{checked} unreachable")
        return 1
    print(f"  OK: all {checked} URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
