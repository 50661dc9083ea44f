"""Spec file loading with validation.

All file operations enforce size limits. Every resource is validated by
the pydantic model of its kind before anything reaches the planner.

Spec files are either flat:

    resources:
      - key: main-catalog
        kind: catalog
        attributes: {...}

or wrapped Kubernetes-style (apiVersion/kind/metadata/spec) with the same
content under spec.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ParentConfig, ResourceEntry, ResourceSetSpec
from .resources import ParentRef, ResourceInstance

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _format_errors(error: ValidationError, prefix: str = "") -> list[str]:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        if prefix:
            loc = f"{prefix}.{loc}" if loc else prefix
        errors.append(f"  - {loc}: {item['msg']}")
    return errors


def _read_yaml(spec_path: Path) -> dict[str, Any]:
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
        return spec_data
    return raw_data


def load_spec(spec_path: Path) -> ResourceSetSpec:
    """Load and validate one spec file.

    Args:
        spec_path: Path of the YAML spec file.

    Returns:
        Validated resource set. Every entry's attributes passed the model of
        its kind.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    spec_data = _read_yaml(spec_path)

    try:
        spec = ResourceSetSpec.model_validate(spec_data)
    except ValidationError as e:
        error_list = "\n".join(_format_errors(e))
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    errors: list[str] = []
    for index, entry in enumerate(spec.resources):
        try:
            entry.to_spec()
        except ValidationError as e:
            errors.extend(_format_errors(e, f"resources.{index}.attributes"))
    if errors:
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}")

    logger.info("Loaded %d resource(s) from %s", len(spec.resources), spec_path)
    return spec


def load_specs(specs_dir: Path) -> ResourceSetSpec:
    """Load every *.yaml spec file of a directory into one resource set.

    Raises:
        SpecLoadError: If a file fails to load or keys collide across files.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    resources: list[ResourceEntry] = []
    origin: dict[str, Path] = {}
    for spec_path in sorted(specs_dir.glob("*.yaml")):
        for entry in load_spec(spec_path).resources:
            if entry.key in origin:
                raise SpecLoadError(
                    f"Resource key '{entry.key}' declared in both {origin[entry.key]} and {spec_path}"
                )
            origin[entry.key] = spec_path
            resources.append(entry)
    return ResourceSetSpec(resources=resources)


def _parent_ref(parent: ParentConfig | None) -> ParentRef | None:
    if parent is None:
        return None
    return ParentRef(
        kind=parent.kind, id=parent.id, name=parent.name, owner=_parent_ref(parent.owner)
    )


def to_instance(entry: ResourceEntry) -> ResourceInstance:
    """Build a ResourceInstance carrying the entry's desired attributes."""
    return ResourceInstance(
        key=entry.key,
        kind=entry.kind,
        id=entry.id or "",
        desired=entry.to_spec().to_attributes(),
        parent=_parent_ref(entry.parent),
    )
