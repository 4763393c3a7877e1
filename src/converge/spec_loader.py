"""Declaration file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES
from .graph import SchemaError
from .models import DeclarationDocument

logger = logging.getLogger(__name__)

DECLARATION_SUFFIXES = (".yaml", ".yml")


class DeclarationLoadError(SchemaError):
    """Raised when a declaration file cannot be read or fails validation."""

    pass


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {path}:\n{error_list}"


def _read_document(path: Path) -> dict[str, Any]:
    """Read one YAML file and return its declaration mapping."""
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise DeclarationLoadError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}

    if not isinstance(raw_data, dict):
        raise DeclarationLoadError(f"Declaration file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise DeclarationLoadError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def load_document(path: Path) -> DeclarationDocument:
    """Load and validate a single declaration file.

    Args:
        path: YAML file to load.

    Returns:
        Validated declaration document.

    Raises:
        DeclarationLoadError: If the file cannot be loaded or fails validation.
    """
    data = _read_document(path)
    try:
        return DeclarationDocument.model_validate(data)
    except ValidationError as e:
        raise DeclarationLoadError(_format_validation_error(path, e)) from e


def discover_files(path: Path) -> list[Path]:
    """List declaration files under a path in a stable order.

    Args:
        path: A declaration file or a directory of declaration files.

    Returns:
        Sorted list of files.

    Raises:
        DeclarationLoadError: If the path does not exist or holds no declarations.
    """
    if not path.exists():
        raise DeclarationLoadError(f"Declarations not found: {path}")

    if path.is_file():
        return [path]

    files = sorted(
        p for p in path.iterdir() if p.is_file() and p.suffix.lower() in DECLARATION_SUFFIXES
    )
    if not files:
        raise DeclarationLoadError(f"No declaration files (*.yaml, *.yml) in {path}")
    return files


def load_declarations(path: Path) -> DeclarationDocument:
    """Load every declaration file under a path and merge them.

    Resources from all files are concatenated. A resource identity or external
    source name declared in two files is reported with both files; duplicates
    within one file are left to the graph builder, which reports their count.

    Args:
        path: A declaration file or a directory of declaration files.

    Returns:
        The merged declaration document.

    Raises:
        DeclarationLoadError: If any file fails to load, or resources or external
            sources clash across files.
    """
    merged = DeclarationDocument()
    source_origin: dict[str, Path] = {}
    resource_origin: dict[tuple[str, str], Path] = {}

    for file_path in discover_files(path):
        document = load_document(file_path)

        for name, source in document.external.items():
            if name in source_origin:
                raise DeclarationLoadError(
                    f"External source '{name}' declared in both "
                    f"{source_origin[name]} and {file_path}"
                )
            source_origin[name] = file_path
            merged.external[name] = source

        for resource in document.resources:
            origin = resource_origin.setdefault((resource.type, resource.name), file_path)
            if origin != file_path:
                raise DeclarationLoadError(
                    f"Resource '{resource.type}.{resource.name}' declared in both "
                    f"{origin} and {file_path}"
                )
        merged.resources.extend(document.resources)

        logger.debug(
            "Loaded declaration file",
            extra={
                "path": str(file_path),
                "resources": len(document.resources),
                "external_sources": len(document.external),
            },
        )

    logger.info(
        "Loaded declarations from %s",
        path,
        extra={
            "resources": len(merged.resources),
            "external_sources": len(merged.external),
        },
    )
    return merged
