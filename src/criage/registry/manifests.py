# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Manifest files: criage.yaml (package manifest) and build.json (build manifest).
"""

import json
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from criage.core.config import BUILD_MANIFEST_FILENAME, MANIFEST_FILENAME
from criage.core.errors import NotFoundError, ValidationError
from criage.models import BuildManifest, PackageManifest


def load_manifest(directory: Union[str, Path]) -> PackageManifest:
    """
    Load criage.yaml from a package directory.

    Raises:
        NotFoundError: No manifest in the directory
        ValidationError: Manifest is not valid YAML or misses required fields
    """
    path = Path(directory) / MANIFEST_FILENAME
    if not path.exists():
        raise NotFoundError("Manifest", str(path))

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return PackageManifest.model_validate(data)
    except (yaml.YAMLError, PydanticValidationError) as e:
        raise ValidationError(f"Invalid manifest {path}: {e}", field=MANIFEST_FILENAME)


def save_manifest(directory: Union[str, Path], manifest: PackageManifest) -> Path:
    path = Path(directory) / MANIFEST_FILENAME
    data = manifest.model_dump(mode="json", exclude_none=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def load_build_manifest(directory: Union[str, Path]) -> Optional[BuildManifest]:
    """
    Load build.json if the project has one.

    Raises:
        ValidationError: build.json exists but cannot be parsed
    """
    path = Path(directory) / BUILD_MANIFEST_FILENAME
    if not path.exists():
        return None

    try:
        return BuildManifest.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (ValueError, PydanticValidationError) as e:
        raise ValidationError(f"Invalid build manifest {path}: {e}", field=BUILD_MANIFEST_FILENAME)


def save_build_manifest(directory: Union[str, Path], manifest: BuildManifest) -> Path:
    path = Path(directory) / BUILD_MANIFEST_FILENAME
    path.write_text(manifest.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
    return path
