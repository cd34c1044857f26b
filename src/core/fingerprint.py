"""Template fingerprinting (core domain).

The fingerprint is the only signal used to decide whether a synth produced
anything worth deploying, so it must be deterministic: same template bytes in
the same manifest order always give the same digest.
"""

from __future__ import annotations

import hashlib
import json
import os

from core.config import DEFAULT_ARTIFACT_TYPE, DEFAULT_MANIFEST_NAME
from core.errors import FingerprintFailure

TEMPLATE_SUFFIX = ".template.json"
SEPARATOR = b"\n"


def _load_manifest(manifest_path: str) -> dict:
    try:
        with open(manifest_path, "r", encoding="utf-8") as handle:
            manifest = json.load(handle)
    except FileNotFoundError as exc:
        raise FingerprintFailure(f"Manifest not found: {manifest_path}") from exc
    except json.JSONDecodeError as exc:
        raise FingerprintFailure(f"Manifest is not valid JSON: {manifest_path} ({exc.msg})") from exc
    except OSError as exc:
        raise FingerprintFailure(f"Manifest unreadable: {manifest_path} ({exc.strerror or exc})") from exc

    if not isinstance(manifest, dict) or not isinstance(manifest.get("artifacts"), dict):
        raise FingerprintFailure(f"Manifest has no artifacts mapping: {manifest_path}")
    return manifest


def template_paths(
    output_dir: str,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
    artifact_type: str = DEFAULT_ARTIFACT_TYPE,
) -> list[str]:
    """Return template file paths for deployable artifacts, in manifest order."""

    manifest = _load_manifest(os.path.join(output_dir, manifest_name))

    paths: list[str] = []
    for name, artifact in manifest["artifacts"].items():
        if not isinstance(artifact, dict) or artifact.get("type") != artifact_type:
            continue
        display_name = artifact.get("displayName")
        if not display_name:
            raise FingerprintFailure(f"Artifact {name} has no displayName")
        paths.append(os.path.join(output_dir, f"{display_name}{TEMPLATE_SUFFIX}"))
    return paths


def compute_fingerprint(
    output_dir: str,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
    artifact_type: str = DEFAULT_ARTIFACT_TYPE,
) -> str:
    """Return the SHA-256 hex digest of all deployable templates.

    Templates are read as raw bytes in the order the manifest lists them and
    joined with a single newline. No re-sorting happens, so a reordered
    manifest is a different fingerprint.
    """

    contents: list[bytes] = []
    for path in template_paths(output_dir, manifest_name, artifact_type):
        try:
            with open(path, "rb") as handle:
                contents.append(handle.read())
        except FileNotFoundError as exc:
            raise FingerprintFailure(f"Template not found: {path}") from exc
        except OSError as exc:
            raise FingerprintFailure(f"Template unreadable: {path} ({exc.strerror or exc})") from exc

    return hashlib.sha256(SEPARATOR.join(contents)).hexdigest()
