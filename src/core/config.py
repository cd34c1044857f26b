"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core and adapters expect so the app layer can build them safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_MANIFEST_NAME = "manifest.json"
DEFAULT_ARTIFACT_TYPE = "aws:cloudformation:stack"


@dataclass(frozen=True)
class FingerprintConfig:
    """Where the synth manifest lives and which artifacts count as templates."""

    manifest_name: str = DEFAULT_MANIFEST_NAME
    artifact_type: str = DEFAULT_ARTIFACT_TYPE


@dataclass(frozen=True)
class StageCommands:
    """Argument lists for the external build, synth and deploy commands.

    Any argument may contain the ``{output}`` placeholder, which adapters
    replace with the synth output directory. An empty build command means the
    project has nothing to compile before synth.
    """

    build: list[str] = field(default_factory=list)
    synth: list[str] = field(default_factory=list)
    deploy: list[str] = field(default_factory=list)
