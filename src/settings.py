"""Static configuration for stackwatch.

All user-editable settings (commands, output directory, watch filters,
logging) live in a single JSON file next to the CDK project so they can be
edited without touching Python.
"""

import json
import os

from core.config import DEFAULT_ARTIFACT_TYPE, DEFAULT_MANIFEST_NAME

# The config file defaults to the working directory; STACKWATCH_CONFIG points
# elsewhere when the watcher is started from outside the project.
CONFIG_PATH = os.path.abspath(os.getenv("STACKWATCH_CONFIG", "stackwatch.json"))
CONFIG_DIR = os.path.dirname(CONFIG_PATH)


def _load_json_config() -> dict:
    """Load stackwatch.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        config = json.load(handle)
    if not isinstance(config, dict):
        raise ValueError(f"Config root must be an object: {CONFIG_PATH}")
    return config


def _resolve(path: str, base: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(base, path))


def _command(raw, default: list[str]) -> list[str]:
    if raw is None:
        return list(default)
    if not isinstance(raw, list) or not all(isinstance(arg, str) for arg in raw):
        raise ValueError("commands.* must be lists of strings")
    return list(raw)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Project root is watched and used as the working directory for every command.
ROOT = _resolve(_CONFIG.get("root", "."), CONFIG_DIR)

# Synth output directory; its manifest is fingerprinted after every synth and
# once at startup to establish the deployed baseline.
OUTPUT = _CONFIG.get("output", "cdk.out")
OUTPUT_DIR = _resolve(OUTPUT, ROOT)

# Stage commands. "{output}" in any argument is replaced with OUTPUT_DIR.
_commands = _CONFIG.get("commands", {})
BUILD_COMMAND = _command(_commands.get("build"), [])
SYNTH_COMMAND = _command(_commands.get("synth"), ["npx", "cdk", "synth", "--output", "{output}"])
DEPLOY_COMMAND = _command(
    _commands.get("deploy"),
    ["npx", "cdk", "deploy", "--app", "{output}", "--all", "--require-approval", "never"],
)

# Extra environment for the stage commands (e.g. AWS_PROFILE).
COMMAND_ENV = {str(k): str(v) for k, v in _CONFIG.get("env", {}).items()}

# Which manifest entries count as deployable templates.
_fingerprint = _CONFIG.get("fingerprint", {})
MANIFEST_NAME = _fingerprint.get("manifest", DEFAULT_MANIFEST_NAME)
ARTIFACT_TYPE = _fingerprint.get("artifact_type", DEFAULT_ARTIFACT_TYPE)

# Paths under ROOT that never count as changes. The synth output is always
# ignored, otherwise every synth would trigger the next build.
_watch = _CONFIG.get("watch", {})
WATCH_IGNORE = list(_watch.get("ignore", [".git", "node_modules", "__pycache__", "*.swp", "*~"]))
_output_relative = os.path.relpath(OUTPUT_DIR, ROOT).replace(os.sep, "/")
if _output_relative not in WATCH_IGNORE:
    WATCH_IGNORE.append(_output_relative)

# Seconds of quiet after the last file event before a change is reported.
WATCH_DEBOUNCE = float(_watch.get("debounce", 0.2))

# Deploy automatically whenever synth output differs from what is deployed.
_deploy = _CONFIG.get("deploy", {})
AUTO_DEPLOY = bool(_deploy.get("auto", False))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
