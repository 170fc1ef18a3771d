"""Core primitives for CHECKBOOK.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding
- Identity normalisation

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
- Type annotations throughout
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from typing import Any

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_digest(data: bytes) -> bytes:
    """Compute the raw 32-byte SHA-256 digest."""
    return hashlib.sha256(data).digest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def dump_yaml(path: pathlib.Path, obj: Any) -> None:
    """Write YAML file with UTF-8 encoding and stable key order."""
    pathlib.Path(path).write_text(
        yaml.safe_dump(obj, default_flow_style=False, sort_keys=True),
        encoding="utf-8",
    )


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def dump_json(path: pathlib.Path, obj: Any) -> None:
    """Write indented JSON file with UTF-8 encoding and stable key order."""
    pathlib.Path(path).write_text(
        json.dumps(obj, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for signed messages and
    derived account identities.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def strip_hex_prefix(value: str) -> str:
    """Drop a leading 0x/0X from a hex string."""
    return value[2:] if value[:2].lower() == "0x" else value


def normalize_identity(value: str) -> str:
    """Lowercase an identity and ensure the 0x prefix."""
    return "0x" + strip_hex_prefix(value.strip()).lower()
