"""JSON Schema-based validation for the dnsoverlay YAML configuration.

The schema is kept in-module so validation works from an installed wheel
without locating data files.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

logger = logging.getLogger(__name__)

_HOST_PORT = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "object",
            "properties": {
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
            "required": ["host"],
            "additionalProperties": False,
        },
    ]
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "dnsoverlay configuration",
    "type": "object",
    "properties": {
        "listen": {
            "type": "object",
            "properties": {
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
            },
            "additionalProperties": False,
        },
        "upstream": _HOST_PORT,
        "timeout_ms": {"type": "integer", "minimum": 1},
        "enabled": {"type": "boolean"},
        "storage": {
            "type": "object",
            "properties": {
                "backend": {"enum": ["memory", "sqlite"]},
                "db_path": {"type": "string", "minLength": 1},
            },
            "additionalProperties": False,
        },
        "domains": {
            "type": ["object", "null"],
            "additionalProperties": {"type": "string", "format": "ipv4"},
        },
        "logging": {
            "type": ["object", "null"],
            "properties": {
                "level": {
                    "enum": ["debug", "info", "warn", "warning", "error", "crit", "critical"]
                },
                "stderr": {"type": "boolean"},
                "file": {"type": ["string", "null"]},
                "syslog": {"type": ["boolean", "object"]},
            },
            "additionalProperties": False,
        },
        "webserver": {
            "type": ["object", "null"],
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "auth": {
                    "type": "object",
                    "properties": {
                        "mode": {"enum": ["none", "token"]},
                        "token": {"type": ["string", "null"]},
                    },
                    "additionalProperties": False,
                },
            },
            "additionalProperties": False,
        },
    },
    "required": ["upstream"],
    "additionalProperties": False,
}


def _format_error_path(path) -> str:  # type: ignore[no-untyped-def]
    parts = [str(p) for p in path]
    return "config." + ".".join(parts) if parts else "config"


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Validate a parsed configuration mapping against the schema.

    Inputs:
      - cfg: Parsed YAML mapping.
      - schema: Optional override schema (tests); defaults to CONFIG_SCHEMA.
      - config_path: Optional path used in error messages.

    Outputs:
      - None.

    Raises:
      - ValueError: listing every validation error, one per line.
    """

    validator = Draft202012Validator(
        schema or CONFIG_SCHEMA, format_checker=Draft202012Validator.FORMAT_CHECKER
    )
    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if not errors:
        return

    where = f" ({config_path})" if config_path else ""
    lines: List[str] = [f"Invalid configuration{where}:"]
    for err in errors:
        lines.append(f"  - {_format_error_path(err.path)}: {err.message}")
    logger.debug("Config validation failed with %d error(s)", len(errors))
    raise ValueError("\n".join(lines))
