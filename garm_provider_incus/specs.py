"""
Extra specs: free-form per-pool options validated against a fixed schema.

Example pool extra specs:

.. code-block:: json

    {
        "extra_packages": ["openssh-server", "jq"],
        "disable_updates": true,
        "enable_boot_debug": false
    }
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Dict, List

import jsonschema

from garm_provider_incus.errors import SchemaError

BASE64_PATTERN = r"^[A-Za-z0-9+/]*={0,2}$"

EXTRA_SPECS_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "extra_packages": {
            "type": "array",
            "title": "extra packages",
            "description": "A list of packages that cloud-init should install on the instance.",
            "items": {"type": "string"},
        },
        "disable_updates": {
            "type": "boolean",
            "title": "disable updates",
            "description": "Whether to disable updates when cloud-init comes online.",
        },
        "enable_boot_debug": {
            "type": "boolean",
            "title": "enable boot debug",
            "description": "Allows providers to set the -x flag in the runner install script.",
        },
        "runner_install_template": {
            "type": "string",
            "description": "Base64 encoded runner install template.",
            "pattern": BASE64_PATTERN,
        },
        "pre_install_scripts": {
            "type": "object",
            "description": "Base64 encoded scripts run before the runner install script.",
            "additionalProperties": {"type": "string", "pattern": BASE64_PATTERN},
        },
        "extra_context": {
            "type": "object",
            "description": "Extra values made available to the install template.",
            "additionalProperties": {"type": "string"},
        },
    },
    "additionalProperties": False,
}


@dataclass
class ExtraSpecs:
    extra_packages: List[str] = field(default_factory=list)
    disable_updates: bool = False
    enable_boot_debug: bool = False
    runner_install_template: str = ""
    pre_install_scripts: Dict[str, bytes] = field(default_factory=dict)
    extra_context: Dict[str, str] = field(default_factory=dict)


def _format_error(error):
    path = ".".join(str(p) for p in error.absolute_path)
    if path:
        return f"{path}: {error.message}"
    return error.message


def json_schema_validation(data):
    """
    Validate decoded extra specs against EXTRA_SPECS_SCHEMA.

    All violations are reported, each prefixed with the offending field.
    """
    validator = jsonschema.Draft7Validator(EXTRA_SPECS_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        raise SchemaError(
            "schema validation failed: [" + "; ".join(_format_error(e) for e in errors) + "]"
        )


def _b64decode(value, name):
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SchemaError(f"failed to decode {name}: {e}") from e


def _b64decode_text(value, name):
    try:
        return _b64decode(value, name).decode("utf-8")
    except UnicodeDecodeError as e:
        raise SchemaError(f"failed to decode {name}: {e}") from e


def parse_extra_specs(raw):
    """
    Parse the ``extra_specs`` field of a bootstrap request.

    :param raw: None, a decoded JSON object, or JSON text/bytes
    :return: ExtraSpecs
    """
    if raw is None:
        return ExtraSpecs()

    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SchemaError(f"failed to validate extra specs: {e}") from e

    try:
        json_schema_validation(raw)
    except SchemaError as e:
        raise SchemaError(f"failed to validate extra specs: {e}") from e

    return ExtraSpecs(
        extra_packages=list(raw.get("extra_packages") or []),
        disable_updates=raw.get("disable_updates", False),
        enable_boot_debug=raw.get("enable_boot_debug", False),
        runner_install_template=_b64decode_text(raw.get("runner_install_template", ""), "runner_install_template"),
        pre_install_scripts={
            name: _b64decode(script, f"pre_install_scripts.{name}")
            for name, script in (raw.get("pre_install_scripts") or {}).items()
        },
        extra_context=dict(raw.get("extra_context") or {}),
    )
