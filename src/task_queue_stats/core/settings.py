from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any

import yaml
from jsonschema import validate

from .utils import ENV_PREFIX, env_int, read_json, resolve_env_placeholders

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "schemas"
SETTINGS_SCHEMA = SCHEMA_DIR / "settings.schema.json"


def load_settings(path: str | Path | None) -> dict[str, Any]:
    if not path:
        return {}
    path = Path(path)
    content = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file must contain a mapping: {path}")
    return data


def _apply_env_overrides(settings: dict[str, Any]) -> dict[str, Any]:
    threshold = env_int(f"{ENV_PREFIX}THRESHOLD")
    if threshold is not None:
        settings["threshold"] = threshold
    token = os.environ.get(f"{ENV_PREFIX}TOKEN", "").strip()
    if token:
        settings.setdefault("fetch", {})
        if isinstance(settings["fetch"], dict) and not settings["fetch"].get("token"):
            settings["fetch"]["token"] = token
    return settings


def resolve_settings(
    raw: dict[str, Any] | None = None, schema_path: Path = SETTINGS_SCHEMA
) -> dict[str, Any]:
    """Resolve env placeholders and overrides, apply schema defaults, validate.

    Raises jsonschema.ValidationError for invalid settings.
    """

    settings = resolve_env_placeholders(copy.deepcopy(raw or {}))
    settings = _apply_env_overrides(settings)
    schema = read_json(schema_path)
    resolved = _apply_jsonschema_defaults(schema, settings)
    validate(instance=resolved, schema=schema)
    return resolved


def _apply_jsonschema_defaults(schema: Any, instance: Any) -> Any:
    """Recursively apply `default` values from a JSONSchema into `instance`.

    Handles object properties and array item schemas, which is all the
    settings schema uses.
    """

    if not isinstance(schema, dict):
        return instance

    if instance is None and "default" in schema:
        instance = copy.deepcopy(schema["default"])

    schema_type = schema.get("type")
    if schema_type == "object" and isinstance(instance, dict):
        props = schema.get("properties") or {}
        for key in sorted(props.keys()):
            prop_schema = props.get(key)
            if key not in instance:
                if isinstance(prop_schema, dict) and "default" in prop_schema:
                    instance[key] = copy.deepcopy(prop_schema["default"])
            if key in instance:
                instance[key] = _apply_jsonschema_defaults(prop_schema, instance[key])

    if schema_type == "array" and isinstance(instance, list):
        items_schema = schema.get("items")
        if isinstance(items_schema, dict):
            for idx, value in enumerate(list(instance)):
                instance[idx] = _apply_jsonschema_defaults(items_schema, value)

    return instance
