"""
Configuration Validator
-----------------------
Strict key validation of raw configuration dictionaries against the config
dataclasses, so that a typo in a YAML file stops the run before the first bar
instead of being silently ignored.
"""

from dataclasses import fields, is_dataclass
from typing import Any, Dict, Set, Type, cast, get_type_hints

from .errors import ConfigurationError


def validate_keys(
    raw_config: Dict[str, Any], data_class: Type[Any], path: str = ""
) -> None:
    """
    Recursively checks that every key of `raw_config` is a field of `data_class`.

    Nested dataclass fields are followed depth-first; the error names the
    dotted section where the unknown key was found.

    Raises:
        ConfigurationError: If `raw_config` contains keys that `data_class`
            does not define.
    """
    allowed_fields: Set[str] = {f.name for f in fields(data_class)}
    unknown_keys = set(raw_config.keys()) - allowed_fields

    error_path = path if path else "root"
    if unknown_keys:
        raise ConfigurationError(
            error_path,
            f"Unknown keys detected at '{error_path}': {sorted(unknown_keys)}. "
            f"Allowed keys: {sorted(allowed_fields)}",
        )

    hints = get_type_hints(data_class)
    for f in fields(data_class):
        value = raw_config.get(f.name)
        hint = hints.get(f.name)
        if is_dataclass(hint) and value is not None:
            new_path = f"{path}.{f.name}" if path else f.name
            if not isinstance(value, dict):
                raise ConfigurationError(new_path, "expected a mapping")
            validate_keys(value, cast(Type[Any], hint), path=new_path)
