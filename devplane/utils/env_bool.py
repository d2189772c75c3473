from typing import Any, Optional

_TRUTHY = {"y", "yes", "t", "true", "on", "1"}
_FALSY = {"n", "no", "f", "false", "off", "0"}


def env_to_bool(value: Optional[Any], default: bool = False) -> bool:
    """Convert string/int/boolean environment values to a proper bool.

    Accepts 'true', 'false', '1', '0', 'yes', 'no', 'on', 'off' regardless of
    case. ``None``, empty strings and unparsable values yield ``default``.
    """
    if isinstance(value, bool):
        return value

    if value in (None, ""):
        return default

    normalized = str(value).strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    return default
