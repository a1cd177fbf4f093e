"""Small shared helpers: attrs validators, platform and executable lookup."""

import shutil
import sys
from typing import Optional


def getype_validator(dtype, min_):
    """Return an attrs validator checking type and a lower bound."""
    def _validator(instance, attribute, value):
        if not isinstance(value, dtype) or isinstance(value, bool):
            raise TypeError(
                f"{attribute.name} must be of type {dtype.__name__}, got "
                f"{type(value).__name__}"
            )
        if value < min_:
            raise ValueError(
                f"{attribute.name} must be >= {min_}, got {value}"
            )
    return _validator


def opt_getype_validator(dtype, min_):
    """As :func:`getype_validator`, but also accepts ``None``."""
    inner = getype_validator(dtype, min_)

    def _validator(instance, attribute, value):
        if value is None:
            return
        inner(instance, attribute, value)
    return _validator


def is_windows() -> bool:
    """Return ``True`` when running on Windows."""
    return sys.platform.startswith("win")


def shared_library_extension() -> str:
    """Return the platform's shared library file extension."""
    return "dll" if is_windows() else "so"


def find_exe(name: str) -> Optional[str]:
    """Return the absolute path of executable ``name`` on ``PATH``."""
    return shutil.which(name)
