from __future__ import annotations

import os
from typing import Callable, List, Optional, TypeVar

from dotenv import load_dotenv

# Load .env once on import.
load_dotenv()

TRUTHY = frozenset({"1", "true", "yes", "y", "on", "t"})

N = TypeVar("N", int, float)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


def _env_bool(name: str, default: bool = False) -> bool:
    return _env_str(name, str(default)).lower() in TRUTHY


def _env_csv(name: str, default: str = "") -> List[str]:
    """Comma separated list with blanks dropped, e.g. CORS origins."""
    return [part.strip() for part in _env_str(name, default).split(",") if part.strip()]


def _testing() -> bool:
    return _env_bool("TESTING", False)


def _env_number(name: str, default: N, cast: Callable[[str], N], test_default: Optional[N]) -> N:
    """
    Numeric env var. Under TESTING=true the value comes from ``TEST_<NAME>``
    first, then ``test_default``, and only then from ``<NAME>``.
    """
    if _testing():
        override = _env_str(f"TEST_{name}")
        if override:
            return cast(override)
        if test_default is not None:
            return cast(str(test_default))
    return cast(_env_str(name, str(default)))


def _env_int(name: str, default: int = 0, *, test_default: Optional[int] = None) -> int:
    return _env_number(name, default, int, test_default)


def _env_float(name: str, default: float = 0.0, *, test_default: Optional[float] = None) -> float:
    return _env_number(name, default, float, test_default)
