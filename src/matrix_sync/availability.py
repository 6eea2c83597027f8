"""Runtime check for the libolm bindings behind end-to-end encryption.

matrix-nio itself is always installed; its crypto half only works when the
``e2e`` extra (python-olm) is present. The sync engine runs fine without it,
so the check never raises; ``NioCryptoClient`` turns a negative result into
``CryptoNotEnabledError``.
"""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

CheckMode = Literal["flag", "olm_import", "unchecked"]


@dataclass(frozen=True, slots=True)
class NioAvailability:
    """
    Result of checking matrix-nio.

    Attributes:
        basic: Whether matrix-nio is importable
        e2ee: Whether its Olm machine can be used
        e2ee_check_mode: How ``e2ee`` was decided
    """

    basic: bool
    e2ee: bool
    e2ee_check_mode: CheckMode

    @property
    def missing_reason(self) -> str | None:
        if not self.basic:
            return "matrix-nio is not installed"
        if not self.e2ee:
            return "matrix-nio has no libolm bindings (install matrix-sync[e2e])"
        return None


def _nio_encryption_flag() -> bool:
    try:
        import nio.crypto
    except ImportError:
        return False
    return bool(getattr(nio.crypto, "ENCRYPTION_ENABLED", False))


def _olm_importable() -> bool:
    try:
        from nio.crypto import Olm  # noqa: F401
    except ImportError:
        return False
    except Exception:
        # A broken libolm install fails with loader errors, not ImportError
        return False
    return True


@lru_cache(maxsize=2)
def check_nio_availability(*, strict_e2ee: bool = False) -> NioAvailability:
    """
    Check matrix-nio once per mode and cache the answer.

    Args:
        strict_e2ee: Import the Olm machine instead of trusting nio's flag
    """
    if importlib.util.find_spec("nio") is None:
        return NioAvailability(basic=False, e2ee=False, e2ee_check_mode="unchecked")

    if strict_e2ee:
        return NioAvailability(
            basic=True, e2ee=_olm_importable(), e2ee_check_mode="olm_import"
        )
    return NioAvailability(
        basic=True, e2ee=_nio_encryption_flag(), e2ee_check_mode="flag"
    )
