from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from .exceptions import EngineConfigurationError
from .pin import Secret
from .uri import MODULE_PATH_ENV


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults applied when a URI does not carry them."""

    module_path: str | None = None
    pin: Secret | None = field(default=None, repr=False)
    user_pin_env: str = "PKCS11_PIN"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        module_path = os.environ.get(MODULE_PATH_ENV) or None
        user_pin_env = os.environ.get("PKCS11_PIN_ENV", "PKCS11_PIN")

        if module_path is not None and not Path(module_path).exists():
            raise EngineConfigurationError(
                f"PKCS#11 module path does not exist: {module_path}"
            )

        pin_raw = os.environ.get(user_pin_env)
        return cls(
            module_path=module_path,
            pin=Secret(pin_raw) if pin_raw else None,
            user_pin_env=user_pin_env,
        )

    def with_module_path(self, module_path: str) -> "EngineConfig":
        if not module_path:
            raise EngineConfigurationError("module path must not be empty.")
        return replace(self, module_path=module_path)

    def with_pin(self, pin: str | bytes | Secret) -> "EngineConfig":
        secret = pin if isinstance(pin, Secret) else Secret(pin)
        if not secret:
            raise EngineConfigurationError("PIN must not be empty.")
        return replace(self, pin=secret)
