"""
PIN acquisition for token login.

Sources are consulted in a fixed order and the first one that yields a value
wins: the literal ``pin-value`` of the URI, the first line of the
``pin-source=file:`` file, a PIN set on the engine beforehand, and finally an
interactive prompt.
"""

from __future__ import annotations

import getpass
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Union

from .exceptions import SecretUnavailableError

if TYPE_CHECKING:
    from .uri import ParseContext, SelectionCriteria

_logger = logging.getLogger("pkcs11_engine.pin")

# Longest line accepted from a pin-source file.
MAX_PIN_FILE_LINE = 255

PinPrompt = Callable[[str], Union[str, bytes, None]]


class Secret:
    """Opaque PIN bytes. The value is never shown by repr() or str()."""

    __slots__ = ("_value",)

    def __init__(self, value: bytes | str) -> None:
        self._value = value.encode("utf-8") if isinstance(value, str) else bytes(value)

    @property
    def value(self) -> bytes:
        return self._value

    def as_text(self) -> str:
        return self._value.decode("utf-8")

    def __len__(self) -> int:
        return len(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return "Secret(<redacted>)"

    __str__ = __repr__


def read_first_line(path: str | Path) -> bytes | None:
    """Return the first line of ``path`` without its newline, or None if unreadable."""
    try:
        with Path(path).open("rb") as handle:
            line = handle.readline(MAX_PIN_FILE_LINE)
    except OSError as exc:
        _logger.debug("Can't read PIN from %s: %s", path, exc)
        return None
    if not line:
        return None
    return line.split(b"\n", 1)[0]


def console_prompt(prompt_info: str) -> str | None:
    try:
        return getpass.getpass(f"Enter PIN for {prompt_info}: ")
    except (EOFError, KeyboardInterrupt):
        _logger.debug("PIN prompt interrupted.")
        return None


def login_required(context: "ParseContext", criteria: "SelectionCriteria") -> bool:
    from .uri import ObjectType, ParseContext

    if context is ParseContext.DIRECT_KEY:
        return True
    return criteria.type is ObjectType.PRIVATE


def _prompt_for_pin(prompt: PinPrompt, prompt_info: str) -> Secret:
    try:
        answer = prompt(prompt_info)
    except (EOFError, KeyboardInterrupt) as exc:
        raise SecretUnavailableError("PIN entry was cancelled.") from exc
    if not answer:
        raise SecretUnavailableError("PIN entry was cancelled.")
    return Secret(answer)


def resolve_pin(
    criteria: "SelectionCriteria",
    *,
    preset: Secret | None = None,
    prompt: PinPrompt | None = None,
    interactive: bool = False,
    prompt_info: str = "Token",
) -> Secret | None:
    """
    Determine the PIN to log in with, or None when no login should happen.

    ``interactive`` enables the prompt as the last resort; callers set it when
    the requested objects need a logged in session.
    """
    if criteria.pin is not None:
        _logger.debug("Using PIN from URI pin-value.")
        return criteria.pin

    if criteria.pin_source is not None:
        line = read_first_line(criteria.pin_source)
        if not line:
            raise SecretUnavailableError(
                f"Can't read PIN from pin-source file: {criteria.pin_source}"
            )
        _logger.debug("Using PIN from pin-source file %s", criteria.pin_source)
        return Secret(line)

    if preset is not None:
        _logger.debug("Using preset PIN.")
        return preset

    if not interactive:
        return None
    if prompt is None:
        raise SecretUnavailableError("A PIN is required but no prompt is available.")
    _logger.debug("Prompting for PIN prompt_info=%s", prompt_info)
    return _prompt_for_pin(prompt, prompt_info)
