from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import pkcs11

from .exceptions import (
    ModuleInitializationError,
    NoMatchingSlotError,
    format_exception,
)
from .uri import MODEL_FIELD_WIDTH, TOKEN_FIELD_WIDTH, PaddedField, SelectionCriteria

_logger = logging.getLogger("pkcs11_engine.locator")

ModuleLoader = Callable[[str], Any]


class TokenModule:
    """
    A loaded PKCS#11 module.

    The handle is owned by whoever creates the TokenModule; ``finalize()``
    runs C_Finalize, which closes every session opened through the module,
    and is safe to call more than once.
    """

    def __init__(self, path: str, loader: ModuleLoader = pkcs11.lib) -> None:
        self.path = path
        self._loader = loader
        self._lib: Any | None = None

    def __enter__(self) -> "TokenModule":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.finalize()

    @property
    def initialized(self) -> bool:
        return self._lib is not None

    def initialize(self) -> None:
        if self._lib is not None:
            return
        _logger.info("Loading PKCS#11 module path=%s", self.path)
        try:
            self._lib = self._loader(self.path)
        except Exception as exc:
            self._lib = None
            _logger.exception("Failed to load PKCS#11 module path=%s", self.path)
            raise ModuleInitializationError(
                f"Failed to initialize PKCS#11 module '{self.path}': {format_exception(exc)}"
            ) from exc

    def finalize(self) -> None:
        if self._lib is None:
            return
        lib, self._lib = self._lib, None
        try:
            lib.finalize()
        except pkcs11.PKCS11Error as exc:
            _logger.warning(
                "Failed to finalize PKCS#11 module path=%s: %s",
                self.path,
                format_exception(exc),
            )
        _logger.info("Released PKCS#11 module path=%s", self.path)

    def close_all_sessions(self) -> None:
        """
        Close every session the module holds by finalizing and initializing
        it again.

        A module that cannot be initialized again is released; the next
        ``initialize()`` loads it afresh.
        """
        if self._lib is None:
            return
        try:
            self._lib.reinitialize()
        except pkcs11.PKCS11Error as exc:
            _logger.warning(
                "Failed to reinitialize PKCS#11 module path=%s: %s",
                self.path,
                format_exception(exc),
            )
            self._lib = None
            return
        _logger.info("Closed all sessions of PKCS#11 module path=%s", self.path)

    def enumerate_slots(self) -> list[Any]:
        if self._lib is None:
            raise ModuleInitializationError(
                f"PKCS#11 module '{self.path}' is not initialized."
            )
        try:
            return list(self._lib.get_slots(token_present=True))
        except Exception as exc:
            _logger.exception("Failed to enumerate slots path=%s", self.path)
            raise NoMatchingSlotError(
                f"Failed to enumerate slots: {format_exception(exc)}"
            ) from exc


@dataclass(frozen=True)
class TokenDescriptor:
    """Padded CK_TOKEN_INFO fields of the token present in a slot."""

    slot_id: int
    token: PaddedField
    manufacturer: PaddedField
    model: PaddedField
    serial: PaddedField

    @classmethod
    def from_slot(cls, slot: Any) -> "TokenDescriptor":
        token = slot.get_token()
        return cls(
            slot_id=slot.slot_id,
            token=PaddedField.pad(token.label or "", TOKEN_FIELD_WIDTH),
            manufacturer=PaddedField.pad(token.manufacturer_id or "", TOKEN_FIELD_WIDTH),
            model=PaddedField.pad(token.model or "", MODEL_FIELD_WIDTH),
            serial=PaddedField.pad(token.serial or b"", MODEL_FIELD_WIDTH),
        )

    def satisfies(self, criteria: SelectionCriteria) -> bool:
        for name, wanted in criteria.token_fields().items():
            if not wanted.matches(getattr(self, name).value):
                return False
        return True


def describe_slots(slots: Iterable[Any]) -> list[TokenDescriptor]:
    descriptors: list[TokenDescriptor] = []
    for slot in slots:
        try:
            descriptors.append(TokenDescriptor.from_slot(slot))
        except pkcs11.PKCS11Error as exc:
            _logger.debug(
                "Skipping slot %s (cannot read token: %s)",
                getattr(slot, "slot_id", "?"),
                format_exception(exc),
            )
    return descriptors


def locate_slot(slots: Iterable[Any], criteria: SelectionCriteria) -> Any:
    """
    Pick the slot to open a session on.

    An explicit slot id selects that slot outright. Otherwise the first slot,
    in module order, whose token matches every padded field present in the
    criteria is returned; fields absent from the criteria match anything.
    """
    slots = list(slots)
    if criteria.slot_id is not None:
        for slot in slots:
            if slot.slot_id == criteria.slot_id:
                _logger.debug("Selected slot by id slot_id=%s", criteria.slot_id)
                return slot
        raise NoMatchingSlotError(
            f"Slot {criteria.slot_id} not found or has no token."
        )

    for slot in slots:
        try:
            descriptor = TokenDescriptor.from_slot(slot)
        except pkcs11.PKCS11Error as exc:
            _logger.debug(
                "Skipping slot %s (cannot read token: %s)",
                slot.slot_id,
                format_exception(exc),
            )
            continue
        if descriptor.satisfies(criteria):
            _logger.debug(
                "Selected slot slot_id=%s token=%s", slot.slot_id, descriptor.token
            )
            return slot

    wanted = ", ".join(
        f"{name}={value}" for name, value in criteria.token_fields().items()
    )
    raise NoMatchingSlotError(
        f"No token matching [{wanted or 'any'}] found in {len(slots)} slot(s)."
    )
