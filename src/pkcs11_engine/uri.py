"""
Parsing of ``pkcs11:`` resource identifiers into selection criteria.

The grammar is deliberately small::

    uri     := "pkcs11:" segment (";" segment)*
    segment := key "=" value

Only the attribute keys listed in ``_ATTRIBUTES`` are understood; anything
else is ignored so that newer identifiers still resolve. A string without the
``pkcs11:`` prefix is taken as a bare, percent-encoded object id.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterator

from pkcs11 import Attribute, ObjectClass

from .exceptions import MalformedUriError, MissingModulePathError, MissingSelectorError
from .pin import Secret

_logger = logging.getLogger("pkcs11_engine.uri")

SCHEME = "pkcs11"
SCHEME_PREFIX = f"{SCHEME}:"
SEGMENT_SEPARATOR = ";"
MODULE_PATH_ENV = "PKCS11_MODULE_PATH"

# Widths of the CK_TOKEN_INFO fields the padded attributes are compared to.
TOKEN_FIELD_WIDTH = 32
MODEL_FIELD_WIDTH = 16

_HEX_DIGITS = b"0123456789abcdefABCDEF"
_UNRESERVED = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
)


class ParseContext(Enum):
    """Whether a single key is being loaded or a token store is being listed."""

    DIRECT_KEY = "direct-key"
    STORE = "store"


class ObjectType(str, Enum):
    CERT = "cert"
    PUBLIC = "public"
    PRIVATE = "private"

    @property
    def object_class(self) -> ObjectClass:
        return _OBJECT_CLASSES[self]


_OBJECT_CLASSES: dict[ObjectType, ObjectClass] = {
    ObjectType.CERT: ObjectClass.CERTIFICATE,
    ObjectType.PUBLIC: ObjectClass.PUBLIC_KEY,
    ObjectType.PRIVATE: ObjectClass.PRIVATE_KEY,
}


@dataclass(frozen=True)
class PaddedField:
    """
    Fixed-width, space padded token descriptor field.

    Token, manufacturer, model and serial values are stored by the token as
    blank padded buffers; comparing padded values keeps ``token=ABC`` from
    matching a token called ``ABCD``.
    """

    value: bytes
    width: int

    def __post_init__(self) -> None:
        if self.width <= 0:
            raise ValueError("width must be > 0.")
        if len(self.value) != self.width:
            raise ValueError(
                f"Padded field must be exactly {self.width} bytes, got {len(self.value)}."
            )

    @classmethod
    def pad(cls, data: bytes | str, width: int) -> "PaddedField":
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        return cls(value=raw[:width].ljust(width, b" "), width=width)

    def matches(self, descriptor: bytes | str | None) -> bool:
        if descriptor is None:
            return False
        return self == PaddedField.pad(descriptor, self.width)

    def __str__(self) -> str:
        return self.value.rstrip(b" ").decode("utf-8", errors="replace")


@dataclass(frozen=True)
class SelectionCriteria:
    """Decoded intent of a pkcs11: identifier."""

    label: bytes = b""
    id: bytes = b""
    type: ObjectType | None = None
    slot_id: int | None = None
    token: PaddedField | None = None
    manufacturer: PaddedField | None = None
    model: PaddedField | None = None
    serial: PaddedField | None = None
    module_path: str | None = None
    pin: Secret | None = field(default=None, repr=False)
    pin_source: str | None = None

    @property
    def has_selector(self) -> bool:
        return bool(self.id or self.label)

    @property
    def label_text(self) -> str:
        try:
            return self.label.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedUriError("Object label is not valid UTF-8.") from exc

    def token_fields(self) -> dict[str, PaddedField]:
        present = {
            "token": self.token,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "serial": self.serial,
        }
        return {name: value for name, value in present.items() if value is not None}

    def with_id(self, object_id: bytes) -> "SelectionCriteria":
        return replace(self, id=bytes(object_id), label=b"")

    def object_template(
        self, object_type: ObjectType | None = None
    ) -> dict[Attribute, Any]:
        template: dict[Attribute, Any] = {}
        resolved_type = object_type or self.type
        if resolved_type is not None:
            template[Attribute.CLASS] = resolved_type.object_class
        if self.id:
            template[Attribute.ID] = self.id
        if self.label:
            template[Attribute.LABEL] = self.label_text
        return template


def percent_decode(value: str) -> bytes:
    raw = value.encode("utf-8")
    decoded = bytearray()
    index = 0
    while index < len(raw):
        byte = raw[index]
        if byte != 0x25:  # "%"
            decoded.append(byte)
            index += 1
            continue
        digits = raw[index + 1 : index + 3]
        if len(digits) != 2 or any(digit not in _HEX_DIGITS for digit in digits):
            raise MalformedUriError(
                f"Invalid percent-encoding at offset {index} in {value!r}."
            )
        decoded.append(int(digits, 16))
        index += 3
    return bytes(decoded)


def percent_encode(data: bytes | str) -> str:
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    return "".join(chr(byte) if byte in _UNRESERVED else f"%{byte:02X}" for byte in raw)


def format_object_uri(
    *,
    label: bytes | str | None = None,
    object_id: bytes | None = None,
    object_type: ObjectType | None = None,
) -> str:
    parts: list[str] = []
    if label:
        parts.append(f"object={percent_encode(label)}")
    if object_id:
        parts.append(f"id={percent_encode(object_id)}")
    if object_type is not None:
        parts.append(f"type={object_type.value}")
    return SCHEME_PREFIX + SEGMENT_SEPARATOR.join(parts)


def _scan_segments(body: str) -> Iterator[str]:
    start = 0
    for index, char in enumerate(body):
        if char != SEGMENT_SEPARATOR:
            continue
        if index > start:
            yield body[start:index]
        start = index + 1
    if start < len(body):
        yield body[start:]


def _decode_token_field(width: int) -> Callable[[str], PaddedField]:
    def decode(value: str) -> PaddedField:
        return PaddedField.pad(percent_decode(value), width)

    return decode


def _decode_type(value: str) -> ObjectType:
    try:
        return ObjectType(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ObjectType)
        raise MalformedUriError(
            f"Unsupported object type '{value}'. Use one of: {allowed}."
        ) from exc


def _decode_slot_id(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise MalformedUriError(f"slot-id must be a decimal integer, got: {value!r}")
    return int(value)


def _decode_pin_source(value: str) -> str:
    scheme, separator, path = value.partition(":")
    if not separator or scheme != "file":
        raise MalformedUriError("Only the file: pin-source is supported.")
    return path


def _decode_pin_value(value: str) -> Secret:
    return Secret(value.encode("utf-8"))


def _decode_module_path(value: str) -> str:
    return os.fsdecode(percent_decode(value))


_ATTRIBUTES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "pin-value": ("pin", _decode_pin_value),
    "pin-source": ("pin_source", _decode_pin_source),
    "object": ("label", percent_decode),
    "model": ("model", _decode_token_field(MODEL_FIELD_WIDTH)),
    "serial": ("serial", _decode_token_field(MODEL_FIELD_WIDTH)),
    "token": ("token", _decode_token_field(TOKEN_FIELD_WIDTH)),
    "manufacturer": ("manufacturer", _decode_token_field(TOKEN_FIELD_WIDTH)),
    "id": ("id", percent_decode),
    "type": ("type", _decode_type),
    "module-path": ("module_path", _decode_module_path),
    "slot-id": ("slot_id", _decode_slot_id),
}


def _parse_attributes(body: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for segment in _scan_segments(body):
        key, separator, value = segment.partition("=")
        attribute = _ATTRIBUTES.get(key) if separator else None
        if attribute is None:
            _logger.debug("Ignoring unrecognized URI segment key=%s", key)
            continue
        field_name, decode = attribute
        if field_name in fields:
            _logger.debug("Ignoring repeated URI attribute key=%s", key)
            continue
        fields[field_name] = decode(value)
    return fields


def parse_uri(
    uri: str,
    context: ParseContext = ParseContext.DIRECT_KEY,
    *,
    default_module_path: str | None = None,
) -> SelectionCriteria:
    """
    Decode ``uri`` into SelectionCriteria.

    ``default_module_path`` is used when the identifier carries no
    ``module-path``; after that the PKCS11_MODULE_PATH environment variable is
    consulted.
    """
    if not isinstance(uri, str):
        raise MalformedUriError("URI is empty.")

    if uri.startswith(SCHEME_PREFIX):
        criteria = SelectionCriteria(**_parse_attributes(uri[len(SCHEME_PREFIX) :]))
    else:
        criteria = SelectionCriteria(id=percent_decode(uri))

    if context is ParseContext.DIRECT_KEY and not criteria.has_selector:
        raise MissingSelectorError("Either id or object must be set to load a key.")

    if criteria.module_path is None:
        module_path = default_module_path or os.environ.get(MODULE_PATH_ENV)
        if not module_path:
            raise MissingModulePathError(
                f"No module-path in URI and {MODULE_PATH_ENV} is not set."
            )
        criteria = replace(criteria, module_path=module_path)

    _logger.debug(
        "Parsed URI context=%s label=%r id=%s type=%s slot_id=%s module_path=%s",
        context.value,
        criteria.label,
        criteria.id.hex(),
        criteria.type.value if criteria.type else None,
        criteria.slot_id,
        criteria.module_path,
    )
    return criteria
