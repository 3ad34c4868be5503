"""
Forward-only iteration over the objects of a session.

A search runs in one of two modes, fixed when it starts:

* name listing, used when the criteria select no particular object; every
  step yields a ``pkcs11:`` name and a short description;
* object lookup, where every step yields the next matching certificate,
  public key or private key handle.

Neither mode can be rewound. Once the token reports no more objects the
search stays exhausted and further calls keep returning None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

import pkcs11
from pkcs11 import Attribute, ObjectClass

from .exceptions import SearchError, format_exception
from .session import TokenSession
from .uri import ObjectType, SelectionCriteria, format_object_uri

_logger = logging.getLogger("pkcs11_engine.search")


class SearchMode(Enum):
    LIST_NAMES = "name-listing"
    LOOKUP = "object-lookup"


class ObjectKind(Enum):
    NONE = "none"
    CERTIFICATE = "certificate"
    PUBLIC_KEY = "public-key"
    PRIVATE_KEY = "private-key"


_KIND_BY_CLASS: dict[ObjectClass, ObjectKind] = {
    ObjectClass.CERTIFICATE: ObjectKind.CERTIFICATE,
    ObjectClass.PUBLIC_KEY: ObjectKind.PUBLIC_KEY,
    ObjectClass.PRIVATE_KEY: ObjectKind.PRIVATE_KEY,
}

_TYPE_BY_KIND: dict[ObjectKind, ObjectType] = {
    ObjectKind.CERTIFICATE: ObjectType.CERT,
    ObjectKind.PUBLIC_KEY: ObjectType.PUBLIC,
    ObjectKind.PRIVATE_KEY: ObjectType.PRIVATE,
}

_DESCRIPTIONS: dict[ObjectKind, str] = {
    ObjectKind.CERTIFICATE: "Certificate",
    ObjectKind.PUBLIC_KEY: "Public key",
    ObjectKind.PRIVATE_KEY: "Private key",
}


@dataclass(frozen=True)
class StoreName:
    name: str
    description: str


def read_attribute(obj: Any, attribute: Attribute, default: Any = None) -> Any:
    try:
        value = obj[attribute]
    except (pkcs11.PKCS11Error, KeyError):
        return default
    return default if value is None else value


def classify(obj: Any) -> ObjectKind:
    return _KIND_BY_CLASS.get(read_attribute(obj, Attribute.CLASS), ObjectKind.NONE)


class ObjectSearch:
    """Search state over one session; the session itself is owned elsewhere."""

    def __init__(
        self,
        session: TokenSession,
        criteria: SelectionCriteria,
        *,
        object_type: ObjectType | None = None,
        mode: SearchMode | None = None,
    ) -> None:
        self.criteria = criteria
        self.object_type = object_type or criteria.type
        if mode is None:
            mode = SearchMode.LOOKUP if criteria.has_selector else SearchMode.LIST_NAMES
        self.mode = mode
        self.exhausted = False
        self.last_error: BaseException | None = None
        self.current: Any | None = None
        self.current_kind = ObjectKind.NONE

        template = criteria.object_template(self.object_type)
        try:
            self._objects: Iterator[Any] = iter(session.get_objects(template))
        except Exception as exc:
            self._fail(exc)
            raise SearchError(
                f"Failed to start object search: {format_exception(exc)}"
            ) from exc
        _logger.debug(
            "Search started slot_id=%s mode=%s attributes=%s",
            session.slot_id,
            self.mode.value,
            sorted(attribute.name for attribute in template),
        )

    def __enter__(self) -> "ObjectSearch":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[Any]:
        step = self.next_name if self.mode is SearchMode.LIST_NAMES else self.next_object
        while True:
            item = step()
            if item is None:
                return
            yield item

    def close(self) -> None:
        self.current = None
        self.current_kind = ObjectKind.NONE
        self.exhausted = True
        self._objects = iter(())

    def next_name(self) -> StoreName | None:
        self._require_mode(SearchMode.LIST_NAMES)
        while True:
            obj = self._advance()
            if obj is None:
                return None
            kind = classify(obj)
            if kind is ObjectKind.NONE:
                continue
            label = read_attribute(obj, Attribute.LABEL, "")
            object_id = read_attribute(obj, Attribute.ID, b"")
            name = format_object_uri(
                label=label, object_id=object_id, object_type=_TYPE_BY_KIND[kind]
            )
            description = _DESCRIPTIONS[kind]
            if label:
                description = f"{description}: {label}"
            return StoreName(name=name, description=description)

    def next_object(self) -> tuple[ObjectKind, Any] | None:
        self._require_mode(SearchMode.LOOKUP)
        while True:
            obj = self._advance()
            if obj is None:
                return None
            kind = classify(obj)
            if kind is ObjectKind.NONE:
                continue
            self.current, self.current_kind = obj, kind
            return kind, obj

    def next_cert(self) -> tuple[Any, bytes] | None:
        """Advance to the next certificate and return it with its CKA_ID."""
        self._require_mode(SearchMode.LOOKUP)
        while True:
            obj = self._advance()
            if obj is None:
                return None
            if classify(obj) is not ObjectKind.CERTIFICATE:
                continue
            self.current, self.current_kind = obj, ObjectKind.CERTIFICATE
            return obj, bytes(read_attribute(obj, Attribute.ID, b""))

    def _require_mode(self, mode: SearchMode) -> None:
        if self.mode is not mode:
            raise ValueError(
                f"Search is in {self.mode.value} mode, not {mode.value} mode."
            )

    def _advance(self) -> Any | None:
        if self.exhausted:
            return None
        try:
            return next(self._objects)
        except StopIteration:
            _logger.debug("Search exhausted.")
            self.close()
            return None
        except Exception as exc:
            self._fail(exc)
            raise SearchError(
                f"Object search failed: {format_exception(exc)}"
            ) from exc

    def _fail(self, exc: BaseException) -> None:
        _logger.error("Object search failed: %s", format_exception(exc))
        self.close()
        self.last_error = exc
