from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

import pkcs11
from asn1crypto import keys, x509

from .exceptions import EngineOperationError, format_exception
from .search import ObjectKind, ObjectSearch, SearchMode
from .session import TokenSession
from .token_key import TokenPrivateKey
from .x509_ops import certificate_from_object, pkcs11_public_key_to_public_key_info

_logger = logging.getLogger("pkcs11_engine.store")


class StoreInfoType(Enum):
    NAME = "name"
    CERT = "certificate"
    PUBKEY = "public-key"
    PKEY = "private-key"


@dataclass(frozen=True)
class StoreInfo:
    type: StoreInfoType
    value: Any
    description: str | None = None


def materialize_certificate(obj: Any) -> x509.Certificate:
    try:
        return certificate_from_object(obj)
    except (pkcs11.PKCS11Error, ValueError, TypeError) as exc:
        raise EngineOperationError(
            f"Failed to load certificate from token: {format_exception(exc)}"
        ) from exc


def materialize_public_key(obj: Any) -> keys.PublicKeyInfo:
    try:
        return pkcs11_public_key_to_public_key_info(obj)
    except (pkcs11.PKCS11Error, ValueError, TypeError) as exc:
        raise EngineOperationError(
            f"Failed to load public key from token: {format_exception(exc)}"
        ) from exc


class ObjectStore:
    """
    Loader over the objects a pkcs11: URI designates.

    The store owns its session and closes it in ``close()``. Private keys it
    yields borrow that session and become unusable once the store is closed.
    """

    def __init__(self, session: TokenSession, search: ObjectSearch) -> None:
        self._session = session
        self._search = search

    def __enter__(self) -> "ObjectStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[StoreInfo]:
        while True:
            info = self.load()
            if info is None:
                return
            yield info

    @property
    def listing(self) -> bool:
        return self._search.mode is SearchMode.LIST_NAMES

    def load(self) -> StoreInfo | None:
        if self._session.closed:
            return None
        if self.listing:
            entry = self._search.next_name()
            if entry is None:
                return None
            return StoreInfo(StoreInfoType.NAME, entry.name, entry.description)

        found = self._search.next_object()
        if found is None:
            return None
        kind, obj = found
        if kind is ObjectKind.CERTIFICATE:
            return StoreInfo(StoreInfoType.CERT, materialize_certificate(obj))
        if kind is ObjectKind.PUBLIC_KEY:
            return StoreInfo(StoreInfoType.PUBKEY, materialize_public_key(obj))
        return StoreInfo(
            StoreInfoType.PKEY,
            TokenPrivateKey(self._session, obj, owns_session=False),
        )

    def eof(self) -> bool:
        return self._search.exhausted

    def error(self) -> bool:
        return self._search.last_error is not None

    def close(self) -> None:
        if not self._session.closed:
            _logger.debug("Closing store slot_id=%s", self._session.slot_id)
        self._search.close()
        self._session.close()
