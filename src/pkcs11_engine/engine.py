"""
Resolution of pkcs11: identifiers into token objects.

``Pkcs11Engine`` is the context every operation runs in. It carries the
engine-wide defaults (module path, preset PIN), the PIN prompt, the loaded
PKCS#11 module and a single lock; operations on one engine are serialized.

Every operation follows the same sequence: parse the identifier, resolve the
PIN, locate the slot, open (and log in to) a session, search, materialize.
Any failure releases what was acquired so far before the error propagates.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Iterable

import pkcs11
from asn1crypto import keys, x509

from .config import EngineConfig
from .exceptions import (
    EngineConfigurationError,
    NoSuchKeyError,
    NoSuitableCertificateError,
)
from .locator import ModuleLoader, TokenModule, locate_slot
from .pin import PinPrompt, Secret, console_prompt, login_required, resolve_pin
from .search import ObjectSearch, SearchMode
from .session import TokenSession, open_session
from .store import ObjectStore, materialize_certificate, materialize_public_key
from .token_key import TokenPrivateKey
from .uri import (
    SCHEME_PREFIX,
    ObjectType,
    ParseContext,
    SelectionCriteria,
    parse_uri,
)
from .x509_ops import issuer_matches, permits_client_auth, subject_common_name

_logger = logging.getLogger("pkcs11_engine.engine")

ENGINE_ID = "pkcs11"
ENGINE_NAME = "PKCS#11 engine"


class EngineCommand(str, Enum):
    """Named controls settable on an engine before use."""

    MODULE_PATH = "MODULE_PATH"
    PIN = "PIN"
    LOAD_CERT_CTRL = "LOAD_CERT_CTRL"


def _describe(criteria: SelectionCriteria) -> str:
    parts = []
    if criteria.label:
        parts.append(f"label={criteria.label!r}")
    if criteria.id:
        parts.append(f"id={criteria.id.hex()}")
    return ", ".join(parts) or "any"


class Pkcs11Engine:
    """Loads keys and certificates addressed by pkcs11: URIs."""

    engine_id = ENGINE_ID
    name = ENGINE_NAME

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        prompt: PinPrompt | None = console_prompt,
        module_loader: ModuleLoader = pkcs11.lib,
    ) -> None:
        self._config = config or EngineConfig()
        self._prompt = prompt
        self._module_loader = module_loader
        self._module: TokenModule | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> "Pkcs11Engine":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @staticmethod
    def handles(uri: str) -> bool:
        return isinstance(uri, str) and uri.startswith(SCHEME_PREFIX)

    def ctrl(self, command: EngineCommand | str, value: Any) -> Any:
        try:
            resolved = EngineCommand(command)
        except ValueError as exc:
            raise EngineConfigurationError(f"Unknown engine command: {command}") from exc

        if resolved is EngineCommand.LOAD_CERT_CTRL:
            return self.load_certificate(value)

        with self._lock:
            if resolved is EngineCommand.MODULE_PATH:
                self._config = self._config.with_module_path(str(value))
                _logger.info("Setting module path to %s", self._config.module_path)
            else:
                self._config = self._config.with_pin(value)
                _logger.info("Setting PIN")
        return True

    def close(self) -> None:
        with self._lock:
            self._release_module()

    def load_private_key(self, uri: str) -> TokenPrivateKey:
        """
        Resolve ``uri`` to a private key.

        The returned key owns the session it was found in; close it when done.
        """
        with self._lock:
            criteria = self._parse(uri, ParseContext.DIRECT_KEY)
            secret = self._resolve_pin(
                criteria, interactive=login_required(ParseContext.DIRECT_KEY, criteria)
            )
            with self._open_session(criteria, secret) as session:
                key = self._find_first(session, criteria, ObjectType.PRIVATE)
                private_key = TokenPrivateKey(session, key, owns_session=True)
                session.transfer()
        _logger.info("Loaded private key %r", private_key)
        return private_key

    def load_public_key(self, uri: str) -> keys.PublicKeyInfo:
        with self._lock:
            criteria = self._parse(uri, ParseContext.DIRECT_KEY)
            secret = self._resolve_pin(criteria, interactive=False)
            with self._open_session(criteria, secret) as session:
                key = self._find_first(session, criteria, ObjectType.PUBLIC)
                public_key = materialize_public_key(key)
        _logger.info("Loaded public key (%s)", _describe(criteria))
        return public_key

    def load_certificate(self, uri: str) -> x509.Certificate:
        with self._lock:
            criteria = self._parse(uri, ParseContext.STORE)
            secret = self._resolve_pin(
                criteria, interactive=login_required(ParseContext.STORE, criteria)
            )
            with self._open_session(criteria, secret) as session:
                obj = self._find_first(session, criteria, ObjectType.CERT)
                certificate = materialize_certificate(obj)
        _logger.info("Loaded certificate subject=%s", subject_common_name(certificate))
        return certificate

    def open_store(self, uri: str) -> ObjectStore:
        """
        Open a store over the objects ``uri`` designates.

        Without an object id or label the store lists names; otherwise it
        loads the matching certificates and keys.
        """
        with self._lock:
            criteria = self._parse(uri, ParseContext.STORE)
            secret = self._resolve_pin(
                criteria, interactive=login_required(ParseContext.STORE, criteria)
            )
            with self._open_session(criteria, secret) as session:
                store = ObjectStore(session, ObjectSearch(session, criteria))
                session.transfer()
        return store

    def select_client_certificate(
        self,
        ca_names: Iterable[x509.Name | bytes] = (),
        *,
        uri: str | None = None,
    ) -> tuple[x509.Certificate, TokenPrivateKey]:
        """
        Pick the first certificate usable for TLS client authentication.

        A certificate is accepted when its issuer is one of ``ca_names`` (or
        the list is empty) and its key usage permits client authentication.
        The private key with the same CKA_ID is returned alongside it.
        """
        ca_names = list(ca_names)
        with self._lock:
            criteria = self._parse(uri or SCHEME_PREFIX, ParseContext.STORE)
            secret = self._resolve_pin(criteria, interactive=True)
            with self._open_session(criteria, secret) as session:
                certificate, object_id = self._first_acceptable_certificate(
                    session, criteria, ca_names
                )
                key = self._find_first(
                    session, criteria.with_id(object_id), ObjectType.PRIVATE
                )
                private_key = TokenPrivateKey(session, key, owns_session=True)
                session.transfer()
        _logger.info(
            "Selected client certificate subject=%s id=%s",
            subject_common_name(certificate),
            object_id.hex(),
        )
        return certificate, private_key

    def _first_acceptable_certificate(
        self,
        session: TokenSession,
        criteria: SelectionCriteria,
        ca_names: list[x509.Name | bytes],
    ) -> tuple[x509.Certificate, bytes]:
        with ObjectSearch(
            session, criteria, object_type=ObjectType.CERT, mode=SearchMode.LOOKUP
        ) as search:
            while True:
                found = search.next_cert()
                if found is None:
                    raise NoSuitableCertificateError(
                        "No certificate on the token is acceptable for client authentication."
                    )
                obj, object_id = found
                if not object_id:
                    _logger.debug("Skipping certificate without CKA_ID.")
                    continue
                certificate = materialize_certificate(obj)
                if not issuer_matches(ca_names, certificate):
                    _logger.debug("Skipping certificate id=%s: issuer not accepted", object_id.hex())
                    continue
                if not permits_client_auth(certificate):
                    _logger.debug("Skipping certificate id=%s: not for client auth", object_id.hex())
                    continue
                return certificate, object_id

    def _parse(self, uri: str, context: ParseContext) -> SelectionCriteria:
        return parse_uri(uri, context, default_module_path=self._config.module_path)

    def _resolve_pin(
        self, criteria: SelectionCriteria, *, interactive: bool
    ) -> Secret | None:
        prompt_info = str(criteria.token) if criteria.token is not None else "Token"
        return resolve_pin(
            criteria,
            preset=self._config.pin,
            prompt=self._prompt,
            interactive=interactive,
            prompt_info=prompt_info,
        )

    def _acquire_module(self, path: str) -> TokenModule:
        if self._module is not None and self._module.path == path:
            self._module.initialize()
            return self._module
        self._release_module()
        module = TokenModule(path, loader=self._module_loader)
        module.initialize()
        self._module = module
        return module

    def _release_module(self) -> None:
        if self._module is not None:
            self._module.finalize()
            self._module = None

    def _open_session(
        self, criteria: SelectionCriteria, secret: Secret | None
    ) -> TokenSession:
        module = self._acquire_module(criteria.module_path)
        slot = locate_slot(module.enumerate_slots(), criteria)
        return open_session(slot, secret, on_login_rejected=module.close_all_sessions)

    @staticmethod
    def _find_first(
        session: TokenSession, criteria: SelectionCriteria, object_type: ObjectType
    ) -> Any:
        with ObjectSearch(
            session, criteria, object_type=object_type, mode=SearchMode.LOOKUP
        ) as search:
            found = search.next_object()
        if found is None:
            raise NoSuchKeyError(
                f"No {object_type.value} object found ({_describe(criteria)})."
            )
        return found[1]
