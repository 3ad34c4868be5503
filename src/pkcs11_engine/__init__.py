"""Resolution of pkcs11: URIs into keys and certificates held on PKCS#11 tokens."""

from .config import EngineConfig
from .engine import ENGINE_ID, ENGINE_NAME, EngineCommand, Pkcs11Engine
from .exceptions import (
    AuthenticationError,
    EngineConfigurationError,
    EngineOperationError,
    MalformedUriError,
    MissingModulePathError,
    MissingSelectorError,
    ModuleInitializationError,
    NoMatchingSlotError,
    NoSuchKeyError,
    NoSuitableCertificateError,
    Pkcs11EngineError,
    SearchError,
    SecretUnavailableError,
    SessionOpenError,
)
from .locator import TokenDescriptor, TokenModule, describe_slots, locate_slot
from .logging_utils import configure_logging
from .pin import Secret, console_prompt, resolve_pin
from .search import ObjectKind, ObjectSearch, SearchMode, StoreName
from .session import TokenSession, open_session
from .store import ObjectStore, StoreInfo, StoreInfoType
from .token_key import SIGNATURE_ALGORITHM_SPECS, TokenPrivateKey
from .uri import (
    SCHEME,
    ObjectType,
    PaddedField,
    ParseContext,
    SelectionCriteria,
    format_object_uri,
    parse_uri,
    percent_decode,
    percent_encode,
)
from .x509_ops import issuer_matches, load_certificate, permits_client_auth

__all__ = [
    "ENGINE_ID",
    "ENGINE_NAME",
    "SCHEME",
    "SIGNATURE_ALGORITHM_SPECS",
    "AuthenticationError",
    "EngineCommand",
    "EngineConfig",
    "EngineConfigurationError",
    "EngineOperationError",
    "MalformedUriError",
    "MissingModulePathError",
    "MissingSelectorError",
    "ModuleInitializationError",
    "NoMatchingSlotError",
    "NoSuchKeyError",
    "NoSuitableCertificateError",
    "ObjectKind",
    "ObjectSearch",
    "ObjectStore",
    "ObjectType",
    "PaddedField",
    "ParseContext",
    "Pkcs11Engine",
    "Pkcs11EngineError",
    "SearchError",
    "SearchMode",
    "Secret",
    "SecretUnavailableError",
    "SelectionCriteria",
    "SessionOpenError",
    "StoreInfo",
    "StoreInfoType",
    "StoreName",
    "TokenDescriptor",
    "TokenModule",
    "TokenPrivateKey",
    "TokenSession",
    "configure_logging",
    "console_prompt",
    "describe_slots",
    "format_object_uri",
    "issuer_matches",
    "load_certificate",
    "locate_slot",
    "open_session",
    "parse_uri",
    "percent_decode",
    "percent_encode",
    "permits_client_auth",
    "resolve_pin",
]
