from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import pkcs11
from asn1crypto import algos
from pkcs11 import Attribute, KeyType, Mechanism, MGF

from .exceptions import EngineOperationError, format_exception
from .search import read_attribute
from .session import TokenSession

_logger = logging.getLogger("pkcs11_engine.token_key")


@dataclass(frozen=True)
class SignatureAlgorithmSpec:
    """PKCS#11 mechanism mapping for a signing algorithm."""

    key_type: KeyType
    mechanism: Mechanism
    mechanism_param: tuple[Mechanism, MGF, int] | None = None


SIGNATURE_ALGORITHM_SPECS: dict[str, SignatureAlgorithmSpec] = {
    "rsa_pkcs1v15_sha256": SignatureAlgorithmSpec(
        key_type=KeyType.RSA,
        mechanism=Mechanism.SHA256_RSA_PKCS,
    ),
    "rsa_pkcs1v15_sha384": SignatureAlgorithmSpec(
        key_type=KeyType.RSA,
        mechanism=Mechanism.SHA384_RSA_PKCS,
    ),
    "rsa_pss_sha256": SignatureAlgorithmSpec(
        key_type=KeyType.RSA,
        mechanism=Mechanism.SHA256_RSA_PKCS_PSS,
        mechanism_param=(Mechanism.SHA256, MGF.SHA256, 32),
    ),
    "ecdsa_sha256": SignatureAlgorithmSpec(
        key_type=KeyType.EC,
        mechanism=Mechanism.ECDSA_SHA256,
    ),
    "ecdsa_sha384": SignatureAlgorithmSpec(
        key_type=KeyType.EC,
        mechanism=Mechanism.ECDSA_SHA384,
    ),
}

_DEFAULT_ALGORITHMS: dict[KeyType, str] = {
    KeyType.RSA: "rsa_pkcs1v15_sha256",
    KeyType.EC: "ecdsa_sha256",
}


def _normalize_algorithm_name(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "_")


def _resolve_signature_algorithm(algorithm: str) -> SignatureAlgorithmSpec:
    spec = SIGNATURE_ALGORITHM_SPECS.get(_normalize_algorithm_name(algorithm))
    if spec is None:
        available = ", ".join(sorted(SIGNATURE_ALGORITHM_SPECS.keys()))
        raise ValueError(
            f"Unsupported signing algorithm '{algorithm}'. Available: {available}"
        )
    return spec


def _ecdsa_signature_to_der(signature: bytes) -> bytes:
    # Tokens return ECDSA signatures as raw r||s.
    try:
        algos.DSASignature.load(signature)
        return signature
    except ValueError:
        if len(signature) % 2 != 0:
            raise ValueError("Invalid raw ECDSA signature length.")
        half = len(signature) // 2
        r = int.from_bytes(signature[:half], byteorder="big")
        s = int.from_bytes(signature[half:], byteorder="big")
        return algos.DSASignature({"r": r, "s": s}).dump()


class TokenPrivateKey:
    """
    A private key that stays on the token.

    Signing needs a live session, so the key either owns the session it was
    found in (``owns_session=True``, closed by ``close()``) or borrows one
    from an open store that outlives it.
    """

    def __init__(
        self,
        session: TokenSession,
        key: pkcs11.PrivateKey,
        *,
        owns_session: bool,
    ) -> None:
        self._session = session
        self._key = key
        self._owns_session = owns_session
        self.label: str = read_attribute(key, Attribute.LABEL, "")
        self.key_id: bytes = bytes(read_attribute(key, Attribute.ID, b""))
        self.key_type: KeyType | None = read_attribute(key, Attribute.KEY_TYPE)

    def __enter__(self) -> "TokenPrivateKey":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"TokenPrivateKey(label={self.label!r}, key_id={self.key_id.hex()!r}, "
            f"key_type={getattr(self.key_type, 'name', self.key_type)})"
        )

    @property
    def closed(self) -> bool:
        return self._session.closed

    @property
    def handle(self) -> pkcs11.PrivateKey:
        if self._session.closed:
            raise EngineOperationError("The session holding this key is closed.")
        return self._key

    def default_algorithm(self) -> str:
        algorithm = _DEFAULT_ALGORITHMS.get(self.key_type)
        if algorithm is None:
            raise ValueError(f"No default signing algorithm for key type {self.key_type}.")
        return algorithm

    def sign(self, data: bytes, algorithm: str | None = None) -> bytes:
        algorithm = algorithm or self.default_algorithm()
        spec = _resolve_signature_algorithm(algorithm)
        if self.key_type is not None and self.key_type != spec.key_type:
            raise ValueError(
                f"Algorithm '{algorithm}' requires key type {spec.key_type.name}, "
                f"but key type is {self.key_type}."
            )
        key = self.handle
        try:
            signature = key.sign(
                data,
                mechanism=spec.mechanism,
                mechanism_param=spec.mechanism_param,
            )
        except Exception as exc:
            _logger.exception("Signing failed algorithm=%s label=%s", algorithm, self.label)
            raise EngineOperationError(
                f"Signing failed for algorithm '{algorithm}': {format_exception(exc)}"
            ) from exc
        if spec.key_type == KeyType.EC:
            signature = _ecdsa_signature_to_der(signature)
        _logger.info(
            "Signed payload using algorithm=%s signature_size=%d",
            _normalize_algorithm_name(algorithm),
            len(signature),
        )
        return signature

    def close(self) -> None:
        if self._owns_session:
            self._session.close()
