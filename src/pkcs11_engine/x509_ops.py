from __future__ import annotations

from typing import Any, Iterable

import pkcs11
from asn1crypto import core, keys, pem, x509
from pkcs11 import Attribute, KeyType

# Key usage bits that allow a certificate to authenticate a TLS client.
_CLIENT_AUTH_KEY_USAGES = frozenset({"digital_signature", "key_agreement"})


def _load_pem_or_der(
    data: bytes | str,
    expected_pem_type: str,
) -> bytes:
    if isinstance(data, str):
        payload = data.encode("utf-8")
    else:
        payload = data

    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    return x509.Certificate.load(_load_pem_or_der(data, "CERTIFICATE"))


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def certificate_from_object(obj: Any) -> x509.Certificate:
    """Materialize a token certificate object from its CKA_VALUE."""
    return load_certificate(bytes(obj[Attribute.VALUE]))


def load_name(data: bytes | x509.Name) -> x509.Name:
    if isinstance(data, x509.Name):
        return data
    return x509.Name.load(bytes(data))


def issuer_matches(ca_names: Iterable[x509.Name], certificate: x509.Certificate) -> bool:
    """
    Check the certificate's issuer against the names a server will accept.

    An empty list accepts any issuer.
    """
    names = list(ca_names)
    if not names:
        return True
    issuer = certificate.issuer
    return any(load_name(name) == issuer for name in names)


def permits_client_auth(certificate: x509.Certificate) -> bool:
    """
    Check that the certificate may be used for TLS client authentication.

    When extended key usage is present it must list client_auth; when key
    usage is present it must allow digital_signature or key_agreement.
    """
    extended_key_usage = certificate.extended_key_usage_value
    if extended_key_usage is not None and "client_auth" not in extended_key_usage.native:
        return False
    key_usage = certificate.key_usage_value
    if key_usage is not None and not (_CLIENT_AUTH_KEY_USAGES & set(key_usage.native)):
        return False
    return True


def subject_common_name(certificate: x509.Certificate) -> str | None:
    value = certificate.subject.native.get("common_name")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def pkcs11_public_key_to_public_key_info(
    public_key: pkcs11.PublicKey,
) -> keys.PublicKeyInfo:
    key_type = public_key[Attribute.KEY_TYPE]
    if key_type == KeyType.RSA:
        modulus = int.from_bytes(public_key[Attribute.MODULUS], byteorder="big")
        exponent = int.from_bytes(
            public_key[Attribute.PUBLIC_EXPONENT], byteorder="big"
        )
        return keys.PublicKeyInfo(
            {
                "algorithm": {"algorithm": "rsa"},
                "public_key": keys.RSAPublicKey(
                    {
                        "modulus": modulus,
                        "public_exponent": exponent,
                    }
                ),
            }
        )

    if key_type == KeyType.EC:
        ec_params = public_key[Attribute.EC_PARAMS]
        ec_point = public_key[Attribute.EC_POINT]
        try:
            ec_point = core.OctetString.load(ec_point).native
        except ValueError:
            pass
        return keys.PublicKeyInfo(
            {
                "algorithm": {
                    "algorithm": "ec",
                    "parameters": keys.ECDomainParameters.load(ec_params),
                },
                "public_key": ec_point,
            }
        )

    raise ValueError(f"Unsupported public key type: {key_type}")
