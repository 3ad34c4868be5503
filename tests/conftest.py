"""In-memory stand-ins for python-pkcs11 slots, tokens, sessions and objects."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pkcs11
import pytest
from asn1crypto import keys, x509
from pkcs11 import Attribute, KeyType, ObjectClass

MODULE_PATH = "/fake/libpkcs11-test.so"
USER_PIN = "123456"

RSA_MODULUS = int(
    "c5b1a2e47f3d9b8e0f6a1c2d3e4f5a6b7c8d9e0f1a2b3c4d5e6f708192a3b4c5"
    "d6e7f8091a2b3c4d5e6f708192a3b4c5d6e7f8091a2b3c4d5e6f708192a3b4c5",
    16,
)


class FakeObject:
    def __init__(self, **attributes: Any) -> None:
        self._attributes: dict[Attribute, Any] = {
            Attribute[name.rstrip("_").upper()]: value for name, value in attributes.items()
        }
        self.sign_calls: list[dict[str, Any]] = []

    def __getitem__(self, attribute: Attribute) -> Any:
        return self._attributes[attribute]

    def matches(self, template: dict[Attribute, Any]) -> bool:
        return all(self._attributes.get(key) == value for key, value in template.items())

    def sign(self, data: bytes, mechanism: Any = None, mechanism_param: Any = None) -> bytes:
        self.sign_calls.append(
            {"data": data, "mechanism": mechanism, "mechanism_param": mechanism_param}
        )
        return b"\x5a" * 256


class FakeSession:
    def __init__(self, objects: list[FakeObject], *, logged_in: bool) -> None:
        self._objects = objects
        self.logged_in = logged_in
        self.close_count = 0
        self.templates: list[dict[Attribute, Any]] = []
        self.fail_after: int | None = None

    def get_objects(self, template: dict[Attribute, Any]):
        self.templates.append(dict(template))
        visible = [
            obj
            for obj in self._objects
            if (self.logged_in or not obj._attributes.get(Attribute.PRIVATE, False))
            and obj.matches(template)
        ]

        def iterate():
            for index, obj in enumerate(visible):
                if self.fail_after is not None and index >= self.fail_after:
                    raise pkcs11.PKCS11Error("device removed")
                yield obj

        return iterate()

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def close(self) -> None:
        self.close_count += 1


class FakeToken:
    def __init__(
        self,
        label: str,
        *,
        manufacturer_id: str = "Fake Manufacturer",
        model: str = "Fake Model",
        serial: bytes = b"0001",
        objects: list[FakeObject] | None = None,
        pin: str = USER_PIN,
    ) -> None:
        self.label = label
        self.manufacturer_id = manufacturer_id
        self.model = model
        self.serial = serial
        self.objects = objects if objects is not None else []
        self.pin = pin
        self.sessions: list[FakeSession] = []

    def open(self, user_pin: str | None = None, rw: bool = False, **kwargs: Any) -> FakeSession:
        # C_OpenSession succeeds before C_Login checks the PIN
        session = FakeSession(self.objects, logged_in=user_pin is not None)
        self.sessions.append(session)
        if user_pin is not None and user_pin != self.pin:
            session.logged_in = False
            raise pkcs11.exceptions.PinIncorrect()
        return session


class FakeSlot:
    def __init__(self, slot_id: int, token: FakeToken | None) -> None:
        self.slot_id = slot_id
        self._token = token

    def get_token(self) -> FakeToken:
        if self._token is None:
            raise pkcs11.PKCS11Error("No token in slot")
        return self._token


class FakeLib:
    def __init__(self, slots: list[FakeSlot]) -> None:
        self.slots = slots
        self.calls: list[str] = []

    def get_slots(self, token_present: bool = False) -> list[FakeSlot]:
        return list(self.slots)

    def finalize(self) -> None:
        self.calls.append("finalize")
        self._close_all_sessions()

    def reinitialize(self) -> None:
        self.calls.append("reinitialize")
        self._close_all_sessions()

    def _close_all_sessions(self) -> None:
        for slot in self.slots:
            if slot._token is None:
                continue
            for session in slot._token.sessions:
                if not session.closed:
                    session.close()


def make_name(common_name: str) -> x509.Name:
    return x509.Name.build({"common_name": common_name})


def make_public_key_info() -> keys.PublicKeyInfo:
    return keys.PublicKeyInfo(
        {
            "algorithm": {"algorithm": "rsa"},
            "public_key": keys.RSAPublicKey(
                {"modulus": RSA_MODULUS, "public_exponent": 65537}
            ),
        }
    )


def make_certificate(
    common_name: str,
    *,
    issuer: str = "Test CA",
    extended_key_usage: list[str] | None = None,
    key_usage: set[str] | None = None,
    serial_number: int = 1,
) -> x509.Certificate:
    extensions: list[x509.Extension] = []
    if key_usage is not None:
        extensions.append(
            x509.Extension(
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage(key_usage),
                }
            )
        )
    if extended_key_usage is not None:
        extensions.append(
            x509.Extension(
                {
                    "extn_id": "extended_key_usage",
                    "critical": False,
                    "extn_value": x509.ExtKeyUsageSyntax(extended_key_usage),
                }
            )
        )

    tbs_fields: dict[str, Any] = {
        "version": "v3",
        "serial_number": serial_number,
        "signature": {"algorithm": "sha256_rsa"},
        "issuer": make_name(issuer),
        "validity": x509.Validity(
            {
                "not_before": x509.Time(
                    {"utc_time": datetime(2025, 1, 1, tzinfo=timezone.utc)}
                ),
                "not_after": x509.Time(
                    {"utc_time": datetime(2035, 1, 1, tzinfo=timezone.utc)}
                ),
            }
        ),
        "subject": make_name(common_name),
        "subject_public_key_info": make_public_key_info(),
    }
    if extensions:
        tbs_fields["extensions"] = x509.Extensions(extensions)

    return x509.Certificate(
        {
            "tbs_certificate": x509.TbsCertificate(tbs_fields),
            "signature_algorithm": {"algorithm": "sha256_rsa"},
            "signature_value": b"\x00" * 32,
        }
    )


def certificate_object(
    certificate: x509.Certificate, *, label: str, object_id: bytes
) -> FakeObject:
    return FakeObject(
        class_=ObjectClass.CERTIFICATE,
        label=label,
        id=object_id,
        value=certificate.dump(),
        private=False,
    )


def private_key_object(*, label: str, object_id: bytes) -> FakeObject:
    return FakeObject(
        class_=ObjectClass.PRIVATE_KEY,
        label=label,
        id=object_id,
        key_type=KeyType.RSA,
        private=True,
    )


def public_key_object(*, label: str, object_id: bytes) -> FakeObject:
    return FakeObject(
        class_=ObjectClass.PUBLIC_KEY,
        label=label,
        id=object_id,
        key_type=KeyType.RSA,
        modulus=RSA_MODULUS.to_bytes(64, byteorder="big"),
        public_exponent=(65537).to_bytes(3, byteorder="big"),
        private=False,
    )


@pytest.fixture(autouse=True)
def _no_module_path_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PKCS11_MODULE_PATH", raising=False)
    monkeypatch.delenv("PKCS11_PIN", raising=False)


@pytest.fixture
def client_certificate() -> x509.Certificate:
    return make_certificate(
        "client.example",
        extended_key_usage=["client_auth"],
        key_usage={"digital_signature"},
        serial_number=2,
    )


@pytest.fixture
def server_certificate() -> x509.Certificate:
    return make_certificate(
        "server.example",
        extended_key_usage=["server_auth"],
        key_usage={"digital_signature", "key_encipherment"},
        serial_number=3,
    )


@pytest.fixture
def token(client_certificate: x509.Certificate, server_certificate: x509.Certificate) -> FakeToken:
    objects = [
        certificate_object(server_certificate, label="server", object_id=b"\x01"),
        public_key_object(label="server", object_id=b"\x01"),
        private_key_object(label="server", object_id=b"\x01"),
        certificate_object(client_certificate, label="test", object_id=b"\x02"),
        public_key_object(label="test", object_id=b"\x02"),
        private_key_object(label="test", object_id=b"\x02"),
        FakeObject(class_=ObjectClass.DATA, label="notes", private=False),
    ]
    return FakeToken("Test Token", objects=objects)


@pytest.fixture
def fake_lib(token: FakeToken) -> FakeLib:
    return FakeLib(
        [
            FakeSlot(0, None),
            FakeSlot(7, token),
            FakeSlot(3, FakeToken("Other Token", serial=b"0099")),
        ]
    )


@pytest.fixture
def loader(fake_lib: FakeLib):
    calls: list[str] = []

    def load(path: str) -> FakeLib:
        calls.append(path)
        return fake_lib

    load.calls = calls  # type: ignore[attr-defined]
    return load
