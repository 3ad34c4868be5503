from __future__ import annotations

import os
import shutil
import subprocess
import uuid
from pathlib import Path

import pkcs11
import pytest
from pkcs11 import KeyType, Mechanism

from pkcs11_engine import (
    AuthenticationError,
    EngineConfig,
    NoSuchKeyError,
    Pkcs11Engine,
    Secret,
    StoreInfoType,
    percent_encode,
)

pytestmark = pytest.mark.integration


def _candidate_module_paths() -> list[Path]:
    paths: list[Path] = []

    env_path = os.environ.get("PKCS11_MODULE_PATH")
    if env_path:
        paths.append(Path(env_path))

    brew = shutil.which("brew")
    if brew:
        try:
            proc = subprocess.run(
                [brew, "--prefix", "softhsm"],
                check=True,
                capture_output=True,
                text=True,
            )
            prefix = proc.stdout.strip()
            if prefix:
                paths.append(Path(prefix) / "lib/softhsm/libsofthsm2.so")
        except subprocess.SubprocessError:
            pass

    paths.extend(
        [
            Path("/opt/homebrew/lib/softhsm/libsofthsm2.so"),
            Path("/usr/local/lib/softhsm/libsofthsm2.so"),
            Path("/usr/lib/softhsm/libsofthsm2.so"),
            Path("/usr/lib/x86_64-linux-gnu/softhsm/libsofthsm2.so"),
        ]
    )
    return paths


def _resolve_softhsm_module() -> Path | None:
    for candidate in _candidate_module_paths():
        if candidate.exists():
            return candidate
    return None


@pytest.fixture(scope="session")
def softhsm_runtime(tmp_path_factory: pytest.TempPathFactory) -> dict[str, str]:
    util = shutil.which("softhsm2-util")
    if util is None:
        pytest.skip("softhsm2-util was not found. Install SoftHSM v2 for integration tests.")

    module_path = _resolve_softhsm_module()
    if module_path is None:
        pytest.skip(
            "SoftHSM PKCS#11 module was not found. Set PKCS11_MODULE_PATH to libsofthsm2.so."
        )

    runtime_dir = tmp_path_factory.mktemp("softhsm-runtime")
    tokens_dir = runtime_dir / "tokens"
    tokens_dir.mkdir()

    conf_path = runtime_dir / "softhsm2.conf"
    conf_path.write_text(
        "\n".join(
            [
                f"directories.tokendir = {tokens_dir}",
                "objectstore.backend = file",
                "log.level = ERROR",
                "",
            ]
        ),
        encoding="utf-8",
    )

    token_label = f"pytest-token-{uuid.uuid4().hex[:8]}"
    so_pin = "12345678"
    user_pin = "123456"

    env = os.environ.copy()
    env["SOFTHSM2_CONF"] = str(conf_path)

    proc = subprocess.run(
        [
            util,
            "--init-token",
            "--free",
            "--label",
            token_label,
            "--so-pin",
            so_pin,
            "--pin",
            user_pin,
        ],
        capture_output=True,
        text=True,
        env=env,
    )
    if proc.returncode != 0:
        pytest.fail(
            "Failed to initialize SoftHSM token.\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}"
        )

    return {
        "module_path": str(module_path),
        "token_label": token_label,
        "user_pin": user_pin,
        "softhsm2_conf": str(conf_path),
    }


@pytest.fixture
def provisioned_token(
    softhsm_runtime: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> dict[str, str]:
    monkeypatch.setenv("SOFTHSM2_CONF", softhsm_runtime["softhsm2_conf"])

    key_label = f"engine-key-{uuid.uuid4().hex[:8]}"
    key_id = uuid.uuid4().bytes[:4]
    lib = pkcs11.lib(softhsm_runtime["module_path"])
    token = lib.get_token(token_label=softhsm_runtime["token_label"])
    with token.open(user_pin=softhsm_runtime["user_pin"], rw=True) as session:
        session.generate_keypair(
            KeyType.RSA, 2048, id=key_id, label=key_label, store=True
        )

    return {
        **softhsm_runtime,
        "key_label": key_label,
        "key_id": percent_encode(key_id),
        "token_uri": f"pkcs11:token={percent_encode(softhsm_runtime['token_label'])}",
    }


def _engine(provisioned_token: dict[str, str], pin: str | None = None) -> Pkcs11Engine:
    config = EngineConfig(
        module_path=provisioned_token["module_path"],
        pin=Secret(pin or provisioned_token["user_pin"]),
    )
    return Pkcs11Engine(config, prompt=None)


def test_load_private_key_and_sign(provisioned_token: dict[str, str]) -> None:
    payload = b"engine-signing-payload"
    uri = (
        f"{provisioned_token['token_uri']};object={provisioned_token['key_label']};"
        "type=private"
    )

    with _engine(provisioned_token) as engine:
        with engine.load_private_key(uri) as key:
            assert key.key_type == KeyType.RSA
            signature = key.sign(payload)

    lib = pkcs11.lib(provisioned_token["module_path"])
    token = lib.get_token(token_label=provisioned_token["token_label"])
    with token.open(user_pin=provisioned_token["user_pin"]) as session:
        public_key = session.get_key(
            object_class=pkcs11.ObjectClass.PUBLIC_KEY,
            label=provisioned_token["key_label"],
        )
        assert public_key.verify(payload, signature, mechanism=Mechanism.SHA256_RSA_PKCS)


def test_load_public_key_by_id(provisioned_token: dict[str, str]) -> None:
    uri = f"{provisioned_token['token_uri']};id={provisioned_token['key_id']};type=public"

    with _engine(provisioned_token) as engine:
        public_key = engine.load_public_key(uri)

    assert public_key.algorithm == "rsa"
    assert public_key.bit_size == 2048


def test_store_lists_provisioned_objects(provisioned_token: dict[str, str]) -> None:
    with _engine(provisioned_token) as engine:
        with engine.open_store(f"{provisioned_token['token_uri']};type=private") as store:
            names = [entry.value for entry in store if entry.type is StoreInfoType.NAME]

    assert (
        f"pkcs11:object={provisioned_token['key_label']};"
        f"id={provisioned_token['key_id']};type=private"
    ) in names


def test_wrong_pin_and_missing_key(provisioned_token: dict[str, str]) -> None:
    uri = f"{provisioned_token['token_uri']};object=no-such-key;type=private"

    with _engine(provisioned_token) as engine:
        with pytest.raises(NoSuchKeyError):
            engine.load_private_key(uri)

    with _engine(provisioned_token, pin="000000") as engine:
        with pytest.raises(AuthenticationError):
            engine.load_private_key(uri)
