from __future__ import annotations

import argparse
import base64
import json
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from pkcs11_engine import (
        EngineConfig,
        Pkcs11Engine,
        Pkcs11EngineError,
        StoreInfoType,
        configure_logging,
        load_certificate,
    )
    from pkcs11_engine.x509_ops import dump_certificate_pem, subject_common_name
except ModuleNotFoundError as exc:
    if exc.name in {"pkcs11", "asn1crypto"}:
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  PKCS11_MODULE_PATH   module used when the URI has no module-path
  PKCS11_PIN           PIN used when the URI has no pin-value or pin-source
  PKCS11_PIN_ENV       name of the variable holding the PIN (default PKCS11_PIN)

Examples:
  # List the objects on the first token
  python3 examples/uri_cli.py list "pkcs11:"

  # List private keys (logs in, prompts for the PIN if none is configured)
  python3 examples/uri_cli.py list "pkcs11:token=My%20Token;type=private"

  # Sign a message with a token key
  python3 examples/uri_cli.py sign "pkcs11:object=signing-key;type=private" --message "hello"

  # Export a certificate
  python3 examples/uri_cli.py cert "pkcs11:object=client;type=cert" --out client.pem

  # Pick a TLS client certificate issued by a given CA
  python3 examples/uri_cli.py client-cert --ca-cert ca.pem
"""


def _write_text_output(payload: str, out_path: str | None, label: str) -> None:
    if out_path is None:
        print(payload)
        return
    target = Path(out_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(payload, encoding="utf-8")
    print(f"Wrote {label} to: {target}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve pkcs11: URIs against PKCS#11 tokens.",
        epilog=CLI_HELP_EPILOG,
        formatter_class=_HelpFormatter,
    )
    parser.add_argument(
        "--module-path",
        default=None,
        help="PKCS#11 module to load when the URI has no module-path.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser(
        "list", help="List or load the objects a URI designates.", formatter_class=_HelpFormatter
    )
    list_parser.add_argument("uri", help="pkcs11: URI of the store.")

    sign = subparsers.add_parser(
        "sign", help="Sign a message with a private key.", formatter_class=_HelpFormatter
    )
    sign.add_argument("uri", help="pkcs11: URI of the private key.")
    sign.add_argument("--message", required=True, help="Message to sign.")
    sign.add_argument(
        "--algorithm",
        default=None,
        help="Signing algorithm (default depends on the key type).",
    )
    sign.add_argument("--out", default=None, help="Write the JSON result to this path.")

    public = subparsers.add_parser(
        "public-key", help="Export a public key as base64 DER.", formatter_class=_HelpFormatter
    )
    public.add_argument("uri", help="pkcs11: URI of the public key.")
    public.add_argument("--out", default=None, help="Write the key to this path.")

    cert = subparsers.add_parser(
        "cert", help="Export a certificate as PEM.", formatter_class=_HelpFormatter
    )
    cert.add_argument("uri", help="pkcs11: URI of the certificate.")
    cert.add_argument("--out", default=None, help="Write the PEM to this path.")

    client_cert = subparsers.add_parser(
        "client-cert",
        help="Select a certificate usable for TLS client authentication.",
        formatter_class=_HelpFormatter,
    )
    client_cert.add_argument(
        "--uri", default=None, help="pkcs11: URI restricting the token searched."
    )
    client_cert.add_argument(
        "--ca-cert",
        action="append",
        default=[],
        help="PEM or DER CA certificate whose subject is an accepted issuer. Repeatable.",
    )
    client_cert.add_argument("--out", default=None, help="Write the PEM to this path.")
    return parser


def _run_list(engine: Pkcs11Engine, args: argparse.Namespace) -> None:
    with engine.open_store(args.uri) as store:
        for info in store:
            if info.type is StoreInfoType.NAME:
                print(f"{info.value}\t{info.description}")
            elif info.type is StoreInfoType.CERT:
                print(f"certificate\t{subject_common_name(info.value) or '-'}")
            elif info.type is StoreInfoType.PUBKEY:
                print(f"public-key\t{info.value.algorithm} {info.value.bit_size} bits")
            else:
                print(f"private-key\t{info.value!r}")
        if store.error():
            raise ValueError("The token reported an error while listing objects.")


def _run_sign(engine: Pkcs11Engine, args: argparse.Namespace) -> None:
    with engine.load_private_key(args.uri) as key:
        algorithm = args.algorithm or key.default_algorithm()
        signature = key.sign(args.message.encode("utf-8"), algorithm=algorithm)
    payload = {
        "algorithm": algorithm,
        "signature_b64": base64.b64encode(signature).decode("ascii"),
    }
    _write_text_output(json.dumps(payload, indent=2, sort_keys=True), args.out, "signature")


def _run_public_key(engine: Pkcs11Engine, args: argparse.Namespace) -> None:
    public_key = engine.load_public_key(args.uri)
    _write_text_output(base64.b64encode(public_key.dump()).decode("ascii"), args.out, "public key")


def _run_cert(engine: Pkcs11Engine, args: argparse.Namespace) -> None:
    certificate = engine.load_certificate(args.uri)
    _write_text_output(dump_certificate_pem(certificate).decode("ascii"), args.out, "certificate")


def _run_client_cert(engine: Pkcs11Engine, args: argparse.Namespace) -> None:
    ca_names = [
        load_certificate(Path(path).read_bytes()).subject for path in args.ca_cert
    ]
    certificate, key = engine.select_client_certificate(ca_names, uri=args.uri)
    with key:
        print(f"Selected {subject_common_name(certificate) or '-'} with key {key!r}", file=sys.stderr)
    _write_text_output(dump_certificate_pem(certificate).decode("ascii"), args.out, "certificate")


_COMMANDS = {
    "list": _run_list,
    "sign": _run_sign,
    "public-key": _run_public_key,
    "cert": _run_cert,
    "client-cert": _run_client_cert,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging()
        config = EngineConfig.from_env()
        if args.module_path:
            config = config.with_module_path(args.module_path)
        with Pkcs11Engine(config) as engine:
            _COMMANDS[args.command](engine, args)
        return 0
    except (Pkcs11EngineError, ValueError, OSError) as exc:
        print(f"pkcs11 URI CLI error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
