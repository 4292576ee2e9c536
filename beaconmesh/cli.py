"""Command-line interface for the BeaconMesh description codec.

The CLI exposes the codec without any transport so that operators can check
how large a description's token will be, decode a token captured from a
scanner, or compute a certificate fingerprint.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from .codec import CodecError, DescriptionCodec
from .config import ConfigurationError, MeshConfig, load_mesh_config
from .fingerprint import load_certificate_fingerprint
from .model import DescriptionKind, SessionDescription

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _read_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source).expanduser()
    try:
        return path.read_text()
    except OSError as exc:
        raise CLIError(f"Cannot read {path}: {exc}") from exc


def _load_config(args: argparse.Namespace) -> MeshConfig:
    overrides = {}
    if getattr(args, "max_candidates", None) is not None:
        overrides["max_candidates"] = args.max_candidates
    if getattr(args, "no_compression", False):
        overrides["use_compression"] = False
    return load_mesh_config(config_path=args.config, overrides=overrides)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BeaconMesh description codec")
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (defaults to ~/.beaconmesh.yaml when present)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    encode_parser = subparsers.add_parser("encode", help="encode a session description into a token")
    encode_parser.add_argument(
        "--sdp-file",
        default="-",
        help="File holding the description text ('-' reads stdin)",
    )
    encode_parser.add_argument(
        "--max-candidates",
        type=int,
        default=None,
        help="Maximum number of candidates to keep",
    )
    encode_parser.add_argument(
        "--no-compression",
        action="store_true",
        help="Emit an uncompressed 'B' token",
    )

    decode_parser = subparsers.add_parser("decode", help="rebuild a full description from a token")
    decode_parser.add_argument("token", help="Token text as scanned or pasted")
    decode_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in DescriptionKind],
        required=True,
        help="Whether the token carries an offer or an answer",
    )

    inspect_parser = subparsers.add_parser("inspect", help="show the fields carried by a token")
    inspect_parser.add_argument("token", help="Token text as scanned or pasted")

    fingerprint_parser = subparsers.add_parser(
        "fingerprint", help="print the sha-256 fingerprint of a PEM certificate"
    )
    fingerprint_parser.add_argument("certificate", help="Path to a PEM encoded certificate")

    return parser


def cmd_encode(args: argparse.Namespace) -> None:
    config = _load_config(args)
    codec = DescriptionCodec.from_config(config)
    text = _read_text(args.sdp_file)
    if not text.strip():
        raise CLIError("Description text is empty")
    token = codec.encode(SessionDescription(kind=DescriptionKind.OFFER, sdp=text))
    if len(token) > config.large_token_warning:
        logger.warning("Token is %d characters and may be hard to scan", len(token))
    print(token)


def cmd_decode(args: argparse.Namespace) -> None:
    codec = DescriptionCodec.from_config(_load_config(args))
    description = codec.decode(args.token, DescriptionKind(args.kind))
    sys.stdout.write(description.sdp.replace("\r\n", "\n"))


def cmd_inspect(args: argparse.Namespace) -> None:
    codec = DescriptionCodec.from_config(_load_config(args))
    for line in codec.inspect(args.token):
        print(line)


def cmd_fingerprint(args: argparse.Namespace) -> None:
    path = Path(args.certificate).expanduser()
    try:
        pem_data = path.read_bytes()
    except OSError as exc:
        raise CLIError(f"Cannot read {path}: {exc}") from exc
    try:
        print(load_certificate_fingerprint(pem_data))
    except ValueError as exc:
        raise CLIError(f"Not a PEM certificate: {path}") from exc


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "encode":
            cmd_encode(args)
        elif args.command == "decode":
            cmd_decode(args)
        elif args.command == "inspect":
            cmd_inspect(args)
        elif args.command == "fingerprint":
            cmd_fingerprint(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (CLIError, ConfigurationError, CodecError) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
