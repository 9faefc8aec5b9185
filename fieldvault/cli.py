#!/usr/bin/env python3
"""
CLI for fieldvault field-level encryption.

Commands:
  keygen [--fields F]        Print a new 256-bit key, or a table key set for a field schema
  auth-key <key>             Print the e2ee auth key for a raw key (or check one with --verify)
  encrypt <record> ...       Encrypt a JSON record into an encrypted payload
  verify <payload> ...       Check a payload's record hashes; exit 1 on mismatch
  strength <key>             Score a key and print suggestions
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import config, kdf
from .cipher import generate_key
from .e2ee import compute_encryption_auth_key, verify_encryption_key
from .field_types import algorithm_for_field_type, policies_for_fields
from .key_manager import derive_field_key
from .models import Algorithm, EncryptedPayload
from .payload import build_encrypted_payload, verify_record_integrity


def load_json(path: str) -> Any:
    p = Path(path)
    if not p.is_file():
        print("File not found:", p, file=sys.stderr)
        sys.exit(1)
    with open(p, "r", encoding="utf-8") as f:
        return json.load(f)


def cmd_keygen(args: argparse.Namespace) -> None:
    if not args.fields:
        print(generate_key())
        return
    schema = load_json(args.fields)
    master = kdf.generate_random_key()
    field_keys = {}
    for name, field_type in schema.items():
        algorithm = algorithm_for_field_type(field_type)
        if algorithm != Algorithm.NONE:
            field_keys[name] = derive_field_key(master, name, algorithm)
    print(json.dumps({"master_key": master, "field_keys": field_keys}, indent=2))


def cmd_auth_key(args: argparse.Namespace) -> None:
    if args.verify:
        ok = verify_encryption_key(args.key, args.verify)
        print("match" if ok else "no match")
        if not ok:
            sys.exit(1)
        return
    print(compute_encryption_auth_key(args.key))


def _field_keys(path: str) -> dict:
    keys = load_json(path)
    # accept either a plain field -> key map or keygen's table output
    return keys.get("field_keys", keys) if isinstance(keys, dict) else {}


def cmd_encrypt(args: argparse.Namespace) -> None:
    record = load_json(args.record)
    policies = policies_for_fields(load_json(args.fields), e2ee=args.e2ee)
    payload = build_encrypted_payload(record, policies, _field_keys(args.keys), pack_cipher=args.pack)
    print(payload.model_dump_json(indent=2))


def cmd_verify(args: argparse.Namespace) -> None:
    payload = EncryptedPayload.model_validate(load_json(args.payload))
    report = verify_record_integrity(
        payload.record,
        payload.record_hashes,
        _field_keys(args.keys),
        expected_total_hash=payload.record_hash or None,
    )
    print(report.model_dump_json(indent=2))
    if not report.ok:
        sys.exit(1)


def cmd_strength(args: argparse.Namespace) -> None:
    result = kdf.validate_key_strength(args.key)
    print("Score:", result.score, "(valid)" if result.is_valid else "(weak)")
    for suggestion in result.suggestions:
        print(" -", suggestion)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Client-side field-level encryption")
    sub = parser.add_subparsers(dest="command", required=True)
    p_keygen = sub.add_parser("keygen", help="Generate a key or a table key set")
    p_keygen.add_argument("--fields", help="JSON file mapping field name -> field type")
    p_auth = sub.add_parser("auth-key", help="Compute or verify an e2ee auth key")
    p_auth.add_argument("key", help="Raw table encryption key")
    p_auth.add_argument("--verify", metavar="AUTH_KEY", help="Stored auth key to check against")
    p_encrypt = sub.add_parser("encrypt", help="Encrypt a JSON record")
    p_encrypt.add_argument("record", help="JSON file with plaintext field values")
    p_encrypt.add_argument("--fields", required=True, help="JSON file mapping field name -> field type")
    p_encrypt.add_argument("--keys", required=True, help="JSON file with field keys")
    p_encrypt.add_argument("--pack", action="store_true", help="Emit cipher fields as b64(iv || ciphertext)")
    p_encrypt.add_argument("--e2ee", action="store_true", help="Mark policies as end-to-end encrypted")
    p_verify = sub.add_parser("verify", help="Verify an encrypted payload")
    p_verify.add_argument("payload", help="JSON file with an encrypted payload")
    p_verify.add_argument("--keys", required=True, help="JSON file with field keys")
    p_strength = sub.add_parser("strength", help="Score a key")
    p_strength.add_argument("key", help="Key to score")
    args = parser.parse_args(argv)
    if args.command == "keygen":
        cmd_keygen(args)
    elif args.command == "auth-key":
        cmd_auth_key(args)
    elif args.command == "encrypt":
        cmd_encrypt(args)
    elif args.command == "verify":
        cmd_verify(args)
    elif args.command == "strength":
        cmd_strength(args)


if __name__ == "__main__":
    main()
