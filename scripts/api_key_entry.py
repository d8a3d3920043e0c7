#!/usr/bin/env python3
"""Emit an LS_API_KEYS_JSON entry for a new API key."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets

SCOPES = ("jobs:read", "jobs:write", "standings:read", "admin:write")
ROLE_SCOPES = {
    "worker": ["jobs:read", "jobs:write"],
    "feed": ["jobs:write"],
    "reader": ["standings:read"],
    "operator": list(SCOPES),
}


def render_entry(*, key: str, subject: str, principal_type: str, scopes: list[str]) -> dict[str, dict[str, object]]:
    key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return {key_hash: {"subject": subject, "type": principal_type, "scopes": sorted(set(scopes))}}


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit an API key entry for LS_API_KEYS_JSON.")
    parser.add_argument("--subject", required=True, help="Principal name; workers use it as their worker id")
    parser.add_argument("--role", choices=sorted(ROLE_SCOPES), default="worker")
    parser.add_argument("--scope", action="append", choices=SCOPES, help="Override the role's scopes")
    parser.add_argument("--key", help="Existing key to hash; a random key is generated when omitted")
    args = parser.parse_args()

    key = args.key or secrets.token_urlsafe(32)
    principal_type = "operator" if args.role == "operator" else "machine"
    entry = render_entry(
        key=key,
        subject=args.subject,
        principal_type=principal_type,
        scopes=args.scope or ROLE_SCOPES[args.role],
    )

    if not args.key:
        print(f"# api key (store it now, only the hash is kept): {key}")
    print(json.dumps(entry, indent=2))


if __name__ == "__main__":
    main()
