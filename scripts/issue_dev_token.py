#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
from datetime import UTC, datetime, timedelta

import jwt


def main() -> int:
    parser = argparse.ArgumentParser(description="Issue an HS256 bearer token for local API use.")
    parser.add_argument("--tenant-id", default="tenant_default", help="tenant claim")
    parser.add_argument("--subject", default="admin", help="sub claim")
    parser.add_argument("--role", default="admin", help="role claim (admin grants review access)")
    parser.add_argument("--ttl-minutes", type=int, default=60, help="token lifetime")
    args = parser.parse_args()

    secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
    if not secret:
        parser.error("JWT_SHARED_SECRET must be set")

    now = datetime.now(UTC)
    payload = {
        "sub": args.subject,
        "tenant_id": args.tenant_id,
        "role": args.role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=max(1, args.ttl_minutes))).timestamp()),
    }
    issuer = os.environ.get("JWT_ISSUER", "").strip()
    audience = os.environ.get("JWT_AUDIENCE", "").strip()
    if issuer:
        payload["iss"] = issuer
    if audience:
        payload["aud"] = audience
    print(jwt.encode(payload, secret, algorithm="HS256"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
