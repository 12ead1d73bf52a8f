"""Concurrent webhook replay check against a running OpsHub API.

Fires the same signed delivery many times at once and reports how many were
accepted versus recognized as duplicates. A healthy deployment accepts
exactly one.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Iterable, Optional
import uuid

import httpx

from src.webhooks.signatures import SIGNATURE_SCHEMES, compute_signature


def _signed_headers(platform: str, body: bytes, secret: Optional[str]) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    scheme = SIGNATURE_SCHEMES.get(platform)
    if scheme is not None and secret:
        headers[scheme.header] = compute_signature(body=body, secret=secret, encoding=scheme.encoding)
    return headers


async def run_replay_check(
    *,
    base_url: str,
    platform: str,
    org_id: str,
    deliveries: int,
    secret: Optional[str],
    timeout_seconds: float,
) -> dict[str, float]:
    event_id = f"replay-{uuid.uuid4().hex[:12]}"
    body = json.dumps({"id": event_id, "type": "replay.check"}).encode("utf-8")
    headers = _signed_headers(platform, body, secret)
    url = f"{base_url.rstrip('/')}/webhooks-ingest"
    params = {"platform": platform, "org_id": org_id}

    started_at = time.perf_counter()
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        responses = await asyncio.gather(
            *(client.post(url, params=params, content=body, headers=headers) for _ in range(deliveries)),
            return_exceptions=True,
        )
    elapsed = time.perf_counter() - started_at

    accepted = duplicates = verified = errors = 0
    for response in responses:
        if isinstance(response, BaseException) or response.status_code != 200:
            errors += 1
            continue
        payload = response.json()
        if payload.get("success"):
            accepted += 1
            verified += 1 if payload.get("is_verified") else 0
        else:
            duplicates += 1

    return {
        "deliveries": float(deliveries),
        "accepted": float(accepted),
        "duplicates": float(duplicates),
        "verified": float(verified),
        "errors": float(errors),
        "elapsed_seconds": elapsed,
    }


def _format_report(result: dict[str, float]) -> Iterable[str]:
    for key in ("deliveries", "accepted", "duplicates", "verified", "errors"):
        yield f"{key}={int(result[key])}"
    yield f"elapsed_seconds={result['elapsed_seconds']:.2f}"
    yield f"idempotent={'yes' if result['accepted'] == 1 and result['errors'] == 0 else 'NO'}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay one webhook concurrently and check deduplication.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--platform", default="shopify", choices=sorted(SIGNATURE_SCHEMES))
    parser.add_argument("--org-id", required=True)
    parser.add_argument("--deliveries", type=int, default=20)
    parser.add_argument("--secret", default=None, help="Store webhook secret used to sign the body.")
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args()

    if args.deliveries <= 0:
        raise ValueError("--deliveries must be positive")

    result = asyncio.run(
        run_replay_check(
            base_url=args.base_url,
            platform=args.platform,
            org_id=args.org_id,
            deliveries=args.deliveries,
            secret=args.secret,
            timeout_seconds=args.timeout,
        )
    )
    for line in _format_report(result):
        print(line)


if __name__ == "__main__":
    main()
