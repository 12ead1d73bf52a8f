"""Per-platform webhook signature schemes."""

from __future__ import annotations

import base64
from dataclasses import dataclass
import hashlib
import hmac
from typing import Mapping, Optional


@dataclass(frozen=True)
class SignatureScheme:
    header: str
    encoding: str


SIGNATURE_SCHEMES = {
    "shopify": SignatureScheme(header="x-shopify-hmac-sha256", encoding="base64"),
    "etsy": SignatureScheme(header="x-etsy-hmac-sha256", encoding="base64"),
    "printify": SignatureScheme(header="x-printify-hmac-sha256", encoding="base64"),
    "gumroad": SignatureScheme(header="x-gumroad-signature", encoding="hex"),
}


def compute_signature(*, body: bytes, secret: str, encoding: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, digestmod=hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    if encoding == "hex":
        return digest.hex()
    raise ValueError(f"Unsupported signature encoding: {encoding}")


def extract_signature(platform: str, headers: Mapping[str, str]) -> Optional[str]:
    scheme = SIGNATURE_SCHEMES.get(platform)
    if scheme is None:
        return None
    value = headers.get(scheme.header)
    return value.strip() if value else None


def verify_signature(
    *,
    platform: str,
    body: bytes,
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """True only when a secret and signature exist and match in constant time."""

    scheme = SIGNATURE_SCHEMES.get(platform)
    if scheme is None or not signature or not secret:
        return False
    expected = compute_signature(body=body, secret=secret, encoding=scheme.encoding)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
