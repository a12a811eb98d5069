"""
AWS Signature Version 4 for S3-compatible object stores.

Everything in here is a pure function of its inputs (no clock, no network),
so signatures can be pinned in tests against published vectors.
"""
from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping
from urllib.parse import quote

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()

_slashes_re = re.compile(r"/+")
_spaces_re = re.compile(r"\s+")


@dataclass(frozen=True)
class Credentials:
    access_key: str
    secret_key: str
    region: str


@dataclass(frozen=True)
class SignedRequest:
    canonical_request: str
    string_to_sign: str
    signature: str
    headers: dict[str, str]


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def amz_date(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(AMZ_DATE_FORMAT)


def canonical_object_path(bucket: str, key: str) -> str:
    """/<bucket>/<key>, duplicate slashes collapsed, each segment URI-encoded."""
    path = _slashes_re.sub("/", f"/{bucket}/{key}")
    return quote(path, safe="/-_.~")


def signing_key(secret_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, TERMINATOR)


def credential_scope(date_stamp: str, region: str, service: str = SERVICE) -> str:
    return f"{date_stamp}/{region}/{service}/{TERMINATOR}"


def _canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    normalized = {name.strip().lower(): _spaces_re.sub(" ", str(value).strip()) for name, value in headers.items()}
    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def sign_request(
    method: str,
    host: str,
    path: str,
    headers: Mapping[str, str] | None,
    payload: bytes,
    credentials: Credentials,
    timestamp: datetime,
) -> SignedRequest:
    """
    Sign a request with an empty query string.

    `path` must already be URI-encoded (see canonical_object_path).
    `headers` are extra headers to sign on top of host / x-amz-content-sha256 / x-amz-date.
    """
    date_time = amz_date(timestamp)
    date_stamp = date_time[:8]
    payload_hash = sha256_hex(payload)

    to_sign: dict[str, str] = {name.lower(): value for name, value in (headers or {}).items()}
    to_sign["host"] = host
    to_sign["x-amz-content-sha256"] = payload_hash
    to_sign["x-amz-date"] = date_time

    header_block, signed_headers = _canonical_headers(to_sign)
    canonical_request = "\n".join(
        [
            method.upper(),
            path,
            "",
            header_block,
            signed_headers,
            payload_hash,
        ]
    )

    scope = credential_scope(date_stamp, credentials.region)
    string_to_sign = "\n".join([ALGORITHM, date_time, scope, sha256_hex(canonical_request)])

    key = signing_key(credentials.secret_key, date_stamp, credentials.region)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={credentials.access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    out = dict(headers or {})
    out.update(
        {
            "Authorization": authorization,
            "x-amz-date": date_time,
            "x-amz-content-sha256": payload_hash,
            "Host": host,
        }
    )
    return SignedRequest(
        canonical_request=canonical_request,
        string_to_sign=string_to_sign,
        signature=signature,
        headers=out,
    )
