"""
AWS Signature Version 4 for S3 requests.

Builds the canonical request, derives the signing key and returns the headers
to attach. Pure apart from the timestamp, which callers may pass in.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, quote

from .types import StoreCredentials

ALGORITHM = 'AWS4-HMAC-SHA256'
SERVICE = 's3'
UNSIGNED_PAYLOAD = 'UNSIGNED-PAYLOAD'
EMPTY_PAYLOAD_HASH = hashlib.sha256(b'').hexdigest()

# RFC 3986 unreserved characters, never percent-encoded
_UNRESERVED = '-_.~'


@dataclass(frozen=True)
class SignedRequest:
    authorization: str
    amz_date: str
    content_sha256: str
    signature: str
    signed_headers: str
    canonical_request: str
    extra_headers: Dict[str, str] = field(default_factory=dict)

    def headers(self) -> Dict[str, str]:
        """Headers to attach verbatim to the outgoing request."""
        headers = {
            'Authorization': self.authorization,
            'x-amz-date': self.amz_date,
            'x-amz-content-sha256': self.content_sha256,
        }
        headers.update(self.extra_headers)
        return headers


def uri_encode(value: str, encode_slash: bool = True) -> str:
    safe = _UNRESERVED if encode_slash else _UNRESERVED + '/'
    return quote(value, safe=safe)


def canonical_uri(bucket: str, key: str = '') -> str:
    """Path-style canonical URI: ``/{bucket}/{key}`` with the key percent-encoded."""
    return f"/{bucket}/{uri_encode(key, encode_slash=False)}"


def canonical_query_string(query: str) -> str:
    """
    Normalize a raw query string for signing.

    ``uploads`` becomes ``uploads=``; pairs are sorted by encoded key, then value.
    """
    if not query:
        return ''
    pairs = [
        (uri_encode(name), uri_encode(value))
        for name, value in parse_qsl(query, keep_blank_values=True)
    ]
    pairs.sort()
    return '&'.join(f"{name}={value}" for name, value in pairs)


def hash_payload(payload: Union[bytes, str, None]) -> str:
    if not payload:
        return EMPTY_PAYLOAD_HASH
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    return hashlib.sha256(payload).hexdigest()


def hash_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    """SHA-256 of a file, read in chunks so large archives are never buffered."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode('utf-8'), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode('utf-8'), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, SERVICE)
    return _hmac(k_service, 'aws4_request')


def _normalize_header_value(value: str) -> str:
    return ' '.join(str(value).split())


def sign_request(
    credentials: StoreCredentials,
    method: str,
    uri: str,
    query: str = '',
    payload: Union[bytes, str, None] = b'',
    payload_hash: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> SignedRequest:
    """
    Sign one S3 request.

    Args:
        credentials: Store credentials (host and region come from here)
        method: HTTP method
        uri: Canonical URI, already percent-encoded
        query: Raw query string (canonicalized here)
        payload: Request body; ignored when payload_hash is given
        payload_hash: Precomputed SHA-256 hex digest, or UNSIGNED_PAYLOAD
        headers: Extra headers; only ``x-amz-*`` ones are signed and returned
        now: Signing time (defaults to current UTC time)

    Returns:
        SignedRequest with the Authorization header and its companions
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    amz_date = now.strftime('%Y%m%dT%H%M%SZ')
    date_stamp = now.strftime('%Y%m%d')

    content_sha256 = payload_hash if payload_hash else hash_payload(payload)

    canonical_headers = {
        'host': credentials.host,
        'x-amz-content-sha256': content_sha256,
        'x-amz-date': amz_date,
    }
    extra_headers = {}
    for name, value in (headers or {}).items():
        lowered = name.lower()
        if not lowered.startswith('x-amz-') or lowered in canonical_headers:
            continue
        canonical_headers[lowered] = _normalize_header_value(value)
        extra_headers[lowered] = str(value)

    names = sorted(canonical_headers)
    signed_headers = ';'.join(names)
    header_block = ''.join(f"{name}:{canonical_headers[name]}\n" for name in names)

    canonical_request = '\n'.join([
        method.upper(),
        uri,
        canonical_query_string(query),
        header_block,
        signed_headers,
        content_sha256,
    ])

    scope = f"{date_stamp}/{credentials.region}/{SERVICE}/aws4_request"
    string_to_sign = '\n'.join([
        ALGORITHM,
        amz_date,
        scope,
        hashlib.sha256(canonical_request.encode('utf-8')).hexdigest(),
    ])

    signing_key = derive_signing_key(credentials.secret_key, date_stamp, credentials.region)
    signature = hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={credentials.access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    return SignedRequest(
        authorization=authorization,
        amz_date=amz_date,
        content_sha256=content_sha256,
        signature=signature,
        signed_headers=signed_headers,
        canonical_request=canonical_request,
        extra_headers=extra_headers,
    )
