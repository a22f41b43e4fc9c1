"""
Request signing for the cloud billing APIs.

Provides the AWS Signature Version 4 scheme and the Alibaba Cloud RPC
(HMAC-SHA1, signature version 1.0) scheme behind a single signer interface.
Signing is pure: the same request, credentials and timestamp (and nonce, for
Alibaba Cloud) always yield the same bytes.
"""

import base64
import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from urllib.parse import quote

from pydantic import BaseModel, Field

from ..providers.base import Credentials, SigningError

logger = logging.getLogger(__name__)

EMPTY_PAYLOAD_SHA256 = hashlib.sha256(b"").hexdigest()


class RequestDescriptor(BaseModel):
    """Provider-neutral description of an outbound HTTP request, before signing."""

    method: str = "GET"
    scheme: str = "https"
    host: str = ""
    path: str = "/"
    query: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    # AWS scope
    region: str | None = None
    service: str | None = None
    # Alibaba Cloud RPC action
    action: str | None = None
    version: str | None = None

    @property
    def label(self) -> str:
        """Short human-readable name of the call, for logs."""
        if self.action:
            return self.action
        target = self.headers.get("X-Amz-Target") or self.query.get("Action")
        if target:
            return target
        return f"{self.method} {self.host}{self.path}"


class SignedRequest(BaseModel):
    """A request ready to be put on the wire."""

    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    signature: str


def percent_encode(value: str) -> str:
    """RFC 3986 encoding that leaves only unreserved characters as-is."""
    return quote(str(value), safe="-_.~")


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _require_credentials(credentials: Credentials | None) -> tuple[str, str]:
    """Return (access key id, secret) or raise SigningError."""
    if credentials is None:
        raise SigningError("No credentials supplied")

    access_key_id = credentials.access_key_id or ""
    secret = (
        credentials.secret_access_key.get_secret_value()
        if credentials.secret_access_key is not None
        else ""
    )

    if not access_key_id or not secret:
        raise SigningError("Access key id and secret are both required")
    if any(c.isspace() for c in access_key_id) or "/" in access_key_id:
        raise SigningError("Access key id is malformed")
    if any(c.isspace() for c in secret):
        raise SigningError("Secret key is malformed")

    return access_key_id, secret


class RequestSigner(ABC):
    """Produces provider-mandated authentication material for a request."""

    @abstractmethod
    def sign(
        self, request: RequestDescriptor, credentials: Credentials, timestamp: datetime
    ) -> SignedRequest:
        """
        Sign a request.

        Raises:
            SigningError: credentials absent/malformed or descriptor incomplete
        """
        pass


def encode_path(path: str) -> str:
    """Percent-encode each path segment, keeping the separators; the form sent on the wire."""
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    return "/".join(percent_encode(segment) for segment in path.split("/"))


def canonical_uri(path: str, service: str | None = None) -> str:
    """
    Canonical URI for SigV4.

    Every service except S3 encodes the already encoded path segments a second time.
    """
    encoded = encode_path(path)
    if service == "s3":
        return encoded
    return "/".join(percent_encode(segment) for segment in encoded.split("/"))


def canonical_query_string(query: dict[str, str]) -> str:
    """Encoded name=value pairs sorted by encoded name, then encoded value."""
    pairs = sorted((percent_encode(k), percent_encode(v)) for k, v in query.items())
    return "&".join(f"{k}={v}" for k, v in pairs)


def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
    """
    Build the canonical header block and the signed header list.

    Names are lowercased and sorted; values are trimmed and runs of inner
    whitespace collapse to one space.
    """
    normalized: dict[str, str] = {}
    for name, value in headers.items():
        normalized[name.strip().lower()] = " ".join(str(value).split())

    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret: str, date_stamp: str, region: str, service: str) -> bytes:
    """Iterated HMAC derivation: date, region, service, then the terminator."""
    k_date = _hmac_sha256(f"AWS4{secret}".encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


class AWSSigV4Signer(RequestSigner):
    """AWS Signature Version 4."""

    algorithm = "AWS4-HMAC-SHA256"

    def __init__(self, sign_content_sha256: bool = True):
        """
        Args:
            sign_content_sha256: Send and sign the X-Amz-Content-Sha256 header
        """
        self.sign_content_sha256 = sign_content_sha256

    def canonical_request(
        self, request: RequestDescriptor, headers: dict[str, str], payload_hash: str
    ) -> tuple[str, str]:
        """Return the canonical request and its signed header list."""
        header_block, signed_headers = canonical_headers(headers)
        canonical = "\n".join(
            [
                request.method.upper(),
                canonical_uri(request.path, request.service),
                canonical_query_string(request.query),
                header_block,
                signed_headers,
                payload_hash,
            ]
        )
        return canonical, signed_headers

    def sign(
        self, request: RequestDescriptor, credentials: Credentials, timestamp: datetime
    ) -> SignedRequest:
        access_key_id, secret = _require_credentials(credentials)
        if not request.host:
            raise SigningError("Request host is required for AWS signing")
        if not request.region or not request.service:
            raise SigningError("Region and service are required for AWS signing")

        ts = _as_utc(timestamp)
        amz_date = ts.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = ts.strftime("%Y%m%d")

        body = request.body.encode("utf-8")
        payload_hash = hashlib.sha256(body).hexdigest() if body else EMPTY_PAYLOAD_SHA256

        headers = {name.lower(): value for name, value in request.headers.items()}
        headers["host"] = request.host
        headers["x-amz-date"] = amz_date
        if self.sign_content_sha256:
            headers["x-amz-content-sha256"] = payload_hash
        if credentials.session_token is not None:
            headers["x-amz-security-token"] = credentials.session_token.get_secret_value()

        canonical, signed_headers = self.canonical_request(request, headers, payload_hash)

        scope = f"{date_stamp}/{request.region}/{request.service}/aws4_request"
        string_to_sign = "\n".join(
            [
                self.algorithm,
                amz_date,
                scope,
                hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
            ]
        )

        signing_key = derive_signing_key(secret, date_stamp, request.region, request.service)
        signature = hmac.new(
            signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        headers["authorization"] = (
            f"{self.algorithm} Credential={access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        url = f"{request.scheme}://{request.host}{encode_path(request.path)}"
        query = canonical_query_string(request.query)
        if query:
            url = f"{url}?{query}"

        return SignedRequest(
            method=request.method.upper(),
            url=url,
            headers=headers,
            body=body,
            signature=signature,
        )


class AliyunRPCSigner(RequestSigner):
    """Alibaba Cloud RPC signature (HMAC-SHA1, version 1.0)."""

    signature_method = "HMAC-SHA1"
    signature_version = "1.0"

    # Parameters owned by the signer; callers cannot override them
    _reserved = {
        "Signature",
        "AccessKeyId",
        "SignatureMethod",
        "SignatureVersion",
        "SignatureNonce",
        "Timestamp",
        "Action",
        "Version",
        "SecurityToken",
    }

    def __init__(self, nonce_factory: Callable[[], str] | None = None):
        """
        Args:
            nonce_factory: Source of the per-request SignatureNonce (UUID4 by default)
        """
        self._nonce_factory = nonce_factory or (lambda: str(uuid.uuid4()))

    def string_to_sign(self, method: str, params: dict[str, str]) -> str:
        canonical = "&".join(
            f"{percent_encode(k)}={percent_encode(v)}" for k, v in sorted(params.items())
        )
        return f"{method.upper()}&{percent_encode('/')}&{percent_encode(canonical)}"

    def sign(
        self, request: RequestDescriptor, credentials: Credentials, timestamp: datetime
    ) -> SignedRequest:
        access_key_id, secret = _require_credentials(credentials)
        if not request.host:
            raise SigningError("Request host is required for Alibaba Cloud signing")
        if not request.action or not request.version:
            raise SigningError("Action and version are required for Alibaba Cloud signing")

        ts = _as_utc(timestamp)
        params = {"Format": "JSON"}
        params.update({k: v for k, v in request.query.items() if k not in self._reserved})
        params.update(
            {
                "Action": request.action,
                "Version": request.version,
                "AccessKeyId": access_key_id,
                "SignatureMethod": self.signature_method,
                "SignatureVersion": self.signature_version,
                "SignatureNonce": self._nonce_factory(),
                "Timestamp": ts.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        )
        if credentials.session_token is not None:
            params["SecurityToken"] = credentials.session_token.get_secret_value()

        digest = hmac.new(
            f"{secret}&".encode("utf-8"),
            self.string_to_sign(request.method, params).encode("utf-8"),
            hashlib.sha1,
        ).digest()
        signature = base64.b64encode(digest).decode("ascii")
        params["Signature"] = signature

        query = "&".join(
            f"{percent_encode(k)}={percent_encode(v)}" for k, v in sorted(params.items())
        )
        return SignedRequest(
            method=request.method.upper(),
            url=f"{request.scheme}://{request.host}/?{query}",
            headers=dict(request.headers),
            body=request.body.encode("utf-8"),
            signature=signature,
        )
