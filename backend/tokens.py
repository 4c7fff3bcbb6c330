# Bearer secrets: retrieval tokens, magic-link tokens and signed session credentials.
import base64
import hashlib
import hmac
import json
import re
import secrets
from datetime import datetime, timezone

TOKEN_BYTES = 32  # 256 bits of entropy
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")
_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def generate_token() -> str:
    """Return a fresh URL-safe secret (32 random bytes, base64url, 43 chars)."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str, salt: str) -> str:
    """Salted one-way digest of a secret.

    Args:
        token (str): Plaintext secret.
        salt (str): Process-wide salt (defeats precomputed dictionaries).

    Returns:
        str: 64-char hex SHA-256 of ``token + salt``.

    Raises:
        ValueError: If token is empty.
    """
    if not token:
        raise ValueError("Token is required for hashing")
    return hashlib.sha256((token + salt).encode("utf-8")).hexdigest()


def verify_token(token, stored_hash, salt: str) -> bool:
    """Check a plaintext secret against its stored digest in constant time.

    Never raises: malformed input is indistinguishable from a wrong secret.
    """
    if not token or not isinstance(token, str):
        return False
    if not isinstance(stored_hash, str) or not _DIGEST_RE.match(stored_hash):
        return False
    try:
        computed = hash_token(token, salt)
    except (ValueError, UnicodeEncodeError):
        return False
    return hmac.compare_digest(computed.encode("ascii"), stored_hash.encode("ascii"))


def is_valid_token_format(token) -> bool:
    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


def create_retrieval_token(salt: str) -> tuple[str, str, datetime]:
    """Mint a retrieval token.

    Returns:
        tuple[str, str, datetime]: (plaintext for the caller, digest to store, created_at)
    """
    token = generate_token()
    return token, hash_token(token, salt), datetime.now(timezone.utc)


class URLSafeSerializer:
    """Tiny URL-safe HMAC serializer.

    Encodes/decodes JSON payloads with an HMAC-SHA256 signature:
    token = base64url(payload) + "." + base64url(signature).
    """

    def __init__(self, secret_key, salt=""):
        """
        Args:
            secret_key (str): Secret bytes used for HMAC.
            salt (str): Optional salt mixed into the HMAC key.
        """
        self.secret_key = (secret_key or "").encode("utf-8")
        self.salt = salt or ""

    def _b64(self, data: bytes) -> str:
        """Return base64url-encoded string without padding."""
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    def _unb64(self, s: str) -> bytes:
        """Decode base64url string that may be missing padding."""
        s_bytes = s.encode("ascii")
        padding = b"=" * (-len(s_bytes) % 4)
        return base64.urlsafe_b64decode(s_bytes + padding)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self.secret_key + self.salt.encode("utf-8"), payload, hashlib.sha256).digest()

    def dumps(self, obj) -> str:
        """Serialize and sign an object.

        Args:
            obj (Any): JSON-serializable value.

        Returns:
            str: URL-safe token "<b64json>.<b64sig>".
        """
        payload = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{self._b64(payload)}.{self._b64(self._sign(payload))}"

    def loads(self, token: str):
        """Verify signature and deserialize an object.

        Args:
            token (str): Token "<b64json>.<b64sig>".

        Returns:
            Any: Decoded JSON payload.

        Raises:
            ValueError: If token format or signature is invalid.
        """
        try:
            payload_b64, sig_b64 = token.rsplit(".", 1)
            payload = self._unb64(payload_b64)
            sig = self._unb64(sig_b64)
        except (AttributeError, ValueError, UnicodeEncodeError):
            raise ValueError("Invalid token format")
        if not hmac.compare_digest(sig, self._sign(payload)):
            raise ValueError("Invalid signature")
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValueError("Invalid token payload")


def load_with_expiry(serializer: URLSafeSerializer, token: str, now: datetime) -> tuple[dict, bool]:
    """Decode a signed token and determine if it is expired.

    Args:
        serializer (URLSafeSerializer): Signer that produced the token.
        token (str): Signed token to validate.
        now (datetime): Current aware UTC time.

    Returns:
        tuple[dict, bool]: (payload, expired_flag)

    Raises:
        ValueError: If token format/signature invalid or payload is not an object.
    """
    data = serializer.loads(token)
    if not isinstance(data, dict):
        raise ValueError("Invalid token payload")
    try:
        exp = int(data.get("exp", 0) or 0)
    except (TypeError, ValueError):
        raise ValueError("Invalid token expiry")
    expired = not exp or now.timestamp() > exp
    return data, expired
