# usher/services/tokens.py
import base64
import hashlib
import hmac
import re
import secrets
import string
from typing import Callable

from usher.core.errors import InvalidSignatureError

# Alphanumeric alphabet for base62 tokens (a-zA-Z0-9)
ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
ALPHABET_SIZE = len(ALPHABET)

# Largest multiple of ALPHABET_SIZE not above 256; bytes at or above it are
# rejected so every symbol keeps the same probability.
UNBIASED_BOUND = (256 // ALPHABET_SIZE) * ALPHABET_SIZE

MIN_CHUNK_SIZE = 32

# Unpadded URL-safe base64, as produced by sign_token
SIGNATURE_RE = re.compile(r"[A-Za-z0-9_-]+")


class TokenGenerator:
    """
    Produces fixed-length base62 tokens from a cryptographic byte source.

    Sampling is rejection-based: a byte b is kept only if b < UNBIASED_BOUND
    (248) and then mapped to ALPHABET[b % 62]. Each draw requests
    max(2 * remaining, 32) bytes; a new chunk is drawn only if a chunk runs
    out before the token is complete.
    """

    def __init__(self, length: int, randbytes: Callable[[int], bytes] = secrets.token_bytes) -> None:
        if not isinstance(length, int) or isinstance(length, bool) or length <= 0:
            raise ValueError(f"token length must be a positive integer, got {length!r}")
        self.length = length
        self._randbytes = randbytes

    def generate(self) -> str:
        chars: list[str] = []
        needed = self.length

        while needed > 0:
            chunk = self._randbytes(max(needed * 2, MIN_CHUNK_SIZE))
            for byte in chunk:
                if needed == 0:
                    break
                if byte >= UNBIASED_BOUND:
                    continue
                chars.append(ALPHABET[byte % ALPHABET_SIZE])
                needed -= 1

        return "".join(chars)

    __call__ = generate


def generate_token(length: int) -> str:
    return TokenGenerator(length).generate()


# ---------- Signatures ----------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _mac(token: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).digest()


def sign_token(token: str, secret: str) -> str:
    """
    HMAC-SHA256 of the token, URL-safe base64 without padding.

    Signing does not change what is stored; distribute the signature next to
    the token and check it before looking the invitation up.
    """
    return _b64url(_mac(token, secret))


def verify_token_signature(token: str, signature: str, secret: str) -> str:
    """
    Return the token if `signature` was produced for it, else raise
    InvalidSignatureError.

    Only the exact encoding sign_token emits is accepted: no padding,
    whitespace or characters outside the URL-safe alphabet.
    """
    if not isinstance(signature, str) or not SIGNATURE_RE.fullmatch(signature):
        raise InvalidSignatureError()

    if not hmac.compare_digest(sign_token(token, secret), signature):
        raise InvalidSignatureError()
    return token
