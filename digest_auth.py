# digest_auth.py
"""
HTTP Digest access authentication (RFC 7616, with RFC 2069 fallback when the
server does not offer a qop).
"""

import hashlib
import os
import re
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

from cycle_models import AuthConfig, AuthError, logger

_HASHES = {
    "MD5": hashlib.md5,
    "SHA-256": hashlib.sha256,
    "SHA-512-256": lambda data: hashlib.new("sha512_256", data),
}

# key=value or key="quoted value" (quoted strings may contain commas and escaped quotes)
_param_regex = re.compile(r'([\w\-]+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]*))')
_scheme_regex = re.compile(r'(?:^|,)\s*digest\s+', re.IGNORECASE)


class DigestChallenge(BaseModel):
    realm: str
    nonce: str
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: str = "MD5"
    stale: bool = False

    model_config = ConfigDict(frozen=True)


def parse_challenge(header: Optional[str]) -> DigestChallenge:
    """Parse the Digest challenge out of a WWW-Authenticate header value."""
    if not header:
        raise AuthError("401 response carries no WWW-Authenticate challenge")

    scheme_match = _scheme_regex.search(header)
    if not scheme_match:
        raise AuthError(f"WWW-Authenticate does not offer Digest: '{header[:100]}'")

    params: Dict[str, str] = {}
    for match in _param_regex.finditer(header, scheme_match.end()):
        key = match.group(1).lower()
        if key in params:
            # A repeated parameter means the next challenge has started.
            break
        value = match.group(2) if match.group(2) is not None else match.group(3)
        params[key] = value.replace('\\"', '"')

    if params.get("realm") is None or not params.get("nonce"):
        raise AuthError(f"Digest challenge is missing realm or nonce: '{header[:100]}'")

    qop = None
    if params.get("qop"):
        offered = [q.strip().lower() for q in params["qop"].split(",")]
        if "auth" in offered:
            qop = "auth"
        else:
            raise AuthError(f"Digest challenge offers unsupported qop '{params['qop']}'")

    algorithm = params.get("algorithm", "MD5").upper()
    base_algorithm = algorithm[:-5] if algorithm.endswith("-SESS") else algorithm
    if base_algorithm not in _HASHES:
        raise AuthError(f"Digest challenge uses unsupported algorithm '{algorithm}'")

    return DigestChallenge(
        realm=params["realm"],
        nonce=params["nonce"],
        qop=qop,
        opaque=params.get("opaque"),
        algorithm=algorithm,
        stale=params.get("stale", "").lower() == "true",
    )


def _hash_hex(algorithm: str, data: str) -> str:
    base_algorithm = algorithm[:-5] if algorithm.endswith("-SESS") else algorithm
    return _HASHES[base_algorithm](data.encode("utf-8")).hexdigest()


def request_uri(url: str) -> str:
    """The request-target used in the digest computation: path plus query."""
    parsed = urlparse(url)
    uri = parsed.path or "/"
    if parsed.query:
        uri = f"{uri}?{parsed.query}"
    return uri


def compute_response(
    method: str,
    uri: str,
    username: str,
    password: str,
    challenge: DigestChallenge,
    nc: int = 1,
    cnonce: Optional[str] = None,
) -> str:
    algorithm = challenge.algorithm
    ha1 = _hash_hex(algorithm, f"{username}:{challenge.realm}:{password}")
    if algorithm.endswith("-SESS"):
        ha1 = _hash_hex(algorithm, f"{ha1}:{challenge.nonce}:{cnonce}")
    ha2 = _hash_hex(algorithm, f"{method.upper()}:{uri}")
    if challenge.qop:
        return _hash_hex(algorithm, f"{ha1}:{challenge.nonce}:{nc:08x}:{cnonce}:{challenge.qop}:{ha2}")
    return _hash_hex(algorithm, f"{ha1}:{challenge.nonce}:{ha2}")


def authorize(
    method: str,
    uri: str,
    auth: Optional[AuthConfig],
    challenge: Optional[DigestChallenge] = None,
    *,
    nc: int = 1,
    cnonce: Optional[str] = None,
) -> str:
    """
    Build the Authorization header value for one request.
    Without a challenge, realm and nonce must be pre-set on the AuthConfig.
    """
    if auth is None or not auth.username:
        raise AuthError("Digest challenge received but no credentials are configured")

    if challenge is None:
        if auth.realm is None or not auth.nonce:
            raise AuthError("No digest challenge available and no realm/nonce configured")
        challenge = DigestChallenge(realm=auth.realm, nonce=auth.nonce)

    if (challenge.qop or challenge.algorithm.endswith("-SESS")) and cnonce is None:
        cnonce = os.urandom(8).hex()

    response = compute_response(method, uri, auth.username, auth.password, challenge, nc=nc, cnonce=cnonce)

    parts = [
        f'username="{auth.username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
        f'response="{response}"',
        f'algorithm={challenge.algorithm}',
    ]
    if challenge.opaque is not None:
        parts.append(f'opaque="{challenge.opaque}"')
    if challenge.qop:
        parts.extend([f'qop={challenge.qop}', f'nc={nc:08x}', f'cnonce="{cnonce}"'])
    return "Digest " + ", ".join(parts)


class DigestState:
    """
    Remembers the last challenge per origin so later cycles can authorize
    preemptively instead of priming with an unauthenticated request.
    """
    def __init__(self):
        self._challenges: Dict[str, Tuple[DigestChallenge, int]] = {}

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}".lower()

    def remember(self, url: str, challenge: DigestChallenge):
        self._challenges[self._origin(url)] = (challenge, 0)

    def forget(self, url: str):
        self._challenges.pop(self._origin(url), None)

    def next_use(self, url: str) -> Optional[Tuple[DigestChallenge, int]]:
        """Return the cached challenge and the next nonce-count, or None."""
        origin = self._origin(url)
        cached = self._challenges.get(origin)
        if cached is None:
            return None
        challenge, nc = cached
        nc += 1
        self._challenges[origin] = (challenge, nc)
        logger.debug(f"Reusing digest challenge for {origin} (nc={nc:08x})")
        return challenge, nc
