# request_executor.py

import asyncio
import json
import logging
import time
from typing import Dict, Optional, Tuple

import aiohttp

from cycle_models import (
    AuthConfig,
    AuthError,
    FailureKind,
    Outcome,
    RequestFailure,
    RequestSpec,
    RequestSuccess,
    logger,
)
from digest_auth import DigestState, authorize, parse_challenge, request_uri


def _ci_get(headers: Dict[str, str], name: str) -> Optional[str]:
    name_lower = name.lower()
    for key, value in headers.items():
        if key.lower() == name_lower:
            return value
    return None


def _looks_like_json(body: str) -> bool:
    try:
        json.loads(body)
        return True
    except json.JSONDecodeError:
        return False


class RequestExecutor:
    """
    Issues single HTTP requests through a shared aiohttp session and reports a
    typed Outcome. The only retry is the one answering a Digest challenge.
    """
    def __init__(
        self,
        session: aiohttp.ClientSession,
        timeout_s: float = 30.0,
        digest_state: Optional[DigestState] = None,
        user_agent: Optional[str] = None,
    ):
        self.session = session
        self.timeout_s = timeout_s
        self.digest_state = digest_state or DigestState()
        self.user_agent = user_agent

    def _prepare(self, spec: RequestSpec) -> Tuple[Dict[str, str], Optional[bytes]]:
        headers = dict(spec.headers)
        if self.user_agent and _ci_get(headers, 'User-Agent') is None:
            headers['User-Agent'] = self.user_agent

        data_payload = None
        if spec.body is not None:
            if spec.sends_body:
                data_payload = spec.body.encode('utf-8', errors='replace')
                if _ci_get(headers, 'Content-Type') is None and _looks_like_json(spec.body):
                    headers['Content-Type'] = 'application/json'
            else:
                logger.debug(f"Ignoring configured body for {spec.method} {spec.url}.")
        return headers, data_payload

    def _preemptive_authorization(self, spec: RequestSpec, auth: AuthConfig, uri: str) -> Optional[str]:
        cached = self.digest_state.next_use(spec.url)
        if cached is not None:
            challenge, nc = cached
            return authorize(spec.method, uri, auth, challenge, nc=nc)
        if auth.realm is not None and auth.nonce:
            return authorize(spec.method, uri, auth)
        return None

    async def _send(self, spec: RequestSpec, headers: Dict[str, str], data_payload: Optional[bytes]) -> Tuple[int, Dict[str, str], bytes]:
        if logger.isEnabledFor(logging.DEBUG):
            log_headers = {k: ('********' if k.lower() in ('authorization', 'cookie') and v else v) for k, v in headers.items()}
            logger.debug(f"--- REQUEST --- {spec.method} {spec.url} Headers: {log_headers} Payload: {len(data_payload or b'')} bytes")

        async with self.session.request(
            spec.method,
            spec.url,
            headers=headers,
            data=data_payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            response_headers: Dict[str, str] = {}
            for key, value in resp.headers.items():
                # Repeated headers (e.g. several WWW-Authenticate challenges) are joined.
                response_headers[key] = f"{response_headers[key]}, {value}" if key in response_headers else value
            body = await resp.read()
            return resp.status, response_headers, body

    async def execute(self, spec: RequestSpec, auth: Optional[AuthConfig] = None) -> Outcome:
        request_start_time = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - request_start_time) * 1000.0

        try:
            headers, data_payload = self._prepare(spec)
            uri = request_uri(spec.url)
            if auth is not None:
                preemptive = self._preemptive_authorization(spec, auth, uri)
                if preemptive:
                    headers['Authorization'] = preemptive

            status, response_headers, body = await self._send(spec, headers, data_payload)

            if status == 401:
                challenge_header = _ci_get(response_headers, 'WWW-Authenticate')
                if auth is None:
                    if challenge_header and 'digest' in challenge_header.lower():
                        raise AuthError("Server issued a Digest challenge but no credentials are configured")
                else:
                    challenge = parse_challenge(challenge_header)
                    self.digest_state.remember(spec.url, challenge)
                    _, nc = self.digest_state.next_use(spec.url)
                    headers = {**headers, 'Authorization': authorize(spec.method, uri, auth, challenge, nc=nc)}
                    logger.debug(f"Answering digest challenge (realm='{challenge.realm}') for {spec.method} {spec.url}")
                    status, response_headers, body = await self._send(spec, headers, data_payload)
                    if status == 401:
                        self.digest_state.forget(spec.url)

        except AuthError as auth_err:
            return RequestFailure(kind=FailureKind.AUTH_ERROR, message=str(auth_err), status=401, elapsed_ms=elapsed_ms())
        except asyncio.TimeoutError as timeout_err:
            return RequestFailure(
                kind=FailureKind.TIMEOUT,
                message=f"No complete response within {self.timeout_s:.1f}s: {type(timeout_err).__name__}",
                elapsed_ms=elapsed_ms(),
            )
        except (aiohttp.ClientError, OSError) as conn_err:
            return RequestFailure(
                kind=FailureKind.NETWORK,
                message=f"{type(conn_err).__name__}: {conn_err}",
                elapsed_ms=elapsed_ms(),
            )

        if 200 <= status < 300:
            return RequestSuccess(status=status, headers=response_headers, body=body, elapsed_ms=elapsed_ms())
        return RequestFailure(
            kind=FailureKind.HTTP_ERROR,
            message=f"HTTP {status}",
            status=status,
            elapsed_ms=elapsed_ms(),
        )
