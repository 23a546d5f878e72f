import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from cycle_models import AuthConfig, FailureKind, RequestSpec
from digest_auth import DigestState
from request_executor import RequestExecutor

CHALLENGE = 'Digest realm="device", nonce="n0nce", qop="auth", opaque="op"'


def make_cm(status=200, body=b"{}", headers=None):
    resp = AsyncMock()
    resp.status = status
    resp.headers = headers or {}
    resp.read = AsyncMock(return_value=body)
    cm = AsyncMock()
    cm.__aenter__.return_value = resp
    cm.__aexit__.return_value = False
    return cm


def make_session(*cms):
    session = MagicMock()
    session.request.side_effect = list(cms)
    return session


@pytest.mark.asyncio
async def test_success_outcome_and_user_agent():
    session = make_session(make_cm(200, b'{"message": "hi"}', {"Content-Type": "application/json"}))
    executor = RequestExecutor(session, user_agent="CycleRunner/1.0")
    outcome = await executor.execute(RequestSpec(method="GET", url="http://h/a", headers={"Accept": "*/*"}))
    assert outcome.succeeded
    assert outcome.status == 200
    assert outcome.body == b'{"message": "hi"}'
    assert outcome.headers["Content-Type"] == "application/json"
    assert outcome.elapsed_ms >= 0
    args, kwargs = session.request.call_args
    assert args == ("GET", "http://h/a")
    assert kwargs["headers"] == {"Accept": "*/*", "User-Agent": "CycleRunner/1.0"}
    assert kwargs["data"] is None


@pytest.mark.asyncio
async def test_post_body_sent_with_json_content_type():
    session = make_session(make_cm(201))
    executor = RequestExecutor(session)
    outcome = await executor.execute(RequestSpec(method="POST", url="http://h/b", body='{"k": 1}'))
    assert outcome.succeeded
    kwargs = session.request.call_args.kwargs
    assert kwargs["data"] == b'{"k": 1}'
    assert kwargs["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_get_body_is_not_sent():
    session = make_session(make_cm(200))
    executor = RequestExecutor(session)
    await executor.execute(RequestSpec(method="GET", url="http://h/a", body="ignored"))
    assert session.request.call_args.kwargs["data"] is None


@pytest.mark.asyncio
async def test_explicit_content_type_kept():
    session = make_session(make_cm(200))
    executor = RequestExecutor(session)
    await executor.execute(RequestSpec(method="PUT", url="http://h/b", headers={"content-type": "text/plain"}, body="{}"))
    assert session.request.call_args.kwargs["headers"] == {"content-type": "text/plain"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [302, 404, 500])
async def test_non_2xx_is_http_error(status):
    session = make_session(make_cm(status, b"nope"))
    outcome = await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"))
    assert not outcome.succeeded
    assert outcome.kind == FailureKind.HTTP_ERROR
    assert outcome.status == status
    assert outcome.describe() == f"http_error({status})"


@pytest.mark.asyncio
async def test_timeout_is_timeout_failure():
    session = MagicMock()
    session.request.side_effect = asyncio.TimeoutError()
    outcome = await RequestExecutor(session, timeout_s=0.5).execute(RequestSpec(method="GET", url="http://h/a"))
    assert outcome.kind == FailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_connection_error_is_network_failure():
    session = MagicMock()
    session.request.side_effect = aiohttp.ClientConnectionError("refused")
    outcome = await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"))
    assert outcome.kind == FailureKind.NETWORK
    assert "refused" in outcome.message


@pytest.mark.asyncio
async def test_digest_challenge_answered_once():
    session = make_session(
        make_cm(401, b"", {"WWW-Authenticate": CHALLENGE}),
        make_cm(200, b"ok"),
    )
    executor = RequestExecutor(session, digest_state=DigestState())
    auth = AuthConfig(username="admin", password="secret")
    outcome = await executor.execute(RequestSpec(method="GET", url="http://h/a?x=1"), auth)
    assert outcome.succeeded
    assert session.request.call_count == 2
    first_headers = session.request.call_args_list[0].kwargs["headers"]
    retry_headers = session.request.call_args_list[1].kwargs["headers"]
    assert "Authorization" not in first_headers
    assert retry_headers["Authorization"].startswith("Digest ")
    assert 'uri="/a?x=1"' in retry_headers["Authorization"]
    assert "nc=00000001" in retry_headers["Authorization"]


@pytest.mark.asyncio
async def test_digest_challenge_reused_preemptively():
    session = make_session(
        make_cm(401, b"", {"WWW-Authenticate": CHALLENGE}),
        make_cm(200),
        make_cm(200),
    )
    executor = RequestExecutor(session)
    auth = AuthConfig(username="admin", password="secret")
    await executor.execute(RequestSpec(method="GET", url="http://h/a"), auth)
    outcome = await executor.execute(RequestSpec(method="POST", url="http://h/b", body="{}"), auth)
    assert outcome.succeeded
    assert session.request.call_count == 3
    third_headers = session.request.call_args_list[2].kwargs["headers"]
    assert "nc=00000002" in third_headers["Authorization"]


@pytest.mark.asyncio
async def test_digest_rejected_twice_is_http_error():
    session = make_session(
        make_cm(401, b"", {"WWW-Authenticate": CHALLENGE}),
        make_cm(401, b"", {"WWW-Authenticate": CHALLENGE}),
    )
    executor = RequestExecutor(session)
    auth = AuthConfig(username="admin", password="wrong")
    outcome = await executor.execute(RequestSpec(method="GET", url="http://h/a"), auth)
    assert outcome.kind == FailureKind.HTTP_ERROR
    assert outcome.status == 401
    assert session.request.call_count == 2
    assert executor.digest_state.next_use("http://h/a") is None


@pytest.mark.asyncio
async def test_unparseable_challenge_is_auth_error():
    session = make_session(make_cm(401, b"", {"WWW-Authenticate": "Digest garbage"}))
    auth = AuthConfig(username="admin", password="secret")
    outcome = await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"), auth)
    assert outcome.kind == FailureKind.AUTH_ERROR
    assert session.request.call_count == 1


@pytest.mark.asyncio
async def test_challenge_without_credentials_is_auth_error():
    session = make_session(make_cm(401, b"", {"WWW-Authenticate": CHALLENGE}))
    outcome = await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"))
    assert outcome.kind == FailureKind.AUTH_ERROR


@pytest.mark.asyncio
async def test_plain_401_without_credentials_is_http_error():
    session = make_session(make_cm(401, b"", {}))
    outcome = await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"))
    assert outcome.kind == FailureKind.HTTP_ERROR
    assert outcome.status == 401


@pytest.mark.asyncio
async def test_preset_realm_and_nonce_authorize_first_request():
    session = make_session(make_cm(200))
    auth = AuthConfig(username="admin", password="secret", realm="device", nonce="abc")
    await RequestExecutor(session).execute(RequestSpec(method="GET", url="http://h/a"), auth)
    assert session.request.call_args.kwargs["headers"]["Authorization"].startswith('Digest username="admin"')
