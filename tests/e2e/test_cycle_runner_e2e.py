import json

import pytest
import pytest_asyncio

from cycle_models import FailureKind, load_cycle_config
from cycle_runner import CycleRunner, RunnerState
from tests.e2e.mock_server import PASSWORD, USERNAME, create_mock_server, shutdown_mock_server


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, app = await create_mock_server()
    yield {'base_url': base_url, 'app': app, 'hits': app['hits'], 'requests': app['requests']}
    await shutdown_mock_server(runner)


def requests_to(server, path):
    return [r for r in server['requests'] if r['path'] == path]


@pytest.mark.asyncio
async def test_three_cycles_with_propagation(mock_server):
    base = mock_server['base_url']
    config = load_cycle_config({
        "request_a": {"method": "GET", "url": f"{base}/a"},
        "request_b": {"method": "POST", "url": f"{base}/b", "body": '{"seq": "{{seq}}"}'},
        "delay_between_a_and_b_ms": 100,
        "delay_between_a_requests_ms": 200,
        "max_requests": 3,
        "generated_fields": [
            {"name": "X-Request-ID", "generator": "uuid"},
            {"name": "seq", "generator": "fixed", "value": "7", "field_type": "body"},
        ],
        "field_mappings": [
            {"source_path": "json.message", "target_field": "X-Custom-Message"},
            {"source_path": "headers.X-Session", "target_field": "X-Session"},
        ],
    })
    runner = CycleRunner(config)
    stats = await runner.start_generating()

    assert runner.state == RunnerState.COMPLETED
    assert mock_server['hits'] == {'/a': 3, '/b': 3}
    assert stats.roles['A'].successes == 3
    assert stats.roles['B'].successes == 3

    a_requests = requests_to(mock_server, '/a')
    b_requests = requests_to(mock_server, '/b')
    for a_req, b_req in zip(a_requests, b_requests):
        assert b_req['headers']['X-Custom-Message'] == 'hi'
        assert b_req['headers']['X-Session'] == 'sess-1'
        assert b_req['headers']['X-Request-ID'] == a_req['headers']['X-Request-ID']
        assert json.loads(b_req['body']) == {"seq": "7"}
        assert b_req['headers']['User-Agent'] == 'CycleRunner/1.0'
    assert len({r['headers']['X-Request-ID'] for r in a_requests}) == 3


@pytest.mark.asyncio
async def test_digest_protected_endpoints(mock_server):
    base = mock_server['base_url']
    config = load_cycle_config({
        "request_a": {"method": "GET", "url": f"{base}/secure/a"},
        "request_b": {"method": "POST", "url": f"{base}/secure/b", "body": "{}"},
        "delay_between_a_and_b_ms": 50,
        "delay_between_a_requests_ms": 100,
        "max_requests": 2,
        "digest_auth": {"username": USERNAME, "password": PASSWORD},
    })
    stats = await CycleRunner(config).start_generating()

    assert stats.total_failures == 0
    assert stats.roles['A'].successes == 2
    assert stats.roles['B'].successes == 2
    # Only the first exchange needs a challenge; later requests authorize preemptively.
    assert mock_server['app']['challenges'] == 1


@pytest.mark.asyncio
async def test_wrong_password_is_reported_as_http_error(mock_server):
    base = mock_server['base_url']
    config = load_cycle_config({
        "request_a": {"method": "GET", "url": f"{base}/secure/a"},
        "request_b": {"method": "GET", "url": f"{base}/a"},
        "delay_between_a_and_b_ms": 0,
        "delay_between_a_requests_ms": 50,
        "max_requests": 1,
        "digest_auth": {"username": USERNAME, "password": "wrong"},
    })
    stats = await CycleRunner(config).start_generating()
    assert stats.roles['A'].failures == 1
    assert stats.failures_by_kind[FailureKind.HTTP_ERROR.value] == 1
    assert stats.roles['B'].successes == 1


@pytest.mark.asyncio
async def test_failures_do_not_stop_the_loop(mock_server):
    base = mock_server['base_url']
    config = load_cycle_config({
        "request_a": {"method": "GET", "url": f"{base}/missing"},
        "request_b": {"method": "GET", "url": "http://127.0.0.1:1/unreachable"},
        "delay_between_a_and_b_ms": 0,
        "delay_between_a_requests_ms": 50,
        "max_requests": 3,
        "request_timeout_ms": 2000,
    })
    stats = await CycleRunner(config).start_generating()
    assert stats.cycles_started == 3
    assert stats.failures_by_kind["http_error"] == 3
    assert stats.failures_by_kind["network"] == 3
    assert stats.last_error is not None


@pytest.mark.asyncio
async def test_request_timeout_is_reported(mock_server):
    base = mock_server['base_url']
    config = load_cycle_config({
        "request_a": {"method": "GET", "url": f"{base}/slow?delay=0.5"},
        "request_b": {"method": "GET", "url": f"{base}/a"},
        "delay_between_a_and_b_ms": 10,
        "delay_between_a_requests_ms": 50,
        "max_requests": 1,
        "request_timeout_ms": 100,
        "field_mappings": [{"source_path": "json.message", "target_field": "X-Custom-Message"}],
    })
    stats = await CycleRunner(config).start_generating()
    assert stats.failures_by_kind["timeout"] == 1
    # A was still in flight when B went out.
    assert 'X-Custom-Message' not in requests_to(mock_server, '/a')[0]['headers']
