import asyncio
import hashlib
import re

from aiohttp import web

USERNAME = "admin"
PASSWORD = "secret"
REALM = "mock-device"
NONCE = "6d6f636b2d6e6f6e6365"
CHALLENGE = f'Digest realm="{REALM}", nonce="{NONCE}", qop="auth", opaque="0paque", algorithm=MD5'

_auth_param = re.compile(r'(\w+)=(?:"([^"]*)"|([^\s,]*))')


def _md5(data: str) -> str:
    return hashlib.md5(data.encode()).hexdigest()


def _record(request: web.Request, body: str):
    request.app['hits'][request.path] = request.app['hits'].get(request.path, 0) + 1
    request.app['requests'].append({'path': request.path, 'method': request.method, 'headers': dict(request.headers), 'body': body})


def _digest_ok(request: web.Request) -> bool:
    header = request.headers.get('Authorization', '')
    if not header.startswith('Digest '):
        return False
    params = {m.group(1): m.group(2) if m.group(2) is not None else m.group(3) for m in _auth_param.finditer(header)}
    if params.get('username') != USERNAME or params.get('nonce') != NONCE:
        return False
    ha1 = _md5(f"{USERNAME}:{REALM}:{PASSWORD}")
    ha2 = _md5(f"{request.method}:{params.get('uri')}")
    expected = _md5(f"{ha1}:{NONCE}:{params.get('nc')}:{params.get('cnonce')}:auth:{ha2}")
    return params.get('response') == expected


async def handle_a(request: web.Request) -> web.Response:
    _record(request, await request.text())
    return web.json_response({'message': 'hi', 'path': request.path}, headers={'X-Session': 'sess-1'})


async def handle_echo(request: web.Request) -> web.Response:
    body = await request.text()
    _record(request, body)
    return web.json_response({'path': request.path, 'received': body})


async def handle_slow(request: web.Request) -> web.Response:
    _record(request, await request.text())
    await asyncio.sleep(float(request.query.get('delay', '0.3')))
    return web.json_response({'message': 'late'})


async def handle_missing(request: web.Request) -> web.Response:
    _record(request, await request.text())
    return web.json_response({'error': 'not found'}, status=404)


async def handle_secure(request: web.Request) -> web.Response:
    body = await request.text()
    _record(request, body)
    if not _digest_ok(request):
        request.app['challenges'] += 1
        return web.Response(status=401, headers={'WWW-Authenticate': CHALLENGE})
    return web.json_response({'message': 'authorized', 'path': request.path})


async def create_mock_server():
    app = web.Application()
    app['hits'] = {}
    app['requests'] = []
    app['challenges'] = 0
    app.router.add_get('/a', handle_a)
    app.router.add_post('/b', handle_echo)
    app.router.add_put('/b', handle_echo)
    app.router.add_get('/slow', handle_slow)
    app.router.add_get('/missing', handle_missing)
    app.router.add_get('/secure/a', handle_secure)
    app.router.add_post('/secure/b', handle_secure)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '127.0.0.1', 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]
    base_url = f'http://127.0.0.1:{port}'
    return runner, base_url, app

async def shutdown_mock_server(runner):
    await runner.cleanup()
