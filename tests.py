"""Main tests for the gzip/deflate compression middleware.

Some of these tests follow the ones from starlette.tests.middleware.test_gzip.
"""

import contextlib
import functools
import gzip
import io
import os
import zlib

import pytest

from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route
from starlette.testclient import TestClient

from compress_asgi import (
    BEST_COMPRESSION,
    BEST_SPEED,
    CompressMiddleware,
    CompressResponder,
    choose_encoding,
    exclude_content_types,
)
from compress_asgi.compressors import (
    DeflateCompressor,
    GzipCompressor,
    create_compressor,
)
from compress_asgi.headers import get_preferred_encoding, parse_part
from compress_asgi.policy import add_vary_header, compress_all, media_type


GORILLA = b"Gorilla!\n"
GORILLA_BODY = GORILLA * 1024


@pytest.fixture
def test_client_factory(anyio_backend_name, anyio_backend_options):
    return functools.partial(
        TestClient,
        backend=anyio_backend_name,
        backend_options=anyio_backend_options,
    )


def gorilla_app(media_type="text/plain", **options):
    def homepage(request):
        async def generator():
            for _ in range(1024):
                yield GORILLA

        return StreamingResponse(
            generator(),
            headers={"Content-Length": str(len(GORILLA_BODY))},
            media_type=media_type,
        )

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware, **options)
    return app


def raw_get(client, accept_encoding=None, path="/"):
    """GET without httpx's default Accept-Encoding, returning the raw body."""
    client.headers.pop("accept-encoding", None)
    headers = {}
    if accept_encoding is not None:
        headers["accept-encoding"] = accept_encoding
    with client.stream("GET", path, headers=headers) as response:
        body = b"".join(response.iter_raw())
    return response, body


def test_no_accept_encoding(test_client_factory):
    client = test_client_factory(gorilla_app())
    response, body = raw_get(client)
    assert response.status_code == 200
    assert body == GORILLA_BODY
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert response.headers["Content-Length"] == "9216"


def test_gzip_responses(test_client_factory):
    client = test_client_factory(gorilla_app())
    response, body = raw_get(client, "gzip")
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers["Vary"] == "Accept-Encoding"
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert "Content-Length" not in response.headers
    assert len(body) < 200
    assert gzip.decompress(body) == GORILLA_BODY


def test_deflate_responses(test_client_factory):
    client = test_client_factory(gorilla_app())
    response, body = raw_get(client, "deflate")
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "deflate"
    assert response.headers["Vary"] == "Accept-Encoding"
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert "Content-Length" not in response.headers
    assert len(body) < 200
    assert zlib.decompress(body, -zlib.MAX_WBITS) == GORILLA_BODY


@pytest.mark.parametrize(
    "accept_encoding", ["gzip, deflate ", "deflate, gzip", " deflate ,gzip"]
)
def test_gzip_preferred_over_deflate(test_client_factory, accept_encoding):
    client = test_client_factory(gorilla_app())
    response, body = raw_get(client, accept_encoding)
    assert response.headers["Content-Encoding"] == "gzip"
    assert gzip.decompress(body) == GORILLA_BODY


def test_transparent_decoding(test_client_factory):
    # TestClient (httpx) decompresses gzip and deflate automatically.
    client = test_client_factory(gorilla_app())
    for accept_encoding in ("gzip", "deflate"):
        response = client.get("/", headers={"accept-encoding": accept_encoding})
        assert response.headers["Content-Encoding"] == accept_encoding
        assert response.content == GORILLA_BODY


def test_excluded_content_types(test_client_factory):
    app = gorilla_app(
        media_type="image/png", excluded_content_types=["image/png"]
    )
    client = test_client_factory(app)
    response, body = raw_get(client, "gzip")
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert body == GORILLA_BODY
    assert response.headers["Content-Length"] == "9216"


def test_excluded_content_types_predicate(test_client_factory):
    app = gorilla_app(
        excluded_content_types=lambda content_type: content_type.startswith("text/")
    )
    client = test_client_factory(app)
    response, body = raw_get(client, "gzip")
    assert "Content-Encoding" not in response.headers
    assert body == GORILLA_BODY


def test_everything_compressed_by_default(test_client_factory):
    client = test_client_factory(gorilla_app(media_type="image/png"))
    response, body = raw_get(client, "gzip")
    assert response.headers["Content-Encoding"] == "gzip"
    assert gzip.decompress(body) == GORILLA_BODY


def test_small_responses_compressed(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK", status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response, body = raw_get(client, "gzip")
    assert response.headers["Content-Encoding"] == "gzip"
    assert "Content-Length" not in response.headers
    assert gzip.decompress(body) == b"OK"


def test_empty_body_is_valid_stream(test_client_factory):
    def homepage(request):
        return Response(b"", media_type="text/plain")

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response, body = raw_get(client, "gzip")
    assert response.headers["Content-Encoding"] == "gzip"
    assert body
    assert gzip.decompress(body) == b""

    response, body = raw_get(client, "deflate")
    assert response.headers["Content-Encoding"] == "deflate"
    assert zlib.decompress(body, -zlib.MAX_WBITS) == b""


@pytest.mark.parametrize(
    "vary, expected",
    [
        ("Accept-Encoding", "Accept-Encoding"),
        ("accept-encoding", "accept-encoding"),
        ("Cookie", "Cookie, Accept-Encoding"),
        ("Cookie, Accept-Encoding", "Cookie, Accept-Encoding"),
        ("*", "*"),
    ],
)
def test_vary_header_not_duplicated(test_client_factory, vary, expected):
    def homepage(request):
        return PlainTextResponse("x" * 4000, headers={"Vary": vary})

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers.get_list("vary") == [expected]
    assert response.text == "x" * 4000


def test_streaming_response(test_client_factory):
    def homepage(request):
        async def generator(bytes, count):
            for index in range(count):
                yield bytes

        streaming = generator(bytes=b"x" * 400, count=10)
        return StreamingResponse(streaming, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.content == b"x" * 4000
    assert "Content-Length" not in response.headers


@pytest.mark.parametrize("level", [BEST_SPEED, BEST_COMPRESSION, 0])
def test_compression_levels(test_client_factory, level):
    def homepage(request):
        return JSONResponse({"data": "a" * 4000}, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware, level=level)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.json() == {"data": "a" * 4000}


@pytest.mark.parametrize("level", [-2, 10, 1.5, "9", True])
def test_invalid_compression_level(level):
    with pytest.raises(ValueError):
        CompressMiddleware(PlainTextResponse("OK"), level=level)


def test_invalid_excluded_content_types():
    with pytest.raises(ValueError):
        CompressMiddleware(PlainTextResponse("OK"), excluded_content_types="image/png")


def test_excluded_handlers(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(
        routes=[Route("/excluded", homepage), Route("/included", homepage)]
    )
    app.add_middleware(
        CompressMiddleware,
        excluded_handlers=["/excluded"],
    )

    client = test_client_factory(app)
    response = client.get("/excluded", headers={"accept-encoding": "gzip"})

    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert int(response.headers["Content-Length"]) == 4000

    response = client.get("/included", headers={"accept-encoding": "gzip"})
    assert response.headers["Content-Encoding"] == "gzip"


def test_avoids_double_encoding(test_client_factory):
    # See https://github.com/encode/starlette/pull/1901
    def homepage(request):
        gzip_buffer = io.BytesIO()
        gzip_file = gzip.GzipFile(mode="wb", fileobj=gzip_buffer)
        gzip_file.write(b"hello world" * 200)
        gzip_file.close()
        body = gzip_buffer.getvalue()
        return Response(
            body,
            headers={
                "content-encoding": "gzip",
                "x-gzipped-content-length": str(len(body)),
            },
        )

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "deflate"})
    assert response.status_code == 200
    assert response.text == "hello world" * 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert "Vary" not in response.headers
    assert (
        response.headers["Content-Length"]
        == response.headers["x-gzipped-content-length"]
    )


def test_not_modified_passes_through(test_client_factory):
    def homepage(request):
        return Response(status_code=304)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware)

    client = test_client_factory(app)
    response, body = raw_get(client, "gzip")
    assert response.status_code == 304
    assert "Content-Encoding" not in response.headers
    assert body == b""


def test_repeated_accept_encoding_headers(test_client_factory):
    client = test_client_factory(gorilla_app())
    client.headers.pop("accept-encoding", None)
    with client.stream(
        "GET", "/", headers=[("accept-encoding", "br"), ("accept-encoding", "deflate")]
    ) as response:
        body = b"".join(response.iter_raw())
    assert response.headers["Content-Encoding"] == "deflate"
    assert zlib.decompress(body, -zlib.MAX_WBITS) == GORILLA_BODY


@pytest.mark.parametrize(
    "accept_encoding, expected_encoding",
    [
        ("gzip", "gzip"),
        ("deflate", "deflate"),
        ("gzip, deflate ", "gzip"),
        ("deflate,gzip", "gzip"),
        ("GZip", "gzip"),
        ("", "identity"),
        ("   ", "identity"),
        (",,", "identity"),
        ("*", "identity"),
        ("identity", "identity"),
        ("br, zstd", "identity"),
        ("gzip;q=0", "identity"),
        ("gzip ; q=0.000", "identity"),
        ("gzip;Q=0", "identity"),
        ("gzip;q=0, deflate", "deflate"),
        ("deflate;q=0, gzip;q=0", "identity"),
        # Malformed q-factors are lenient and count as 1.0
        ("gzip;q=foo", "gzip"),
        ("deflate;q=", "deflate"),
        # q-factors do not rank gzip against deflate by default
        ("deflate;q=1.0, gzip;q=0.5", "gzip"),
        ("deflate, gzip;q=0.001", "gzip"),
    ],
)
def test_choose_encoding(accept_encoding, expected_encoding):
    assert choose_encoding([accept_encoding]) == expected_encoding


def test_choose_encoding_multiple_values():
    assert choose_encoding([]) == "identity"
    assert choose_encoding(["br", "deflate"]) == "deflate"
    assert choose_encoding(["deflate", "gzip;q=0.3"]) == "gzip"
    assert choose_encoding(["gzip;q=0", "deflate;q=0"]) == "identity"
    assert choose_encoding("gzip") == "gzip"


@pytest.mark.parametrize(
    "accept_encoding, expected_encoding",
    [
        # 1. deflate has higher q-factor than gzip
        ("deflate;q=1.0, gzip;q=0.5", "deflate"),
        # 2. gzip has higher q-factor than deflate
        ("deflate;q=0.5, gzip;q=1.0", "gzip"),
        # 3. gzip is preferred when q-factors are equal (tests CODING_PRIORITIES)
        ("deflate;q=0.8, gzip;q=0.8", "gzip"),
        ("gzip, deflate", "gzip"),
        # 4. Unsupported 'br' has highest q, fallback to deflate
        ("br;q=1.0, deflate;q=0.9, gzip;q=0.8", "deflate"),
        # 5. gzip is forbidden (q=0) -> select deflate
        ("gzip;q=0, deflate;q=0.1", "deflate"),
        # 6. Both forbidden -> identity
        ("gzip;q=0, deflate;q=0", "identity"),
        # 7. q-factor above 1 is clamped, so the tie goes to gzip
        ("deflate;q=5, gzip", "gzip"),
    ],
)
def test_respect_q_factors(test_client_factory, accept_encoding, expected_encoding):
    """
    Tests that q-factor negotiation works correctly when respect_q_factors=True.
    """
    assert (
        choose_encoding([accept_encoding], respect_q_factors=True)
        == expected_encoding
    )

    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(CompressMiddleware, respect_q_factors=True)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": accept_encoding})

    assert response.status_code == 200
    assert response.text == "x" * 4000
    if expected_encoding == "identity":
        assert "Content-Encoding" not in response.headers
        assert int(response.headers["Content-Length"]) == 4000
    else:
        assert response.headers["Content-Encoding"] == expected_encoding
        assert "Content-Length" not in response.headers


def test_parse_part():
    assert parse_part("gzip") == (1.0, 0, "gzip")
    assert parse_part(" deflate;q=0.5 ") == (0.5, 1, "deflate")
    assert parse_part("gzip;level=1;q=0.2") == (0.2, 0, "gzip")
    assert parse_part("gzip;q=nan") == (1.0, 0, "gzip")
    assert parse_part("gzip;q=-1") is None
    assert parse_part("*") is None
    assert parse_part("") is None


def test_get_preferred_encoding_is_cached():
    get_preferred_encoding.cache_clear()
    get_preferred_encoding("gzip, deflate")
    get_preferred_encoding("gzip, deflate")
    assert get_preferred_encoding.cache_info().hits == 1


def test_content_type_policies():
    assert compress_all("image/png") is False
    assert compress_all("") is False

    is_excluded = exclude_content_types(["image/png", "Video/*", "application/zip; x=1"])
    assert is_excluded("image/png")
    assert is_excluded("IMAGE/PNG; charset=binary")
    assert is_excluded("video/mp4")
    assert is_excluded("application/zip")
    assert not is_excluded("image/jpeg")
    assert not is_excluded("text/plain; charset=utf-8")
    assert not is_excluded("")

    assert media_type(" Text/HTML ; charset=utf-8") == "text/html"


def test_add_vary_header():
    headers = MutableHeaders()
    add_vary_header(headers, "Accept-Encoding")
    add_vary_header(headers, "Accept-Encoding")
    assert headers.getlist("vary") == ["Accept-Encoding"]

    headers = MutableHeaders(raw=[(b"vary", b"Cookie"), (b"vary", b"Origin")])
    add_vary_header(headers, "Accept-Encoding")
    assert headers.getlist("vary") == ["Cookie, Origin, Accept-Encoding"]


def test_streaming_compressors():
    gzip_compressor = GzipCompressor(level=BEST_SPEED)
    body = b"".join(gzip_compressor.compress(GORILLA) for _ in range(1024))
    body += gzip_compressor.flush()
    assert gzip.decompress(body) == GORILLA_BODY

    deflate_compressor = DeflateCompressor()
    body = deflate_compressor.compress(b"") + deflate_compressor.flush()
    assert zlib.decompress(body, -zlib.MAX_WBITS) == b""


def test_create_compressor():
    assert isinstance(create_compressor("gzip"), GzipCompressor)
    compressor = create_compressor("deflate", BEST_COMPRESSION)
    assert isinstance(compressor, DeflateCompressor)
    assert compressor.level == BEST_COMPRESSION
    with pytest.raises(ValueError):
        create_compressor("identity")


async def receive():
    return {"type": "http.disconnect"}  # pragma: no cover


def http_scope(**extra):
    scope = {"type": "http", "method": "GET", "path": "/", "headers": []}
    scope.update(extra)
    return scope


@pytest.mark.anyio
async def test_compressor_finalized_when_app_raises():
    async def app(scope, receive, send):
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"content-type", b"text/plain")],
            }
        )
        await send(
            {"type": "http.response.body", "body": b"partial" * 100, "more_body": True}
        )
        raise RuntimeError("boom")

    messages = []

    async def send(message):
        messages.append(message)

    responder = CompressResponder(app, "gzip")
    with pytest.raises(RuntimeError, match="boom"):
        await responder(http_scope(), receive, send)

    assert messages[0]["type"] == "http.response.start"
    assert (b"content-encoding", b"gzip") in messages[0]["headers"]
    assert messages[-1]["more_body"] is False
    body = b"".join(m["body"] for m in messages[1:])
    assert gzip.decompress(body) == b"partial" * 100
    assert not responder.compressing


class ClientGone(OSError):
    pass


async def start_then_stream(send, chunks):
    await send(
        {
            "type": "http.response.start",
            "status": 200,
            "headers": [(b"content-type", b"application/octet-stream")],
        }
    )
    for chunk in chunks:
        await send({"type": "http.response.body", "body": chunk, "more_body": True})


@pytest.mark.anyio
async def test_app_exception_wins_over_failed_trailer():
    async def app(scope, receive, send):
        await start_then_stream(send, [b"partial" * 100])
        raise RuntimeError("boom")

    async def send(message):
        if message["type"] == "http.response.body" and not message["more_body"]:
            raise ClientGone("client gone")

    responder = CompressResponder(app, "gzip")
    with pytest.raises(RuntimeError, match="boom"):
        await responder(http_scope(), receive, send)
    assert not responder.compressing


@pytest.mark.anyio
async def test_no_write_after_send_failure():
    calls = []

    async def send(message):
        calls.append(message)
        if len(calls) == 2:
            raise ClientGone(len(calls))

    async def app(scope, receive, send):
        # Random bytes do not compress, so zlib emits output at once.
        await start_then_stream(send, [os.urandom(1 << 17), b"never sent"])

    responder = CompressResponder(app, "deflate")
    with pytest.raises(ClientGone) as exc_info:
        await responder(http_scope(), receive, send)
    assert exc_info.value.args == (2,)
    assert len(calls) == 2
    assert responder.send_failed
    assert not responder.compressing


@pytest.mark.anyio
async def test_no_trailer_when_app_swallows_send_failure():
    calls = []

    async def send(message):
        calls.append(message)
        if len(calls) == 2:
            raise ClientGone("client gone")

    async def app(scope, receive, send):
        with contextlib.suppress(ClientGone):
            await start_then_stream(send, [os.urandom(1 << 17)])

    await CompressResponder(app, "gzip")(http_scope(), receive, send)
    assert len(calls) == 2


@pytest.mark.anyio
async def test_compressor_finalized_when_body_never_ended():
    async def app(scope, receive, send):
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"content-length", b"100")],
            }
        )

    messages = []

    async def send(message):
        messages.append(message)

    await CompressResponder(app, "deflate")(http_scope(), receive, send)

    headers = dict(messages[0]["headers"])
    assert b"content-length" not in headers
    assert headers[b"content-encoding"] == b"deflate"
    assert headers[b"vary"] == b"Accept-Encoding"
    assert len(messages) == 2
    assert zlib.decompress(messages[1]["body"], -zlib.MAX_WBITS) == b""


@pytest.mark.anyio
async def test_decision_is_taken_once():
    async def app(scope, receive, send):
        start = {
            "type": "http.response.start",
            "status": 200,
            "headers": [(b"content-type", b"image/png")],
        }
        await send(start)
        await send({**start, "headers": [(b"content-type", b"text/plain")]})
        await send({"type": "http.response.body", "body": b"png"})

    messages = []

    async def send(message):
        messages.append(message)

    responder = CompressResponder(
        app, "gzip", content_type_policy=exclude_content_types(["image/png"])
    )
    await responder(http_scope(), receive, send)

    assert messages[1]["headers"] == [(b"content-type", b"text/plain")]
    assert messages[2]["body"] == b"png"
    assert not responder.compressing


@pytest.mark.anyio
async def test_pathsend_extension_hidden_from_app():
    seen = {}

    async def app(scope, receive, send):
        seen.update(scope["extensions"])

    scope = http_scope(extensions={"http.response.pathsend": {}, "other": {}})
    await CompressResponder(app, "gzip")(scope, receive, lambda message: None)
    assert seen == {"other": {}}


@pytest.mark.anyio
async def test_non_http_scopes_pass_through():
    calls = []

    async def app(scope, receive, send):
        calls.append(scope["type"])

    middleware = CompressMiddleware(app)
    await middleware({"type": "lifespan"}, receive, lambda message: None)
    await middleware({"type": "websocket", "headers": []}, receive, lambda message: None)
    assert calls == ["lifespan", "websocket"]
