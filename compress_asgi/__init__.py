"""A gzip/deflate compression ASGI middleware.

Compresses responses on the fly for clients that accept gzip or deflate,
deciding per response once the inner application has declared its headers.
"""
import logging
import re
from contextlib import suppress
from typing import Iterable, NoReturn

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .compressors import (
    BEST_COMPRESSION,
    BEST_SPEED,
    DEFAULT_COMPRESSION,
    NO_COMPRESSION,
    CompressorProtocol,
    create_compressor,
    validate_level,
)
from .headers import SupportedEncoding, choose_encoding
from .policy import (
    ContentTypePolicy,
    add_vary_header,
    build_policy,
    compress_all,
    exclude_content_types,
)

__all__ = [
    "CompressMiddleware",
    "CompressResponder",
    "ContentTypePolicy",
    "choose_encoding",
    "compress_all",
    "exclude_content_types",
    "DEFAULT_COMPRESSION",
    "NO_COMPRESSION",
    "BEST_SPEED",
    "BEST_COMPRESSION",
]

logger = logging.getLogger(__name__)


class CompressMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        level: int = DEFAULT_COMPRESSION,
        excluded_content_types: Iterable[str] | ContentTypePolicy | None = None,
        respect_q_factors: bool = False,
        excluded_handlers: list[str] | None = None,
    ) -> None:
        self.app = app
        self.level = validate_level(level)
        self.content_type_policy = build_policy(excluded_content_types)
        self.respect_q_factors = respect_q_factors
        if excluded_handlers:
            self.excluded_handlers = [re.compile(path) for path in excluded_handlers]
        else:
            self.excluded_handlers = []

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_handler_excluded(scope):
            await self.app(scope, receive, send)
            return

        accept_encoding = Headers(scope=scope).getlist("accept-encoding")
        encoding = choose_encoding(accept_encoding, self.respect_q_factors)
        logger.debug(
            "negotiated %s for %s (accept-encoding: %r)",
            encoding, scope.get("path", ""), accept_encoding,
        )
        if encoding == "identity":
            await self.app(scope, receive, send)
            return

        responder = CompressResponder(
            self.app,
            encoding,
            level=self.level,
            content_type_policy=self.content_type_policy,
        )
        await responder(scope, receive, send)

    def _is_handler_excluded(self, scope: Scope) -> bool:
        handler = scope.get("path", "")
        return any(pattern.search(handler) for pattern in self.excluded_handlers)


class CompressResponder:
    """
    Stands in for the ASGI ``send`` of a single response.

    The compress/passthrough decision is taken once, on the
    ``http.response.start`` message, and is frozen from then on. The
    compressor belongs to this responder and is finalized when the inner
    application returns or raises.
    """

    def __init__(
        self,
        app: ASGIApp,
        encoding: SupportedEncoding,
        level: int = DEFAULT_COMPRESSION,
        content_type_policy: ContentTypePolicy = compress_all,
    ) -> None:
        self.app = app
        self.encoding = encoding
        self.level = level
        self.content_type_policy = content_type_policy
        self.send: Send = unattached_send
        self.decided = False
        self.compressor: CompressorProtocol | None = None
        self.send_failed = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.send = send
        extensions = scope.get("extensions") or {}
        if "http.response.pathsend" in extensions:
            # File bodies must flow through send_with_compression as bytes.
            extensions = {
                name: value
                for name, value in extensions.items()
                if name != "http.response.pathsend"
            }
            scope = {**scope, "extensions": extensions}
        try:
            await self.app(scope, receive, self.send_with_compression)
        except Exception:
            # The app's exception wins over a failure to write the trailer.
            with suppress(Exception):
                await self.close()
            raise
        except BaseException:
            # Cancelled: the transport is going away, just drop the compressor.
            self.compressor = None
            raise
        else:
            await self.close()

    @property
    def compressing(self) -> bool:
        return self.compressor is not None

    async def send_with_compression(self, message: Message) -> None:
        message_type = message["type"]
        if message_type == "http.response.start" and not self.decided:
            message = self.decide(message)
        elif message_type == "http.response.body" and self.compressor is not None:
            body_message = self.compress_body(self.compressor, message)
            if body_message is None:
                return
            message = body_message
        try:
            await self.send(message)
        except BaseException:
            self.send_failed = True
            raise

    def decide(self, message: Message) -> Message:
        self.decided = True
        headers = MutableHeaders(raw=list(message.get("headers", [])))
        reason = self._passthrough_reason(message["status"], headers)
        if reason:
            logger.debug("not compressing response: %s", reason)
            return message

        del headers["content-length"]
        headers["Content-Encoding"] = self.encoding
        add_vary_header(headers, "Accept-Encoding")
        self.compressor = create_compressor(self.encoding, self.level)
        return {**message, "headers": headers.raw}

    def _passthrough_reason(self, status: int, headers: MutableHeaders) -> str | None:
        if self.encoding == "identity":
            return "no acceptable encoding"
        if status < 200 or status in (204, 304):
            return f"status {status} has no body"
        if "content-encoding" in headers:
            return "already encoded"
        content_type = headers.get("content-type", "")
        if self.content_type_policy(content_type):
            return f"content type {content_type!r} is excluded"
        return None

    def compress_body(
        self, compressor: CompressorProtocol, message: Message
    ) -> Message | None:
        more_body = message.get("more_body", False)
        body = compressor.compress(message.get("body", b""))
        if not more_body:
            body += compressor.flush()
            self.compressor = None
        elif not body:
            # Nothing encoded yet; keep buffering.
            return None
        return {**message, "body": body}

    async def close(self) -> None:
        """Finishes the compressed stream if the app did not end the body.

        Nothing is written once ``send`` has failed.
        """
        if self.compressor is None:
            return
        trailer = self.compressor.flush()
        self.compressor = None
        if self.send_failed:
            return
        await self.send(
            {"type": "http.response.body", "body": trailer, "more_body": False}
        )


async def unattached_send(message: Message) -> NoReturn:
    raise RuntimeError("send awaitable not set")  # pragma: no cover
