import zlib
from typing import Protocol

DEFAULT_COMPRESSION = zlib.Z_DEFAULT_COMPRESSION
NO_COMPRESSION = zlib.Z_NO_COMPRESSION
BEST_SPEED = zlib.Z_BEST_SPEED
BEST_COMPRESSION = zlib.Z_BEST_COMPRESSION


def validate_level(level: int) -> int:
    """Returns ``level`` if zlib accepts it, raises ValueError otherwise."""
    if isinstance(level, bool) or not isinstance(level, int):
        raise ValueError(f"compression level must be an int, got {level!r}")
    if not DEFAULT_COMPRESSION <= level <= BEST_COMPRESSION:
        raise ValueError(
            f"compression level must be between {DEFAULT_COMPRESSION} "
            f"and {BEST_COMPRESSION}, got {level}"
        )
    return level


class CompressorProtocol(Protocol):
    """
    Interface of a streaming compressor.
    Any class implementing these methods can be used by the responder.
    """
    def compress(self, data: bytes) -> bytes: ...
    def flush(self) -> bytes: ...


class BaseCompressor:
    """
    Helper base class for zlib backed streaming compressors.
    """
    ENCODING: str = ""
    WBITS: int = zlib.MAX_WBITS

    def __init__(self, level: int = DEFAULT_COMPRESSION) -> None:
        """
        :param level: Compression level, -1 (zlib default) or 0-9.
        """
        self.level = level
        self.compressor = zlib.compressobj(level, zlib.DEFLATED, self.WBITS)

    def compress(self, data: bytes) -> bytes:
        """Compresses a chunk of data, returning whatever output is ready."""
        return self.compressor.compress(data)

    def flush(self) -> bytes:
        """Finishes the stream, returning the remaining output and trailer."""
        return self.compressor.flush()


class GzipCompressor(BaseCompressor):
    """
    Gzip container: zlib generates the gzip header and CRC trailer.
    """
    ENCODING = "gzip"
    WBITS = 16 + zlib.MAX_WBITS


class DeflateCompressor(BaseCompressor):
    """
    Raw deflate stream, no zlib header.
    """
    ENCODING = "deflate"
    WBITS = -zlib.MAX_WBITS


COMPRESSORS: dict[str, type[BaseCompressor]] = {
    GzipCompressor.ENCODING: GzipCompressor,
    DeflateCompressor.ENCODING: DeflateCompressor,
}


def create_compressor(
    encoding: str, level: int = DEFAULT_COMPRESSION
) -> CompressorProtocol:
    try:
        compressor_class = COMPRESSORS[encoding]
    except KeyError:
        raise ValueError(f"unsupported encoding {encoding!r}") from None
    return compressor_class(level)
