"""
HTTP Accept-Encoding header parsing and negotiation utilities.
"""
from functools import lru_cache
from typing import Literal, Sequence

# Defines the internal priority for encodings we recognize.
# Lower numbers are preferred when q-factors are equal.
# "gzip" > "deflate"
CODING_PRIORITIES: dict[str, int] = {
    "gzip": 0,
    "deflate": 1,
}

# Defines the clear return types for the encoding selection
SupportedEncoding = Literal["gzip", "deflate", "identity"]


def parse_part(part: str) -> tuple[float, int, str] | None:
    """
    Parses a single part of the 'Accept-Encoding' header (e.g., "gzip;q=0.8").
    Returns a tuple of (q-factor, priority, encoding_name) or None if the
    coding is unsupported or explicitly refused.
    """
    part = part.strip()
    if not part:
        return None

    components = part.split(";")
    coding_name = components[0].strip().lower()

    if coding_name not in CODING_PRIORITIES:
        # "*", "identity", "br", "zstd"... only literal gzip/deflate count
        return None

    priority = CODING_PRIORITIES[coding_name]
    q_val = 1.0  # Default q-factor is 1.0 per RFC

    for param in components[1:]:
        param = param.strip()
        if param[:2].lower() == "q=":
            try:
                q_val = float(param[2:])
            except ValueError:
                q_val = 1.0  # lenient: a malformed q-factor never refuses
            break

    if q_val != q_val:  # NaN
        q_val = 1.0

    if q_val <= 0:
        return None  # q=0 means the client explicitly forbids this encoding

    if q_val > 1.0:
        q_val = 1.0

    return (q_val, priority, coding_name)


@lru_cache(maxsize=128)
def get_preferred_encoding(
    accept_encoding: str,
    respect_q_factors: bool = False,
) -> SupportedEncoding:
    """
    Parses the 'Accept-Encoding' header string and returns the encoding to
    respond with ("gzip", "deflate", or "identity").

    By default q-factors only decide whether a coding is acceptable at all,
    and gzip wins whenever it is. With ``respect_q_factors`` the acceptable
    codings are ranked by q-factor instead, gzip still winning ties.

    Results are LRU-cached for performance.
    """
    options: list[tuple[float, int, str]] = []

    for part_str in accept_encoding.split(","):
        parsed = parse_part(part_str)
        if parsed:
            options.append(parsed)

    if not options:
        return "identity"

    if respect_q_factors:
        options.sort(key=lambda p: (-p[0], p[1]))
    else:
        options.sort(key=lambda p: p[1])

    return options[0][2]  # type: ignore[return-value]


def choose_encoding(
    accept_encoding_values: Sequence[str],
    respect_q_factors: bool = False,
) -> SupportedEncoding:
    """
    Negotiates over every value of a (possibly repeated) Accept-Encoding header.
    """
    if isinstance(accept_encoding_values, str):
        accept_encoding_values = [accept_encoding_values]
    # Repeated headers are equivalent to a single comma-joined one.
    return get_preferred_encoding(
        ",".join(accept_encoding_values), respect_q_factors
    )
