"""
Content-type exclusion policies and response header helpers.
"""
from typing import Callable, Iterable

from starlette.datastructures import MutableHeaders

# Returns True when a response with the given Content-Type must not be compressed.
ContentTypePolicy = Callable[[str], bool]


def media_type(content_type: str) -> str:
    """'Text/HTML; charset=utf-8' -> 'text/html'"""
    return content_type.split(";", 1)[0].strip().lower()


def compress_all(content_type: str) -> bool:
    return False


def exclude_content_types(content_types: Iterable[str]) -> ContentTypePolicy:
    """
    Builds a policy excluding the given media types.

    Parameters such as ``charset`` are ignored on both sides, and an entry
    like ``image/*`` excludes every subtype of ``image``.
    """
    exact = set()
    prefixes = set()
    for content_type in content_types:
        normalized = media_type(content_type)
        if normalized.endswith("/*"):
            prefixes.add(normalized[:-1])
        elif normalized:
            exact.add(normalized)

    def is_excluded(content_type: str) -> bool:
        normalized = media_type(content_type)
        if normalized in exact:
            return True
        return any(normalized.startswith(prefix) for prefix in prefixes)

    return is_excluded


def build_policy(
    excluded_content_types: Iterable[str] | ContentTypePolicy | None,
) -> ContentTypePolicy:
    if excluded_content_types is None:
        return compress_all
    if callable(excluded_content_types):
        return excluded_content_types
    if isinstance(excluded_content_types, (str, bytes)):
        raise ValueError(
            "excluded_content_types must be an iterable of media types, "
            "not a single string"
        )
    return exclude_content_types(excluded_content_types)


def add_vary_header(headers: MutableHeaders, token: str) -> None:
    """
    Appends ``token`` to the Vary header unless it is already listed.
    """
    existing = ", ".join(headers.getlist("vary"))
    if not existing:
        headers["Vary"] = token
        return
    listed = [value.strip().lower() for value in existing.split(",")]
    if token.lower() in listed or "*" in listed:
        return
    headers["Vary"] = f"{existing}, {token}"
