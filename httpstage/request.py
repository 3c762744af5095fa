"""Outgoing request construction.

Turns a ResolvedRequest into an httpx.Request: attaches the body with its
content type and projects matching record attributes onto headers.
"""

from __future__ import annotations

import codecs
import re
from collections.abc import Iterator, Mapping
from email.message import Message

import httpx

from httpstage.errors import TemplateError
from httpstage.records import Record
from httpstage.template import ResolvedRequest

DEFAULT_CONTENT_TYPE = "text/plain"
DEFAULT_CHARSET = "UTF-8"


def parse_content_type(value: str | None) -> tuple[str, str]:
    """Return the Content-Type header to send and the charset to encode with.

    - No type: ``text/plain; charset=UTF-8``
    - A text type without charset gets ``charset=UTF-8`` appended
    - A non-text type is sent as declared, with no charset injected
    - An explicit charset is kept and used for encoding

    Raises:
        TemplateError: If the declared charset is unknown
    """
    if not value:
        return f"{DEFAULT_CONTENT_TYPE}; charset={DEFAULT_CHARSET}", DEFAULT_CHARSET

    message = Message()
    message["Content-Type"] = value
    mime_type = message.get_content_type()
    charset = message.get_param("charset")
    if isinstance(charset, tuple):
        # RFC 2231 encoded parameter
        charset = charset[2]

    if charset:
        try:
            codecs.lookup(charset)
        except LookupError as e:
            raise TemplateError(
                f"Unknown charset {charset!r} in content type {value!r}",
                details={"content_type": value},
            ) from e
        return value, charset

    if mime_type.startswith("text/"):
        return f"{value}; charset={DEFAULT_CHARSET}", DEFAULT_CHARSET
    return value, DEFAULT_CHARSET


def project_attributes(
    attributes: Mapping[str, str],
    pattern: re.Pattern[str] | None,
    ignored: frozenset[str],
) -> Iterator[tuple[str, str]]:
    """Yield (header, value) for each attribute to forward.

    Keys must fully match ``pattern`` and not be in ``ignored``. With no
    pattern nothing is forwarded.
    """
    if pattern is None:
        return
    for key, value in attributes.items():
        key = key.strip()
        if not key or key in ignored:
            continue
        if pattern.fullmatch(key):
            yield key, value.strip()


def build_request(
    resolved: ResolvedRequest,
    record: Record,
    *,
    forward_pattern: re.Pattern[str] | None = None,
    ignored_attributes: frozenset[str] = frozenset(),
) -> httpx.Request:
    """Build a fresh request for one record."""
    headers = httpx.Headers()
    content: bytes | None = None

    if resolved.body is not None:
        content_type, charset = parse_content_type(resolved.content_type)
        content = resolved.body.encode(charset)
        headers["Content-Type"] = content_type

    if resolved.accept is not None:
        headers["Accept"] = resolved.accept

    for key, value in project_attributes(
        record.attributes, forward_pattern, ignored_attributes
    ):
        headers[key] = value

    request = httpx.Request(
        resolved.method,
        resolved.url,
        headers=headers,
        content=content,
    )
    if content is None and "Content-Length" not in headers:
        # httpx declares an empty body on POST/PUT/PATCH; a bodyless request sends no entity
        request.headers.pop("Content-Length", None)
    return request
