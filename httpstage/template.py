"""Request template resolution.

Expressions reference record attributes as ``${name}``. A reference to a
missing attribute renders as the empty string. ``$${`` renders a literal
``${``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from httpstage.config import TemplateConfig
from httpstage.errors import TemplateError
from httpstage.records import Record

_REFERENCE_RE = re.compile(r"\$(\$)?\{([^}]*)\}")


def render(expression: str | None, attributes: Mapping[str, str]) -> str:
    """Substitute attribute references in ``expression``.

    Pure: the same expression and attributes always render the same string.
    """
    if not expression:
        return ""

    def _substitute(match: re.Match[str]) -> str:
        if match.group(1):
            return "${" + match.group(2) + "}"
        return attributes.get(match.group(2).strip(), "")

    return _REFERENCE_RE.sub(_substitute, expression)


def _render_optional(expression: str | None, attributes: Mapping[str, str]) -> str | None:
    value = render(expression, attributes).strip()
    return value or None


@dataclass(frozen=True)
class ResolvedRequest:
    """Template fields rendered for one record."""

    method: str
    url: httpx.URL
    content_type: str | None = None
    accept: str | None = None
    # None means no body; an empty rendered body is also no body
    body: str | None = None


@dataclass(frozen=True)
class Template:
    """Compiled request template."""

    method: str
    url: str
    content_type: str | None = None
    accept: str | None = None
    body: str | None = None
    forward_pattern: re.Pattern[str] | None = None
    ignored_attributes: frozenset[str] = frozenset()

    @classmethod
    def from_config(cls, config: TemplateConfig) -> Template:
        pattern = None
        if config.attributes_to_send:
            pattern = re.compile(config.attributes_to_send)
        return cls(
            method=config.method,
            url=config.url,
            content_type=config.content_type,
            accept=config.accept,
            body=config.body,
            forward_pattern=pattern,
            ignored_attributes=frozenset(config.ignored_attributes),
        )

    def resolve(self, record: Record) -> ResolvedRequest:
        """Render every expression against the record's attributes.

        Raises:
            TemplateError: If the method is empty or the URL is not an
                absolute http(s) URI
        """
        attributes = record.attributes
        method = render(self.method, attributes).strip()
        if not method or any(c.isspace() for c in method):
            raise TemplateError(
                f"Invalid HTTP method: {method!r}",
                details={"expression": self.method},
            )

        return ResolvedRequest(
            method=method,
            url=parse_url(render(self.url, attributes).strip()),
            content_type=_render_optional(self.content_type, attributes),
            accept=_render_optional(self.accept, attributes),
            body=_render_optional(self.body, attributes),
        )


def parse_url(value: str) -> httpx.URL:
    """Parse an absolute http(s) URL or raise TemplateError."""
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as e:
        raise TemplateError(f"Invalid URL {value!r}: {e}", details={"url": value}) from e

    if url.scheme not in ("http", "https") or not url.host:
        raise TemplateError(
            f"URL must be absolute with an http or https scheme: {value!r}",
            details={"url": value},
        )
    return url
