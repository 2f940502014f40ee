"""Source references for catalog templates.

A unit's source names the template it wraps::

    git::https://github.com/acme/catalog.git//units/vpc?ref=v1.4.0
    └────────────── location ──────────────┘ └subpath┘ └── ref ──┘

The ``//`` separator introduces the sub-path inside the fetched location and the
query string must come after it. ``...catalog.git?ref=v1//units/vpc`` is
rejected because the fetcher would treat ``v1//units/vpc`` as the ref. Query
parameters other than ``ref`` (e.g. ``depth=1``) are kept and rendered back.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Self
from urllib.parse import parse_qsl

from stackwright.errors import InvalidSourceReferenceError

_SUBPATH_SEPARATOR = "//"
_QUERY_SEPARATOR = "?"
_REF_PARAM = "ref"


@dataclass(frozen=True)
class SourceReference:
    """Parsed template source reference."""

    location: str
    subpath: str | None = None
    ref: str | None = None
    query: tuple[tuple[str, str], ...] = ()
    """Query parameters other than ``ref``, in their original order."""

    @classmethod
    def parse(cls, raw: str) -> Self:
        """Parse a source string.

        Args:
            raw: Source string as written in the stack file.

        Returns:
            Parsed SourceReference.

        Raises:
            InvalidSourceReferenceError: If the location or ref is empty, or the
                query string precedes the sub-path separator.

        """
        text = raw.strip()
        if not text:
            raise InvalidSourceReferenceError("Source reference is empty")

        # Skip over "scheme://" (and a "git::" style forcing prefix) when looking
        # for the sub-path separator
        scheme_end = text.find("://")
        search_from = scheme_end + 3 if scheme_end != -1 else 0

        query_index = text.find(_QUERY_SEPARATOR)
        subpath_index = text.find(_SUBPATH_SEPARATOR, search_from)

        if query_index != -1 and subpath_index > query_index:
            query_text = text[query_index + 1 : subpath_index]
            selector = "'?ref=' selector" if _has_ref(query_text) else "query string"
            raise InvalidSourceReferenceError(
                f"Invalid source '{raw}': the {selector} must follow the "
                f"'//' sub-path, e.g. "
                f"'{text[:query_index]}{text[subpath_index:]}?{query_text}'"
            )

        ref: str | None = None
        query: list[tuple[str, str]] = []
        if query_index != -1:
            for name, value in parse_qsl(text[query_index + 1 :], keep_blank_values=True):
                if name != _REF_PARAM:
                    query.append((name, value))
                elif not value:
                    raise InvalidSourceReferenceError(f"Invalid source '{raw}': empty ref")
                elif ref is None:
                    ref = value
            text = text[:query_index]

        subpath: str | None = None
        if subpath_index != -1:
            location = text[:subpath_index]
            subpath = text[subpath_index + len(_SUBPATH_SEPARATOR) :].strip("/") or None
        else:
            location = text

        if not location:
            raise InvalidSourceReferenceError(f"Invalid source '{raw}': empty location")

        return cls(location=location, subpath=subpath, ref=ref, query=tuple(query))

    @property
    def is_local(self) -> bool:
        """Whether the location is a local filesystem path."""
        return self.location.startswith(("./", "../", "/"))

    def with_ref(self, ref: str) -> Self:
        """Return a copy pinned to another version."""
        return replace(self, ref=ref)

    def render(self) -> str:
        """Render the canonical source string."""
        rendered = self.location
        if self.subpath:
            rendered += f"{_SUBPATH_SEPARATOR}{self.subpath}"
        params = [*self.query, *([(_REF_PARAM, self.ref)] if self.ref else [])]
        if params:
            rendered += _QUERY_SEPARATOR + "&".join(f"{name}={value}" for name, value in params)
        return rendered

    def __str__(self) -> str:
        """Render the canonical source string."""
        return self.render()


def _has_ref(query_text: str) -> bool:
    return any(name == _REF_PARAM for name, _ in parse_qsl(query_text, keep_blank_values=True))
