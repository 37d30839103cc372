"""Layer that rewrites request paths before forwarding upstream."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Optional, Protocol

from .core import HttpService, Request, Response, _split_uri

logger = logging.getLogger(__name__)

_REF_NAME = re.compile(r"[_0-9A-Za-z]+")


class RoutePattern:
    """Route pattern with ``{name}`` parameters and a trailing ``{*rest}`` catch-all."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        self.params: list[str] = []
        parts: list[str] = []
        segment_has_param = False
        i, n = 0, len(pattern)
        while i < n:
            char = pattern[i]
            if char == "{":
                if pattern.startswith("{{", i):
                    parts.append(re.escape("{"))
                    i += 2
                    continue
                end = pattern.find("}", i)
                if end == -1:
                    raise ValueError(f"unclosed parameter in route {pattern!r}")
                name = pattern[i + 1 : end]
                catch_all = name.startswith("*")
                if catch_all:
                    name = name[1:]
                if not name or any(c in name for c in "{}/*"):
                    raise ValueError(f"invalid parameter name in route {pattern!r}")
                if segment_has_param:
                    raise ValueError(
                        f"only one parameter is allowed per path segment in {pattern!r}"
                    )
                if catch_all:
                    if end != n - 1:
                        raise ValueError(
                            f"catch-all parameters are only allowed at the end of a route: {pattern!r}"
                        )
                    if not pattern[:i].endswith("/"):
                        raise ValueError(f"catch-all parameters must follow a '/': {pattern!r}")
                    parts.append("(.+)")
                else:
                    parts.append("([^/]+)")
                self.params.append(name)
                segment_has_param = True
                i = end + 1
            elif char == "}":
                if not pattern.startswith("}}", i):
                    raise ValueError(f"unmatched '}}' in route {pattern!r}")
                parts.append(re.escape("}"))
                i += 2
            else:
                if char == "/":
                    segment_has_param = False
                parts.append(re.escape(char))
                i += 1
        self._regex = re.compile("".join(parts))

    def match(self, path: str) -> Optional[dict[str, str]]:
        """Return the captured parameters, in pattern order, or None."""
        found = self._regex.fullmatch(path)
        if found is None:
            return None
        return dict(zip(self.params, found.groups()))


def _group_value(found: re.Match, ref: str) -> str:
    try:
        value = found.group(int(ref) if ref.isdigit() else ref)
    except (IndexError, error_types()):
        return ""
    return value or ""


def error_types():
    return IndexError


def _expand(found: re.Match, template: str) -> str:
    """Expand ``$1``, ``$name``, ``${name}`` and ``$$`` in a replacement."""
    out: list[str] = []
    i, n = 0, len(template)
    while i < n:
        char = template[i]
        if char != "$":
            out.append(char)
            i += 1
            continue
        if template.startswith("$$", i):
            out.append("$")
            i += 2
            continue
        if template.startswith("${", i):
            end = template.find("}", i + 2)
            ref = template[i + 2 : end] if end != -1 else ""
            if ref and _REF_NAME.fullmatch(ref):
                out.append(_group_value(found, ref))
                i = end + 1
                continue
            out.append("$")
            i += 1
            continue
        name = _REF_NAME.match(template, i + 1)
        if name is None:
            out.append("$")
            i += 1
            continue
        out.append(_group_value(found, name.group()))
        i = name.end()
    return "".join(out)


class _Rule(Protocol):
    def rewrite(self, path: str) -> Optional[str]: ...


@dataclass(frozen=True)
class _PatternRule:
    route: RoutePattern
    template: str

    def rewrite(self, path: str) -> Optional[str]:
        params = self.route.match(path)
        if params is None:
            return None
        result = self.template
        for key, value in params.items():
            result = result.replace("{" + key + "}", value)
        return result


@dataclass(frozen=True)
class _RegexRule:
    regex: re.Pattern
    replacement: str

    def rewrite(self, path: str) -> Optional[str]:
        found = self.regex.search(path)
        if found is None:
            return None
        return path[: found.start()] + _expand(found, self.replacement) + path[found.end() :]


def rewrite_uri(uri: str, new_path: str) -> str:
    """Replace the path of ``uri``, keeping scheme, authority and query."""
    scheme, authority, _, query = _split_uri(uri)
    prefix = f"{scheme}://{authority}" if scheme else ""
    path_and_query = f"{new_path}?{query}" if query is not None else new_path
    return prefix + path_and_query


class UrlRewrite:
    """Ordered rewrite rules; the first matching rule wins."""

    def __init__(self, rules: Iterable[_Rule] = ()):
        self.rules: tuple[_Rule, ...] = tuple(rules)

    @classmethod
    def path(cls, pattern: str, replacement: str) -> UrlRewrite:
        return cls([_PatternRule(RoutePattern(pattern), replacement)])

    @classmethod
    def regex(cls, pattern: str, replacement: str) -> UrlRewrite:
        return cls([_RegexRule(re.compile(pattern), replacement)])

    def and_path(self, pattern: str, replacement: str) -> UrlRewrite:
        return UrlRewrite((*self.rules, _PatternRule(RoutePattern(pattern), replacement)))

    def and_regex(self, pattern: str, replacement: str) -> UrlRewrite:
        return UrlRewrite((*self.rules, _RegexRule(re.compile(pattern), replacement)))

    def rewrite(self, path: str) -> Optional[str]:
        """Return the rewritten path from the first matching rule, or None."""
        return next(
            (new for new in (rule.rewrite(path) for rule in self.rules) if new is not None),
            None,
        )

    def layer(self, inner: HttpService) -> UrlRewriteService:
        return UrlRewriteService(inner, self)


class UrlRewriteService:
    def __init__(self, inner: HttpService, rewrite: UrlRewrite):
        self.inner = inner
        self.rewrite = rewrite

    async def __call__(self, request: Request) -> Response:
        path = request.path
        new_path = self.rewrite.rewrite(path)
        if new_path is not None:
            logger.debug("url rewrite from=%s to=%s", path, new_path)
            request = replace(request, uri=rewrite_uri(request.uri, new_path))
        return await self.inner(request)