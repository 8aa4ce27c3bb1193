"""Tools, prompts, resources and resource templates that a server offers."""

from __future__ import annotations

import base64
import binascii
import inspect
import json
import re
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)
from urllib.parse import unquote

T = TypeVar("T")

Handler = Callable[[Dict[str, Any]], Union[Awaitable[Dict[str, Any]], Dict[str, Any]]]
"""Called with the request parameters; returns the result, directly or awaited."""

ToolMiddleware = Callable[[Handler], Handler]
"""Wraps a tool handler in another handler."""

Params = Union[None, bytes, str, Mapping[str, Any]]


class ServerNotSupportError(Exception):
    """The server was not configured with the capability a request needs."""

    def __init__(self, message: str = "server does not support this capability") -> None:
        super().__init__(message)


class RateLimitExceededError(Exception):
    """A rate limiter refused a tool call."""

    def __init__(self, message: str = "rate limit exceeded") -> None:
        super().__init__(message)


_UNRESERVED = r"[A-Za-z0-9\-._~]"
_RESERVED = r"[:/?#\[\]@!$&'()*+,;=]"
_PCT = r"%[0-9A-Fa-f]{2}"
_VARNAME = re.compile(
    r"(?:[A-Za-z0-9_]|%[0-9A-Fa-f]{2})(?:\.?(?:[A-Za-z0-9_]|%[0-9A-Fa-f]{2}))*"
)
_PREFIX_LEN = re.compile(r"[1-9][0-9]{0,3}")

# operator -> (prefix, separator, named, allow reserved characters)
_OPERATORS: Dict[str, Tuple[str, str, bool, bool]] = {
    "": ("", ",", False, False),
    "+": ("", ",", False, True),
    "#": ("#", ",", False, True),
    ".": (".", ".", False, False),
    "/": ("/", "/", False, False),
    ";": (";", ";", True, False),
    "?": ("?", "&", True, False),
    "&": ("&", "&", True, False),
}
_RESERVED_OPERATORS = set("=,!@|")


class UriTemplate:
    """A URI template that can tell which URIs it produces and with what values."""

    def __init__(self, template: str) -> None:
        self.template = template
        self.variables: List[str] = []
        self._group_names: List[str] = []
        self._regex = re.compile(self._build(template))

    def _build(self, template: str) -> str:
        parts: List[str] = []
        pos = 0
        while pos < len(template):
            start = template.find("{", pos)
            literal = template[pos:] if start < 0 else template[pos:start]
            if "}" in literal:
                raise ValueError(f"invalid URI template {template!r}: unmatched '}}'")
            parts.append(re.escape(literal))
            if start < 0:
                break
            end = template.find("}", start)
            if end < 0:
                raise ValueError(f"invalid URI template {template!r}: unclosed expression")
            parts.append(self._expression(template, template[start + 1:end]))
            pos = end + 1
        return "".join(parts)

    def _expression(self, template: str, expr: str) -> str:
        if not expr:
            raise ValueError(f"invalid URI template {template!r}: empty expression")
        op = expr[0] if expr[0] in _OPERATORS and expr[0] else ""
        if expr[0] in _RESERVED_OPERATORS:
            raise ValueError(f"invalid URI template {template!r}: reserved operator {expr[0]!r}")
        body = expr[len(op):]
        prefix, sep, named, allow_reserved = _OPERATORS[op]
        unit = f"(?:{_UNRESERVED}|{_PCT})"
        if allow_reserved:
            unit = f"(?:{_UNRESERVED}|{_RESERVED}|{_PCT})"

        pieces: List[str] = []
        for spec in body.split(","):
            explode = spec.endswith("*")
            if explode:
                spec = spec[:-1]
            name, colon, length = spec.partition(":")
            if colon and not _PREFIX_LEN.fullmatch(length):
                raise ValueError(f"invalid URI template {template!r}: bad prefix {length!r}")
            if not _VARNAME.fullmatch(name):
                raise ValueError(f"invalid URI template {template!r}: bad variable {name!r}")
            value_unit = unit
            if explode:
                extra = re.escape(sep) + ("|=" if named else "")
                value_unit = f"(?:{unit}|{extra})"
            count = f"{{0,{length}}}" if colon else "*"
            group = f"g{len(self._group_names)}"
            self._group_names.append(name)
            if name not in self.variables:
                self.variables.append(name)
            value = f"(?P<{group}>{value_unit}{count})"
            if named:
                value = f"{re.escape(name)}(?:={value})?"
            pieces.append(value)

        regex = pieces[0] + "".join(f"(?:{re.escape(sep)}{piece})?" for piece in pieces[1:])
        if prefix:
            return f"(?:{re.escape(prefix)}{regex})?"
        return regex

    def match(self, uri: str) -> Optional[Dict[str, str]]:
        """Return the variable values that produce ``uri``, or None if none do."""
        found = self._regex.fullmatch(uri)
        if found is None:
            return None
        values: Dict[str, str] = {}
        for index, name in enumerate(self._group_names):
            value = found.group(f"g{index}")
            if value is not None and name not in values:
                values[name] = unquote(value)
        return values

    def __repr__(self) -> str:
        return f"UriTemplate({self.template!r})"


def rate_limit_middleware(limiter: Any) -> ToolMiddleware:
    """Refuse tool calls that ``limiter.allow(tool_name)`` does not allow."""

    def middleware(handler: Handler) -> Handler:
        async def limited(request: Dict[str, Any]) -> Dict[str, Any]:
            if limiter is not None and not limiter.allow(request.get("name", "")):
                raise RateLimitExceededError()
            return await _invoke(handler, request)

        return limited

    return middleware


def _encode_cursor(offset: int) -> str:
    return base64.urlsafe_b64encode(str(offset).encode()).decode()


def _decode_cursor(cursor: str) -> int:
    try:
        text = base64.urlsafe_b64decode(cursor.encode()).decode()
        offset = int(text)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError(f"invalid cursor: {cursor!r}") from exc
    if offset < 0:
        raise ValueError(f"invalid cursor: {cursor!r}")
    return offset


def paginate(items: Sequence[T], cursor: Optional[str], limit: int) -> Tuple[List[T], str]:
    """Return one page of at most ``limit`` items and the cursor of the next page.

    The next cursor is empty when nothing follows the page.
    """
    if limit <= 0:
        raise ValueError("pagination limit must be positive")
    start = _decode_cursor(cursor) if cursor else 0
    if start > len(items):
        raise ValueError(f"invalid cursor: {cursor!r}")
    end = start + limit
    page = list(items[start:end])
    next_cursor = _encode_cursor(end) if end < len(items) else ""
    return page, next_cursor


async def _invoke(handler: Handler, request: Dict[str, Any]) -> Dict[str, Any]:
    result = handler(request)
    if inspect.isawaitable(result):
        result = await result
    return result


def _decode_params(params: Params, *, required: bool) -> Dict[str, Any]:
    if params is None or (isinstance(params, (bytes, str)) and not params):
        if required:
            raise ValueError("invalid params: missing request parameters")
        return {}
    if isinstance(params, (bytes, str)):
        try:
            params = json.loads(params)
        except ValueError as exc:
            raise ValueError(f"invalid params: {exc}") from exc
        if params is None:
            if required:
                raise ValueError("invalid params: missing request parameters")
            return {}
    if not isinstance(params, Mapping):
        raise ValueError("invalid params: expected an object")
    return dict(params)


def default_capabilities() -> Dict[str, Any]:
    """The capabilities a server announces unless told otherwise."""
    return {
        "prompts": {"listChanged": True},
        "resources": {"listChanged": True, "subscribe": True},
        "tools": {"listChanged": True},
    }


class Registry:
    """Holds what a server offers and answers the requests that list or use it."""

    def __init__(
        self,
        capabilities: Optional[Mapping[str, Any]] = None,
        pagination_limit: int = 0,
    ) -> None:
        self.capabilities: Dict[str, Any] = (
            dict(capabilities) if capabilities is not None else default_capabilities()
        )
        self.pagination_limit = pagination_limit
        self._tools: Dict[str, Tuple[Dict[str, Any], Handler]] = {}
        self._prompts: Dict[str, Tuple[Dict[str, Any], Handler]] = {}
        self._resources: Dict[str, Tuple[Dict[str, Any], Handler]] = {}
        self._templates: Dict[str, Tuple[Dict[str, Any], UriTemplate, Handler]] = {}

    def _require(self, capability: str) -> None:
        if self.capabilities.get(capability) is None:
            raise ServerNotSupportError()

    def _listing(self, key: str, items: List[Any], params: Params) -> Dict[str, Any]:
        request = _decode_params(params, required=False)
        if self.pagination_limit > 0:
            page, next_cursor = paginate(items, request.get("cursor"), self.pagination_limit)
            result: Dict[str, Any] = {key: page}
            if next_cursor:
                result["nextCursor"] = next_cursor
            return result
        return {key: items}

    def register_tool(self, tool: Mapping[str, Any], handler: Handler, *args: ToolMiddleware) -> None:
        """Offer a tool; middlewares wrap the handler, the first one outermost."""
        for middleware in reversed(args):
            handler = middleware(handler)
        self._tools[tool["name"]] = (dict(tool), handler)

    def unregister_tool(self, name: str) -> None:
        self._tools.pop(name, None)

    def register_prompt(self, prompt: Mapping[str, Any], handler: Handler) -> None:
        self._prompts[prompt["name"]] = (dict(prompt), handler)

    def unregister_prompt(self, name: str) -> None:
        self._prompts.pop(name, None)

    def register_resource(self, resource: Mapping[str, Any], handler: Handler) -> None:
        self._resources[resource["uri"]] = (dict(resource), handler)

    def unregister_resource(self, uri: str) -> None:
        self._resources.pop(uri, None)

    def register_resource_template(self, template: Mapping[str, Any], handler: Handler) -> None:
        """Offer a resource template; raises ValueError if it does not parse."""
        parsed = UriTemplate(template["uriTemplate"])
        self._templates[template["uriTemplate"]] = (dict(template), parsed, handler)

    def unregister_resource_template(self, uri_template: str) -> None:
        self._templates.pop(uri_template, None)

    def list_tools(self, params: Params = None) -> Dict[str, Any]:
        self._require("tools")
        return self._listing("tools", [tool for tool, _ in self._tools.values()], params)

    async def call_tool(self, params: Params) -> Dict[str, Any]:
        self._require("tools")
        request = _decode_params(params, required=True)
        name = request.get("name", "")
        entry = self._tools.get(name)
        if entry is None:
            raise LookupError(f"missing tool, toolName={name}")
        return await _invoke(entry[1], request)

    def list_prompts(self, params: Params = None) -> Dict[str, Any]:
        self._require("prompts")
        return self._listing("prompts", [prompt for prompt, _ in self._prompts.values()], params)

    async def get_prompt(self, params: Params) -> Dict[str, Any]:
        self._require("prompts")
        request = _decode_params(params, required=True)
        name = request.get("name", "")
        entry = self._prompts.get(name)
        if entry is None:
            raise LookupError(f"missing prompt, promptName={name}")
        return await _invoke(entry[1], request)

    def list_resources(self, params: Params = None) -> Dict[str, Any]:
        self._require("resources")
        return self._listing(
            "resources", [resource for resource, _ in self._resources.values()], params
        )

    def list_resource_templates(self, params: Params = None) -> Dict[str, Any]:
        self._require("resources")
        return self._listing(
            "resourceTemplates",
            [template for template, _, _ in self._templates.values()],
            params,
        )

    async def read_resource(self, params: Params) -> Dict[str, Any]:
        """Read a resource; a matching template takes precedence over an exact URI."""
        self._require("resources")
        request = _decode_params(params, required=True)
        uri = request.get("uri", "")
        handler: Optional[Handler] = None
        entry = self._resources.get(uri)
        if entry is not None:
            handler = entry[1]
        for _, parsed, template_handler in self._templates.values():
            values = parsed.match(uri)
            if values is None:
                continue
            handler = template_handler
            request["arguments"] = dict(values)
            break
        if handler is None:
            raise LookupError(f"missing resource, resourceName={uri}")
        return await _invoke(handler, request)