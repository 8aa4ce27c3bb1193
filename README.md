# mcplink

Asyncio building blocks for Model Context Protocol (MCP) servers:

- `mcplink.transport.stdio` and `mcplink.transport.sse`: transports that
  carry newline-delimited or Server-Sent-Events JSON-RPC messages, each with
  a server side and a client side.
- `mcplink.session`: per-session state with an outgoing message queue, and a
  `SessionManager` that creates, closes and health-checks sessions.
- `mcplink.server.registry`: a `Registry` of tools, prompts, resources and
  resource templates that answers the list, call, get and read requests,
  with optional pagination, URI template matching and tool middleware.

## Installation

```
pip install mcplink
```

With the test dependencies:

```
pip install "mcplink[test]"
```

## Transports

| Module                    | Server                 | Client                 |
|---------------------------|------------------------|------------------------|
| `mcplink.transport.stdio` | `StdioServerTransport` | `StdioClientTransport` |
| `mcplink.transport.sse`   | `SSEServerTransport`   | `SSEClientTransport`   |

All of them follow the interfaces in `mcplink.transport.base`
(`ClientTransport`, `ServerTransport`, `SessionStore`); failures are raised
as `TransportError` or one of its subclasses (`LackSessionError`,
`SessionClosedError`, `SendEOFError`).

A server transport needs a receiver and a session store before `run()`:

- The receiver is a coroutine function `receiver(session_id, message)`. It
  returns `None` when there is nothing to answer, or an async iterator of
  byte strings to send back to that session.
- The session store is usually a `mcplink.session.SessionManager`.

`StdioServerTransport` serves one session over stdin and stdout (or a
reader and writer you pass in). `StdioClientTransport(command, args)`
starts the command as a child process and exchanges lines over its stdin
and stdout; `close()` raises `TransportError` if the command exits with a
non-zero status.

`SSEServerTransport("127.0.0.1:8080")` runs its own aiohttp server, with an
event stream at `/sse` and messages accepted by POST at `/message`
(`sse_path`, `message_path` and `url_prefix` change this). Each stream
first sends an `endpoint` event naming `<message endpoint>?sessionID=<id>`;
replies to posted messages are delivered as `message` events on that
stream. To serve from an aiohttp application of your own, create the
transport with `SSEServerTransport.for_handler(message_endpoint_url)` and
route requests to its `handle_sse` and `handle_message` methods.

`SSEClientTransport(server_url)` opens the stream, waits up to ten seconds
for the `endpoint` event in `start()`, and posts messages to it in
`send()`. By default it reconnects when the stream fails; pass `retry=` to
change that.

`shutdown(server_done)` on a server transport takes an `asyncio.Event` that
is set once in-flight work is finished.

## A minimal stdio server

```python
import asyncio
import json

from mcplink.server.registry import Registry
from mcplink.session import SessionManager
from mcplink.transport.stdio import StdioServerTransport

registry = Registry()


async def current_time(request):
    return {"content": [{"type": "text", "text": "12:00"}]}


registry.register_tool(
    {
        "name": "current_time",
        "description": "current time",
        "inputSchema": {"type": "object", "properties": {"timezone": {"type": "string"}}},
    },
    current_time,
)


async def receive(session_id, message):
    request = json.loads(message)
    if "id" not in request:
        return None

    async def replies():
        params = request.get("params")
        try:
            if request["method"] == "tools/list":
                result = registry.list_tools(params)
            elif request["method"] == "tools/call":
                result = await registry.call_tool(params)
            else:
                raise LookupError(f"method not supported: {request['method']}")
            reply = {"jsonrpc": "2.0", "id": request["id"], "result": result}
        except Exception as exc:
            reply = {
                "jsonrpc": "2.0",
                "id": request["id"],
                "error": {"code": -32603, "message": str(exc)},
            }
        yield json.dumps(reply).encode()

    return replies()


async def alive(session_id):
    return None


async def main():
    transport = StdioServerTransport()
    transport.set_receiver(receive)
    transport.set_session_manager(SessionManager(alive))
    await transport.run()


asyncio.run(main())
```

## Sessions

`SessionManager(detection, gen_session_id=None)` keeps active and closed
sessions. `detection` is a coroutine function called with a session id to
check that the client is alive; it should raise when it is not.
`check_sessions()` closes sessions that have been idle longer than
`max_idle_time` seconds (when it is set) or that fail detection three
times in a row. `run_heartbeat(interval)` calls it every `interval` seconds
(60 by default) until `stop_heartbeat()`.

Each `SessionState` holds an outgoing queue of up to 64 messages
(`open_send_queue`, `enqueue`, `dequeue`), the client's info and
capabilities, its subscribed resources, and a counter for ids of requests
sent to the client. Once a session is closed, `dequeue` drains what is left
and then raises `SendEOFError`; using a queue that was never opened raises
`QueueNotOpenedError`.

## The registry

`Registry(capabilities=None, pagination_limit=0)` announces tools, prompts
and resources by default. A request for a capability that is not configured
raises `ServerNotSupportError`; asking for an unknown tool, prompt or
resource raises `LookupError`; malformed parameters raise `ValueError`.
Parameters may be given as a mapping, or as JSON bytes or text.

- Handlers take the request parameters as a dict and return the result,
  directly or as an awaitable.
- `register_tool(tool, handler, *middlewares)` wraps the handler in the
  middlewares, the first one outermost. `rate_limit_middleware(limiter)`
  raises `RateLimitExceededError` when `limiter.allow(tool_name)` is false.
- `register_resource_template` parses the `uriTemplate` with `UriTemplate`
  (raising `ValueError` if it does not parse). In `read_resource` a
  matching template takes precedence over an exact URI, and the values it
  extracts are passed to the handler under `arguments`.
- With `pagination_limit` above zero, list results are pages of that size,
  carrying `nextCursor` while more follow. `paginate(items, cursor, limit)`
  is the function that does it.

`join_path` and `complete_message_path` in `mcplink.transport.sse` join URL
paths the way the SSE server builds its message endpoint.

## What is not included

mcplink does not contain a complete MCP server: there is no dispatcher that
turns incoming JSON-RPC messages into `Registry` calls, handles
`initialize`, subscriptions and cancellation, sends list-changed
notifications or makes requests to the client. You write the receiver
yourself, as in the example above. There is also no streamable HTTP
transport, and no MCP client beyond the raw client transports.