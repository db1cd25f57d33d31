"""
toolserver/server.py -- The epicflare MCP server (FastMCP, streamable HTTP).

Tools:
  do_math  -- one arithmetic operation over two numbers.
  whoami   -- the identity attached to the bearer token that made the call.

The server runs stateless (no MCP session ids): every POST /mcp is
self-contained, which is what lets the bearer gate authenticate each request
independently.

mcp_app is mounted behind McpAuthMiddleware by api/main.py. FastMCP only
runs its session manager from its own lifespan, which a wrapped app never
gets, so api/main.py enters mcp.session_manager.run() inside the FastAPI
lifespan instead.

Host header checks are done by TrustedHostMiddleware on the outer app, so
the SDK's own DNS rebinding check is disabled here; left on, it would reject
every Host other than localhost.
"""

from __future__ import annotations

import math
from typing import Literal

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from mcp.types import ToolAnnotations

from oauth.mcp_auth import MCP_RESOURCE_PATH, McpContext

SERVER_NAME = "epicflare-mcp"

INSTRUCTIONS = """
Quick start
- Use 'do_math' any time you need arithmetic. Prefer calling the tool over doing mental math.
- Use 'whoami' to see which account authorized this connection.

How to chain tools safely
- If you need to verify, re-run 'do_math' with the same arguments (idempotent) or validate with an inverse operation.
""".strip()

MathOperator = Literal["+", "-", "*", "/"]

_OPERATIONS = {
    "+": lambda left, right: left + right,
    "-": lambda left, right: left - right,
    "*": lambda left, right: left * right,
    "/": lambda left, right: left / right,
}

READ_ONLY_LOCAL_TOOL = ToolAnnotations(
    readOnlyHint=True,
    destructiveHint=False,
    idempotentHint=True,
    openWorldHint=False,
)


# ---------------------------------------------------------------------------
# Tool logic (plain functions, callable without an MCP session)
# ---------------------------------------------------------------------------


def format_number(value: float, precision: int) -> str:
    """Render value for markdown: integers as-is, others rounded without trailing zeros."""
    if float(value).is_integer():
        return str(int(value))
    rounded = f"{value:.{precision}f}"
    return rounded.rstrip("0").rstrip(".") if "." in rounded else rounded


def compute(left: float, operator: str, right: float, precision: int = 6) -> dict:
    """Evaluate left <operator> right.

    Raises ValueError for unknown operators, non-finite operands, a precision
    outside 0-15, and division by zero. FastMCP reports a raised error as a
    failed tool call.
    """
    if operator not in _OPERATIONS:
        raise ValueError(f'Unsupported operator "{operator}". Valid values: "+", "-", "*", "/".')
    if not (math.isfinite(left) and math.isfinite(right)):
        raise ValueError("Operands must be finite numbers.")
    if not 0 <= precision <= 15:
        raise ValueError("precision must be between 0 and 15.")
    if operator == "/" and right == 0:
        raise ValueError(
            f'Division by zero. Inputs: left={format_number(left, precision)}, operator="/", right=0. '
            "Choose a non-zero right operand."
        )
    result = _OPERATIONS[operator](left, right)
    expression = f"{format_number(left, precision)} {operator} {format_number(right, precision)}"
    return {
        "left": left,
        "operator": operator,
        "right": right,
        "expression": expression,
        "result": result,
        "precisionUsed": precision,
        "markdown": f"## Result\n\n`{expression}` = **{format_number(result, precision)}**",
    }


def describe_identity(context: McpContext | None) -> dict:
    """The caller identity a tool may show. Never includes tokens."""
    if context is None or context.user is None:
        return {"authenticated": False, "baseUrl": context.base_url if context else None}
    return {
        "authenticated": True,
        "baseUrl": context.base_url,
        "userId": context.user.get("userId"),
        "email": context.user.get("email"),
        "displayName": context.user.get("displayName"),
    }


def _context_from(ctx: Context) -> McpContext | None:
    request = ctx.request_context.request
    if request is None:
        return None
    return getattr(request.state, "mcp_context", None)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    SERVER_NAME,
    instructions=INSTRUCTIONS,
    stateless_http=True,
    streamable_http_path=MCP_RESOURCE_PATH,
    transport_security=TransportSecuritySettings(enable_dns_rebinding_protection=False),
)


@mcp.tool(annotations=READ_ONLY_LOCAL_TOOL)
async def do_math(left: float, operator: MathOperator, right: float, precision: int = 6) -> dict:
    """Compute a single arithmetic operation over two numbers.

    Behavior:
    - Division by zero is rejected.
    - precision (0-15, default 6) only affects the markdown rendering, never
      the numeric result.

    Examples:
    - "Add 8 and 4" -> { left: 8, operator: "+", right: 4 }
    - "Divide 1 by 3 with 3 decimals" -> { left: 1, operator: "/", right: 3, precision: 3 }
    """
    return compute(left, operator, right, precision)


@mcp.tool(annotations=READ_ONLY_LOCAL_TOOL)
async def whoami(ctx: Context) -> dict:
    """Return the account that authorized this MCP connection."""
    return describe_identity(_context_from(ctx))


mcp_app = mcp.streamable_http_app()
