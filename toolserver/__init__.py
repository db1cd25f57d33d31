"""
toolserver/ -- MCP tools served at /mcp.

Layer rule: may import from core/ and oauth/ (for McpContext). It never sees
bearer tokens; by the time a tool runs, oauth/mcp_auth.py has authenticated
the request and attached the caller's identity to request.state.
"""
