"""oauth/ -- OAuth 2.0 authorization server and MCP resource-server guard.

helpers.py defines the OAuthHelpers interface the web layer consumes;
provider.py is the SQLAlchemy-backed implementation (clients, codes, tokens,
PKCE); mcp_auth.py is the bearer-token gate in front of /mcp.

Layer rule: oauth/ may import from core/ and auth/. It does NOT import from
api/, web/, or toolserver/.
"""
