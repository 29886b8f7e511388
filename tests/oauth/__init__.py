"""
OAuth Tests

Covers the OAuth 2.0 authorization-code (PKCE) flow used to reach
downstream MCP tool servers.

Test Categories:
- Session: credential storage, code exchange, refresh timer
- Callback: redirect capture and single-waiter semantics
- Transport: missing/rejected tokens surfacing as UnauthorizedError
"""
