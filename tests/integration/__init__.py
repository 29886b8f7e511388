"""
Integration Tests

Run the real MCP SDK client against an in-process FastMCP streamable-http
server behind a bearer-token gate: connect, tool discovery, tool calls,
401 handling and teardown.
"""
