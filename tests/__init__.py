"""
LLM Gateway Test Suite

Structure:
- unit/: config, user loading, framing, engine, tool manager, gateway HTTP surface, client
- oauth/: OAuth session, callback rendezvous, authenticated transport
"""
