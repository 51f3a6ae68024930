"""Integration tests: real HTTP traffic against a local target server."""
