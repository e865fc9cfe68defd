"""
Knowledge base package: CLI, MCP server, output formatters and agent tool handlers.
"""
