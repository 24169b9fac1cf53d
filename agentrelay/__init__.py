"""
agentrelay - agent session and tool-orchestration engine.

Runs coding-agent backends, normalizes their output into one canonical
event stream and drives the tool-calling loop with sandboxed built-in tools
and external tool servers.
"""
__version__ = "0.1.0"
