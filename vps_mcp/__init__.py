"""VPS MCP: pooled SSH connections and template-driven deployments for remote hosts."""

__version__ = "0.1.0"
