"""Project Nexus MCP proxy: GitHub, GitLab and Azure DevOps behind one MCP server."""

__version__ = "1.0.0"
