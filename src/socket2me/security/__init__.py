"""Security module: controls which local endpoints the tunnel may reach."""

from socket2me.security.allowlist import PathAllowlist, PathCheckResult, create_path_allowlist

__all__ = ["PathAllowlist", "PathCheckResult", "create_path_allowlist"]
