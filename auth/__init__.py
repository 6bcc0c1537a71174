"""
auth — host-side caller identity and permissions.

Provides:
  • Signed caller tokens (user id + capabilities)
  • The ``PermissionCheck`` interface and a capability-based default
  • ``get_caller`` / ``require`` FastAPI dependencies
"""
