"""
modules — pluggable Google service integrations.

Each service (Analytics, Search Console, …) is a subclass of Module.
ModuleRegistry owns the catalog and enforces dependency-consistent
activation on top of the authentication manager's scope checks.
"""
