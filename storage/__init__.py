"""
storage — persisted key/value state shared by every request.

Provides:
  • A versioned key/value contract (``KeyValueStore``) with compare-and-set
  • In-memory and SQLAlchemy implementations
  • Global and per-user option stores
  • The per-owner credential store with Fernet encryption at rest
"""
