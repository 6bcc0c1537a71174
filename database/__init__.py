"""
database — SQLAlchemy models and async engine setup.
"""
