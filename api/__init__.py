"""
api — FastAPI routes, middleware and the response envelope.
"""
