"""
config — application settings.
"""
