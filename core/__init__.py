"""
core — composition root.
"""
