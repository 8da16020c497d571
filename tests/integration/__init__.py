"""
Integration tests for sandcrate.
"""
