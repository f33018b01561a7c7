"""
Tests del sync incremental.
"""
