"""
Stores del checkpoint de sync: archivo JSON (default) o Postgres.
"""
