"""
Mock OpenID provider for local development and integration tests.
"""
