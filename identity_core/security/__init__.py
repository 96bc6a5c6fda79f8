"""Credential hashing, one-time codes, tokens and rate limiting."""
