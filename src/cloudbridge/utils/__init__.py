"""Signing, transport, normalization, caching and credential helpers."""
