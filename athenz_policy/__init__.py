"""Fetch, verify and cache signed Athenz domain policies and check role access against them."""

__version__ = "0.1.0"
__all__ = ["daemon", "errors", "fetcher", "options", "signed_policy"]