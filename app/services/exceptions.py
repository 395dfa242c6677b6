"""Exceptions shared by the fetch proxy and its callers."""


class ProxyError(Exception):
    """A proxied request could not be completed."""
