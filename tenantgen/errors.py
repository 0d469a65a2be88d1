from __future__ import annotations


class Unauthorized(Exception):
    """Bearer credential missing or not equal to the configured token."""


class ConfigurationFailure(RuntimeError):
    """
    Startup-time failure: unreadable token file, missing root certificate,
    absent database credentials or a failed session handshake.

    Raised out of the application lifespan so the process never starts
    serving. Never translated into an HTTP response.
    """


class UpstreamFailure(RuntimeError):
    """Database, query or row-decoding failure while serving a request."""
