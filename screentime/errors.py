from __future__ import annotations


class ScreenTimeError(Exception):
    """Base class for errors raised by the screen-time core."""


class CredentialRejected(ScreenTimeError):
    """The server answered 401: the device credential is no longer valid."""


class LedgerUnavailable(ScreenTimeError):
    """A transient network failure while talking to the server."""
