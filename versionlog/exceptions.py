"""Errors raised by the version log."""

import enum


class VersionLogError(Exception):
    """Base class for version log failures."""


class WriteError(VersionLogError):
    """A snapshot could not be appended to a log table.

    Raised from inside the flush or statement that triggered the snapshot, so
    the enclosing transaction is rolled back with it.
    """


class ResolutionError(VersionLogError):
    """The canonical row needed to complete a snapshot could not be read."""


class RewriteError(VersionLogError):
    """A read against a versioned entity could not be rewritten safely."""


class RewriteSkipped(str, enum.Enum):
    """Reasons a read was deliberately left untouched. Never raised."""

    NO_AS_OF = "no_as_of"
    UNSCOPED = "unscoped"
    NOT_VERSIONED = "not_versioned"
    ALREADY_REWRITTEN = "already_rewritten"
    PROVIDER_ERROR = "provider_error"
