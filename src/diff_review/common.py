# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Common functions and types used by other modules.
"""

import attr


class DiffReviewError(Exception):
    """
    Base class for errors raised by the review engine itself (as
    opposed to the HTTP client, see ``diff_review.client``).
    """


@attr.s(auto_exc=True)
class MalformedNodeError(DiffReviewError):
    """
    A node carries no backend identifier on either side, so no remote
    call can be addressed at it.
    """
    node_id = attr.ib()

    def __str__(self):
        return u"Node '{}' has no backend identifier on either side".format(
            self.node_id,
        )


@attr.s(auto_exc=True)
class PhaseLockedError(DiffReviewError):
    """
    A mutation is not permitted in the current migration phase. This is
    never retried.
    """
    kind = attr.ib()
    phase = attr.ib()
    reason = attr.ib(default=None)

    def __str__(self):
        return u"'{}' is not permitted {}{}".format(
            self.kind,
            u"during '{}'".format(self.phase) if self.phase else u"in this phase",
            u": {}".format(self.reason) if self.reason else u"",
        )


@attr.s(auto_exc=True)
class MutationRejectedError(DiffReviewError):
    """
    The backend answered a mutation with ``{"success": false}``.
    """
    backend_id = attr.ib()
    reason = attr.ib(default=None)
    error_code = attr.ib(default=None)

    def __str__(self):
        return u"Backend rejected the change for '{}': {}".format(
            self.backend_id,
            self.reason or u"unknown error",
        )


@attr.s(auto_exc=True)
class InconsistentNodeError(DiffReviewError):
    """
    The secondary side of a dual-sided edit failed and the compensating
    call reverting the primary side failed as well. The two sides of
    the node may now disagree on the server until the page is
    re-fetched.
    """
    node_id = attr.ib()
    cause = attr.ib()
    compensation_error = attr.ib()

    def __str__(self):
        return (
            u"Could not update '{}' ({}) and reverting the source side "
            u"also failed ({})".format(
                self.node_id,
                self.cause,
                self.compensation_error,
            )
        )


@attr.s(auto_exc=True)
class BackgroundTaskFailed(DiffReviewError):
    """
    A bulk operation was accepted as a background task which later
    reported ``failed``.
    """
    task_id = attr.ib()
    reason = attr.ib(default=None)

    def __str__(self):
        return u"Bulk operation failed: {}".format(self.reason or u"Unknown error")


@attr.s(auto_exc=True)
class ConfigurationError(DiffReviewError):
    """
    A configuration value is missing or invalid.
    """
    reason = attr.ib(validator=attr.validators.instance_of(str))

    def __str__(self):
        return self.reason


def sanitize_query(query):
    """
    Trim a free-text search query and remove control characters (which
    have no business in a path or a name).

    :param str query: text as typed by the user

    :returns str: the cleaned query
    """
    return u"".join(
        c for c in query.strip()
        if not (u"\x00" <= c <= u"\x1f" or c == u"\x7f")
    )
