# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
User-visible notifications.

Mutation failures and status poll failures are the only errors shown
to the user (as transient messages). Everything else the engine runs
into is logged only.
"""

import attr

from zope.interface import (
    Interface,
    implementer,
)


class IReviewNotifier(Interface):
    """
    An internal API for the engine to report errors that should reach
    the user.
    """

    def mutation_failed(node_id, message):
        """
        An edit of a node (or a bulk edit) failed and was rolled back.

        :param str node_id: the node concerned (None for bulk edits)

        :param str message: a message suitable for an end-user to read
        """

    def status_failed(message):
        """
        The status of the migration could not be fetched.

        :param str message: a message suitable for an end-user to read
        """


@attr.s
class PublicError(object):
    """
    Description of an error that is permissable to show to a UI.

    The langauge used in the error should be plain and simple,
    avoiding jargon and technical details (except where immediately
    relevant).
    """
    timestamp = attr.ib(validator=attr.validators.instance_of((float, int)))
    summary = attr.ib(validator=attr.validators.instance_of(str))
    node_id = attr.ib(default=None)

    def to_json(self):
        """
        :returns: a dict suitable for serializing to JSON
        """
        return {
            "timestamp": self.timestamp,
            "summary": self.summary,
            "node": self.node_id,
        }

    def __str__(self):
        return self.summary


@implementer(IReviewNotifier)
@attr.s
class RecentErrors(object):
    """
    Keeps the most recent user-visible errors, newest first, and hands
    each new one to the listeners.
    """

    _clock = attr.ib()

    # maximum number of recent errors to retain
    max_errors = attr.ib(default=30)

    errors = attr.ib(default=attr.Factory(list))
    _listeners = attr.ib(default=attr.Factory(list))

    def add_listener(self, listener):
        """
        :param listener: a callable taking a ``PublicError``
        """
        self._listeners.append(listener)

    def mutation_failed(self, node_id, message):
        """
        IReviewNotifier API
        """
        self._add(PublicError(self._clock.seconds(), message, node_id))

    def status_failed(self, message):
        """
        IReviewNotifier API
        """
        self._add(PublicError(self._clock.seconds(), message))

    def _add(self, err):
        self.errors.insert(0, err)
        self.errors = self.errors[:self.max_errors]
        for listener in self._listeners:
            listener(err)
