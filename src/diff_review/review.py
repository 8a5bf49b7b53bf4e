# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
A review session: everything the user works with while reviewing
one migration, wired together.
"""

import attr

from eliot import (
    start_action,
)
from eliot.twisted import (
    inline_callbacks,
)
from twisted.internet.defer import (
    returnValue,
)

from .common import (
    PhaseLockedError,
)
from .config import (
    EngineConfig,
)
from .model import (
    PHASE_TRAVERSAL_REVIEW,
    validate_phase,
)
from .mutation import (
    MutationManager,
)
from .notify import (
    RecentErrors,
)
from .polling import (
    MigrationObserver,
)
from .selection import (
    SelectionStore,
    clear,
)
from .status import (
    resolve,
)
from .window import (
    ListWindow,
    TreeWindow,
)


def _why_locked(observer):
    if observer.is_running:
        return u"the migration is still running"
    return u"the migration status is not known yet"


@attr.s
class ReviewSession(object):
    """
    :ivar client: a ``ReviewClient`` for the migration under review

    :ivar clock: an ``IReactorTime`` provider

    :ivar EngineConfig config: tunables

    :ivar str phase: the current migration phase
    """
    client = attr.ib()
    clock = attr.ib()
    config = attr.ib(default=attr.Factory(EngineConfig))
    phase = attr.ib(default=PHASE_TRAVERSAL_REVIEW, validator=lambda i, a, v: validate_phase(v))
    notifier = attr.ib(default=None)

    def __attrs_post_init__(self):
        if self.notifier is None:
            self.notifier = RecentErrors(self.clock, max_errors=self.config.max_errors)
        self.selection = SelectionStore()
        self.tree = TreeWindow(
            self.client,
            self.clock,
            selection=self.selection,
            page_size=self.config.page_size,
        )
        self.list = ListWindow(
            self.client,
            self.clock,
            selection=self.selection,
            page_size=self.config.page_size,
            phase=self.phase,
            search_debounce=self.config.search_debounce,
        )
        self.tree_edits = self._edits_for(self.tree)
        self.list_edits = self._edits_for(self.list)
        self.observer = MigrationObserver(
            self.client,
            self.clock,
            self.notifier,
            status_interval=self.config.status_interval,
            metrics_interval=self.config.metrics_interval,
            log_interval=self.config.log_interval,
            max_log_entries=self.config.max_log_entries,
        )

    def _edits_for(self, window):
        return MutationManager(
            self.client,
            window,
            self.notifier,
            self.clock,
            selection=self.selection,
            phase=self.phase,
            trust_optimistic_state=self.config.trusts_optimistic_state,
            task_poll_interval=self.config.task_poll_interval,
        )

    def start(self):
        """
        Start observing the migration and show the root folder.
        """
        self.observer.startService()
        return self.tree.open(u"/")

    def stop(self):
        """
        Stop every poll, debounced search and task poll.
        """
        for edits in (self.tree_edits, self.list_edits):
            edits.stop()
        self.tree.close()
        self.list.close()
        return self.observer.stopService()

    def resolve(self, node):
        """
        :returns ResolvedStatus: how ``node`` is displayed right now
        """
        marked = (
            node.id in self.tree_edits.marked_for_retry or
            node.id in self.list_edits.marked_for_retry
        )
        return resolve(node, self.phase, marked)

    def can_start_copy(self):
        """
        Copying may start once traversal has been reviewed, the migration
        is known not to be running and there is something left to copy.
        """
        stats = self.list.stats or self.tree.stats
        return (
            self.observer.allows_destructive_actions and
            self.phase == PHASE_TRAVERSAL_REVIEW and
            stats is not None and
            stats.pending > 0
        )

    def _set_phase(self, phase):
        self.phase = phase
        self.tree_edits.phase = phase
        self.list_edits.phase = phase
        self.selection.update(clear)
        if self.list.locator is None:
            self.list.phase = phase
        else:
            self.list.set_phase(phase)

    @inline_callbacks
    def advance_phase(self, target):
        """
        Ask the backend to move the migration to ``target``. Once it
        agreed the selection is dropped.

        :raises PhaseLockedError: while the migration is running (or its
            status is not known yet)
        """
        validate_phase(target)
        with start_action(action_type=u"review:advance-phase", current=self.phase, target=target):
            if not self.observer.allows_destructive_actions:
                raise PhaseLockedError(u"advance", self.phase, _why_locked(self.observer))
            result = yield self.client.change_phase(target)
            self._set_phase(target)
        returnValue(result)
