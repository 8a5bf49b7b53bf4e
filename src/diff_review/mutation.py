# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Optimistic edits of diff nodes.

Every edit is applied to the loaded nodes immediately and then sent to
the backend. Success commits the edit (and, unless configured to trust
the optimistic state, re-fetches the affected view); any failure puts
back the state the edit replaced.

A node present on both sides has one backend id per side. The source
side is always changed first; if the destination side then fails the
source side is changed back before the local state is rolled back.
"""

import attr

from eliot import (
    ActionType,
    Message,
    start_action,
    write_failure,
)
from eliot.twisted import (
    inline_callbacks,
)
from twisted.internet.defer import (
    returnValue,
)
from twisted.internet.task import (
    deferLater,
)
from twisted.python.failure import (
    Failure,
)
from zope.interface import (
    Interface,
    implementer,
)

from .common import (
    BackgroundTaskFailed,
    InconsistentNodeError,
    PhaseLockedError,
)
from .model import (
    COPY_EXCLUSION_EXPLICIT,
    COPY_EXCLUSION_INHERITED,
    COPY_FAILED,
    COPY_PENDING,
    EXCLUDE,
    MARK_RETRY,
    PHASE_TRAVERSAL_REVIEW,
    TRAVERSAL_FAILED,
    TRAVERSAL_PENDING,
    UNEXCLUDE,
    UNMARK_RETRY,
    allowed_mutations,
    is_copy_phase,
)
from .selection import (
    clear,
    compute_inherited,
)
from .util.eliotutil import (
    MUTATION_KIND,
    NODE_ID,
)


# outcomes of an edit
APPLIED = u"applied"
PHASE_LOCKED = u"phase-locked"
NOTHING_SELECTED = u"nothing-selected"

# background task statuses
TASK_RUNNING = u"running"
TASK_COMPLETED = u"completed"
TASK_FAILED = u"failed"

EDIT_NODE = ActionType(
    u"mutation:edit",
    [NODE_ID, MUTATION_KIND],
    [],
    u"An optimistic edit of one diff node.",
)

_REVERSE = {
    EXCLUDE: UNEXCLUDE,
    UNEXCLUDE: EXCLUDE,
    MARK_RETRY: UNMARK_RETRY,
    UNMARK_RETRY: MARK_RETRY,
}


def optimistic_state(node, kind, phase):
    """
    :returns DiffNode: what ``node`` is expected to look like once the
        backend has accepted an edit of ``kind`` during ``phase``
    """
    if kind == EXCLUDE:
        return node.with_copy_status(COPY_EXCLUSION_EXPLICIT)
    if kind == UNEXCLUDE:
        return node.with_copy_status(COPY_PENDING)
    if is_copy_phase(phase):
        if kind == MARK_RETRY:
            return node.with_copy_status(COPY_PENDING)
        return node.with_copy_status(COPY_FAILED)
    if kind == MARK_RETRY:
        return node.with_traversal_status(TRAVERSAL_PENDING, only_if=TRAVERSAL_FAILED)
    return node.with_traversal_status(TRAVERSAL_FAILED, only_if=TRAVERSAL_PENDING)


class IEdit(Interface):
    """
    One local change that can be undone.
    """

    def apply():
        """
        Change the local model, remembering what was replaced.
        """

    def commit():
        """
        The backend accepted the change.
        """

    def rollback():
        """
        Put back what ``apply`` replaced.
        """


@implementer(IEdit)
@attr.s
class NodeEdit(object):
    """
    Replace one node of an ``INodeModel`` by its optimistic state.

    :ivar snapshot: the node this edit replaced. When an older edit of
        the same node fails after this one was applied, this edit takes
        over the older snapshot.
    """
    model = attr.ib()
    new_node = attr.ib()
    kind = attr.ib()
    snapshot = attr.ib(default=None, init=False)
    state = attr.ib(default=u"new", init=False)

    @property
    def node_id(self):
        return self.new_node.id

    def apply(self):
        self.snapshot = self.model.get_node(self.node_id)
        self.model.replace_node(self.new_node)
        self.state = u"applied"

    def commit(self):
        self.state = u"committed"

    def rollback(self):
        if self.snapshot is not None:
            self.model.replace_node(self.snapshot)
        self.state = u"rolled-back"


@implementer(IEdit)
@attr.s
class BulkEdit(object):
    """
    Several ``NodeEdit`` that stand or fall together.
    """
    edits = attr.ib(default=attr.Factory(list))

    def apply(self):
        for edit in self.edits:
            edit.apply()

    def commit(self):
        for edit in self.edits:
            edit.commit()

    def rollback(self):
        for edit in reversed(self.edits):
            edit.rollback()


@attr.s
class MutationManager(object):
    """
    Applies edits to the nodes of ``model`` and the backend.

    :ivar client: a ``ReviewClient`` (or an object with the same API)

    :ivar model: an ``INodeModel`` provider holding the loaded nodes

    :ivar notifier: an ``IReviewNotifier`` provider for failures the
        user should see

    :ivar selection: the ``SelectionStore`` bulk edits operate on

    :ivar bool trust_optimistic_state: skip re-fetching after a
        successful edit
    """
    client = attr.ib()
    model = attr.ib()
    notifier = attr.ib()
    clock = attr.ib()
    selection = attr.ib(default=None)
    phase = attr.ib(default=PHASE_TRAVERSAL_REVIEW)
    trust_optimistic_state = attr.ib(default=False)
    task_poll_interval = attr.ib(default=1.0)

    # ids the user marked for another discovery attempt
    marked_for_retry = attr.ib(default=attr.Factory(set), init=False)
    # background tasks still being waited for
    active_tasks = attr.ib(default=attr.Factory(dict), init=False)

    _sequence = attr.ib(default=0, init=False)
    # node id -> [(sequence, NodeEdit)], oldest first; edits stay here
    # until they are resolved
    _pending = attr.ib(default=attr.Factory(dict), init=False)
    # node id -> sequence of the newest edit the backend accepted
    _committed = attr.ib(default=attr.Factory(dict), init=False)
    _stopped = attr.ib(default=False, init=False)

    def exclude(self, node):
        return self.mutate(node, EXCLUDE)

    def unexclude(self, node):
        return self.mutate(node, UNEXCLUDE)

    def mark_retry(self, node):
        return self.mutate(node, MARK_RETRY)

    def unmark_retry(self, node):
        return self.mutate(node, UNMARK_RETRY)

    def toggle(self, node, action):
        """
        Perform the click ``action`` resolved for ``node`` (see
        ``diff_review.status.resolve``). A missing action is a no-op.
        """
        return self.mutate(node, action)

    def stop(self):
        """
        Stop polling background tasks.
        """
        self._stopped = True

    def _calls(self, kind):
        """
        :returns: the client method making an edit of ``kind`` in the
            current phase
        """
        copy = is_copy_phase(self.phase)
        return {
            EXCLUDE: self.client.exclude_node,
            UNEXCLUDE: self.client.unexclude_node,
            MARK_RETRY: self.client.mark_retry_copy if copy else self.client.mark_retry_discovery,
            UNMARK_RETRY: self.client.unmark_retry_copy if copy else self.client.unmark_retry_discovery,
        }[kind]

    @inline_callbacks
    def _send(self, node, kind):
        """
        Make the edit on every side of ``node``, source first.

        :raises InconsistentNodeError: if a later side failed and
            changing the source side back failed as well
        """
        forward = self._calls(kind)
        reverse = self._calls(_REVERSE[kind])
        backend_ids = node.backend_ids()
        primary = backend_ids[0]
        yield forward(primary)
        for secondary in backend_ids[1:]:
            try:
                yield forward(secondary)
            except Exception as e:
                with start_action(
                        action_type=u"mutation:compensate",
                        node_id=primary,
                        kind=_REVERSE[kind],
                ):
                    try:
                        yield reverse(primary)
                    except Exception as compensation_error:
                        raise InconsistentNodeError(node.id, e, compensation_error)
                raise e

    def _begin(self, edit):
        self._sequence += 1
        edit.apply()
        self._pending.setdefault(edit.node_id, []).append((self._sequence, edit))
        return self._sequence

    def _resolve(self, sequence, edit):
        pending = self._pending.get(edit.node_id, [])
        pending[:] = [(seq, e) for (seq, e) in pending if seq != sequence]
        if not pending:
            self._pending.pop(edit.node_id, None)
        return pending

    def _succeeded(self, sequence, edit):
        self._resolve(sequence, edit)
        self._committed[edit.node_id] = max(
            sequence,
            self._committed.get(edit.node_id, 0),
        )
        edit.commit()

    def _failed(self, sequence, edit):
        """
        Undo ``edit``. If a newer edit of the same node is outstanding
        the newer local state stays and the newer edit inherits this
        edit's snapshot. If a newer edit was accepted already there is
        nothing to undo.
        """
        pending = self._resolve(sequence, edit)
        newer = [(seq, e) for (seq, e) in pending if seq > sequence]
        if newer:
            newer[0][1].snapshot = edit.snapshot
            edit.state = u"superseded"
        elif self._committed.get(edit.node_id, 0) > sequence:
            edit.state = u"superseded"
        else:
            edit.rollback()

    @inline_callbacks
    def mutate(self, node, kind):
        """
        Apply an edit of ``kind`` to ``node``.

        :raises MalformedNodeError: if ``node`` has no backend id (before
            anything is changed or sent)

        :returns Deferred: fires with ``APPLIED`` once the backend
            accepted the edit, or with ``PHASE_LOCKED`` when the edit is
            not permitted in the current phase (nothing changes). Fails
            with the cause (after rolling back) for anything else.
        """
        if kind is None:
            returnValue(PHASE_LOCKED)
        node.backend_ids()
        with EDIT_NODE(node_id=node.id, kind=kind):
            if kind in allowed_mutations(self.phase):
                outcome = yield self._edit(node, kind)
            else:
                Message.log(
                    message_type=u"mutation:phase-locked",
                    reason=str(PhaseLockedError(kind, self.phase)),
                )
                outcome = PHASE_LOCKED
        returnValue(outcome)

    @inline_callbacks
    def _edit(self, node, kind):
        current = self.model.get_node(node.id) or node
        edit = NodeEdit(self.model, optimistic_state(current, kind, self.phase), kind)
        sequence = self._begin(edit)
        self._mark(node.id, kind)
        try:
            yield self._send(current, kind)
        except PhaseLockedError as e:
            self._failed(sequence, edit)
            self._unmark(node.id, kind)
            Message.log(message_type=u"mutation:phase-locked", reason=str(e))
            returnValue(PHASE_LOCKED)
        except Exception as e:
            self._failed(sequence, edit)
            self._unmark(node.id, kind)
            self.notifier.mutation_failed(node.id, str(e))
            if isinstance(e, InconsistentNodeError):
                yield self._reconcile()
            raise

        self._succeeded(sequence, edit)
        yield self._reconcile()
        returnValue(APPLIED)

    def _mark(self, node_id, kind):
        if kind == MARK_RETRY:
            self.marked_for_retry.add(node_id)
        elif kind == UNMARK_RETRY:
            self.marked_for_retry.discard(node_id)

    def _unmark(self, node_id, kind):
        if kind == MARK_RETRY:
            self.marked_for_retry.discard(node_id)

    def _reconcile(self):
        # the last edit to resolve re-fetches
        if self.trust_optimistic_state or self._pending:
            return None
        return self.model.reload()

    def bulk_exclude(self):
        return self._bulk(EXCLUDE)

    def bulk_unexclude(self):
        return self._bulk(UNEXCLUDE)

    def _bulk_edit(self, kind, explicit, paths):
        """
        :returns BulkEdit: the optimistic change of every loaded node
            the selection covers
        """
        loaded = self.model.loaded_nodes()
        inherited = compute_inherited(explicit, loaded, paths)
        edits = []
        for node in loaded:
            if kind == UNEXCLUDE:
                if node.id in explicit or node.id in inherited:
                    edits.append(NodeEdit(self.model, node.with_copy_status(COPY_PENDING), kind))
            elif node.id in explicit:
                edits.append(NodeEdit(self.model, node.with_copy_status(COPY_EXCLUSION_EXPLICIT), kind))
            elif node.id in inherited:
                edits.append(NodeEdit(self.model, node.with_copy_status(COPY_EXCLUSION_INHERITED), kind))
        return BulkEdit(edits)

    def _bulk_backend_ids(self, state, selected):
        backend_ids = []
        for node_id in sorted(selected):
            node = self.model.get_node(node_id)
            if node is not None:
                ids = node.backend_ids()
            else:
                # selected on a page that is no longer loaded
                ids = state.backend_ids.get(node_id, ())
            if not ids:
                Message.log(message_type=u"mutation:unknown-node", node_id=node_id)
            for backend_id in ids:
                if backend_id not in backend_ids:
                    backend_ids.append(backend_id)
        return backend_ids

    @inline_callbacks
    def _bulk(self, kind):
        """
        Apply ``kind`` to the (normalized) selection.

        :returns Deferred: fires with ``APPLIED`` once the backend (and
            any background task it started) finished,
            ``NOTHING_SELECTED`` or ``PHASE_LOCKED``
        """
        with start_action(action_type=u"mutation:bulk", kind=kind) as action:
            if kind not in allowed_mutations(self.phase):
                Message.log(
                    message_type=u"mutation:phase-locked",
                    reason=str(PhaseLockedError(kind, self.phase)),
                )
                outcome = PHASE_LOCKED
            else:
                state = self.selection.state
                backend_ids = self._bulk_backend_ids(state, state.normalized())
                action.add_success_fields(count=len(backend_ids))
                if backend_ids:
                    outcome = yield self._bulk_send(kind, state, backend_ids)
                else:
                    outcome = NOTHING_SELECTED
        returnValue(outcome)

    @inline_callbacks
    def _bulk_send(self, kind, state, backend_ids):
        send = self.client.bulk_exclude if kind == EXCLUDE else self.client.bulk_unexclude
        edit = self._bulk_edit(kind, state.explicit, state.paths)
        edit.apply()
        try:
            result = yield send(backend_ids)
        except PhaseLockedError as e:
            edit.rollback()
            Message.log(message_type=u"mutation:phase-locked", reason=str(e))
            returnValue(PHASE_LOCKED)
        except Exception as e:
            edit.rollback()
            self.notifier.mutation_failed(None, str(e))
            raise

        self.selection.update(clear)
        task_id = None
        if isinstance(result, dict):
            task_id = result.get("taskId") or result.get("taskID")
        if task_id:
            try:
                yield self.wait_for_task(task_id)
            except Exception as e:
                edit.rollback()
                self.notifier.mutation_failed(None, str(e))
                raise

        edit.commit()
        yield self._reconcile()
        returnValue(APPLIED)

    @inline_callbacks
    def wait_for_task(self, task_id):
        """
        Poll the background tasks every ``task_poll_interval`` seconds
        until ``task_id`` is no longer running.

        :raises BackgroundTaskFailed: if the task failed
        """
        self.active_tasks[task_id] = TASK_RUNNING
        try:
            while not self._stopped:
                try:
                    tasks = yield self.client.background_tasks()
                except Exception:
                    write_failure(Failure())
                    tasks = []
                for task in tasks:
                    if task.get("id") != task_id:
                        continue
                    status = task.get("status")
                    self.active_tasks[task_id] = status
                    if status == TASK_COMPLETED:
                        returnValue(task)
                    if status == TASK_FAILED:
                        raise BackgroundTaskFailed(task_id, task.get("error"))
                yield deferLater(self.clock, self.task_poll_interval, lambda: None)
        finally:
            self.active_tasks.pop(task_id, None)
