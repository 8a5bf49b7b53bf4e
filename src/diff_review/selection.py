# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Hierarchical selection.

The user selects nodes explicitly; every loaded node below an
explicitly selected folder is selected by inheritance. Inherited
selection is always computed from the explicit set and the
accumulated path-by-id map, never stored.

``SelectionState`` is an immutable value. The transitions in this
module are pure functions ``(state, ...) -> state``; a
``SelectionStore`` holds the current state and applies them.
"""

import attr

from eliot import (
    Message,
)

from .common import (
    MalformedNodeError,
)


def normalize_path(path):
    """
    :returns str: ``path`` with exactly one leading ``/`` and no
        trailing ``/`` (except for the root itself)
    """
    if not path.startswith(u"/"):
        path = u"/" + path
    if len(path) > 1:
        path = path.rstrip(u"/") or u"/"
    return path


def is_descendant(candidate_path, ancestor_path):
    """
    Path-segment prefix comparison: ``/Foo/Bar`` descends from ``/Foo``
    but ``/FooBar`` does not, and no path descends from itself.
    """
    candidate = normalize_path(candidate_path)
    ancestor = normalize_path(ancestor_path)
    if candidate == ancestor:
        return False
    if not ancestor.endswith(u"/"):
        ancestor = ancestor + u"/"
    return candidate.startswith(ancestor)


def _descends_from_any(path, ancestor_paths):
    return any(is_descendant(path, ancestor) for ancestor in ancestor_paths)


def compute_inherited(explicit_ids, visible_nodes, path_by_id):
    """
    :param explicit_ids: ids the user selected directly

    :param visible_nodes: the ``DiffNode`` instances currently loaded

    :param dict path_by_id: location path of every node seen so far
        (across all pages, not just the visible ones)

    :returns frozenset: ids of visible nodes that are not explicitly
        selected but sit below an explicitly selected path
    """
    ancestors = [
        path_by_id[node_id]
        for node_id in explicit_ids
        if node_id in path_by_id
    ]
    if not ancestors:
        return frozenset()
    return frozenset(
        node.id
        for node in visible_nodes
        if node.id not in explicit_ids and
        _descends_from_any(path_by_id.get(node.id, node.location_path), ancestors)
    )


def normalize(explicit_ids, path_by_id):
    """
    Remove every id whose path descends from another selected path, so
    a bulk call never names both a folder and something inside it.
    Ids with an unknown path are kept as they are.

    :returns frozenset: the minimal, ancestors-only selection
    """
    paths = [
        path_by_id[node_id]
        for node_id in explicit_ids
        if node_id in path_by_id
    ]
    return frozenset(
        node_id
        for node_id in explicit_ids
        if node_id not in path_by_id or
        not _descends_from_any(path_by_id[node_id], paths)
    )


def default_selected(node):
    """
    Items that exist only on the source are checked when a folder is
    first shown.
    """
    return node.is_source_only


@attr.s(frozen=True)
class SelectionState(object):
    """
    :ivar frozenset explicit: ids the user selected directly

    :ivar dict paths: location path by id of every node seen during the
        session; never mutated, transitions build a new dict

    :ivar dict backend_ids: the backend ids by id of every node seen, so
        that nodes selected on another page can still be edited

    :ivar frozenset opted_out: ids the user deselected, which default
        selection will not bring back

    :ivar anchor: the id last toggled, the start of a range selection
    """
    explicit = attr.ib(default=frozenset(), converter=frozenset)
    paths = attr.ib(default=attr.Factory(dict))
    backend_ids = attr.ib(default=attr.Factory(dict))
    opted_out = attr.ib(default=frozenset(), converter=frozenset)
    anchor = attr.ib(default=None)

    def is_inherited(self, node_id):
        if node_id in self.explicit or node_id not in self.paths:
            return False
        ancestors = [
            self.paths[other]
            for other in self.explicit
            if other in self.paths
        ]
        return _descends_from_any(self.paths[node_id], ancestors)

    def is_selected(self, node_id):
        return node_id in self.explicit or self.is_inherited(node_id)

    def inherited(self, visible_nodes):
        return compute_inherited(self.explicit, visible_nodes, self.paths)

    def normalized(self):
        return normalize(self.explicit, self.paths)


def known_backend_ids(node):
    """
    :returns tuple: the backend ids of ``node``, empty when it has none
    """
    try:
        return tuple(node.backend_ids())
    except MalformedNodeError:
        return ()


def remember(state, nodes):
    """
    Accumulate the paths and backend ids of newly loaded nodes.
    """
    new_paths = {}
    new_ids = {}
    for node in nodes:
        if state.paths.get(node.id) != node.location_path:
            new_paths[node.id] = node.location_path
        ids = known_backend_ids(node)
        if state.backend_ids.get(node.id, ()) != ids:
            new_ids[node.id] = ids
    if not new_paths and not new_ids:
        return state
    paths = dict(state.paths)
    paths.update(new_paths)
    backend_ids = dict(state.backend_ids)
    backend_ids.update(new_ids)
    return attr.evolve(state, paths=paths, backend_ids=backend_ids)



def select(state, node_id):
    if node_id in state.explicit or state.is_inherited(node_id):
        return state
    return attr.evolve(
        state,
        explicit=state.explicit | {node_id},
        opted_out=state.opted_out - {node_id},
        anchor=node_id,
    )


def deselect(state, node_id):
    if node_id not in state.explicit:
        return state
    return attr.evolve(
        state,
        explicit=state.explicit - {node_id},
        opted_out=state.opted_out | {node_id},
        anchor=node_id,
    )


def toggle(state, node_id):
    """
    Flip the explicit selection of ``node_id``. Inherited nodes are not
    independently toggleable, so toggling one changes nothing.
    """
    if state.is_inherited(node_id):
        Message.log(
            message_type=u"selection:toggle-inherited",
            node_id=node_id,
        )
        return state
    if node_id in state.explicit:
        return deselect(state, node_id)
    return select(state, node_id)


def select_range(state, ordered_ids, node_id):
    """
    Select every id in ``ordered_ids`` between the anchor and
    ``node_id`` (inclusive). Without a visible anchor this is a plain
    ``select``.
    """
    ordered_ids = list(ordered_ids)
    if state.anchor not in ordered_ids or node_id not in ordered_ids:
        return select(state, node_id)
    start = ordered_ids.index(state.anchor)
    end = ordered_ids.index(node_id)
    if start > end:
        start, end = end, start
    for other in ordered_ids[start:end + 1]:
        state = select(state, other)
    return attr.evolve(state, anchor=node_id)


def toggle_page(state, page_ids):
    """
    Select every toggleable id on the page, or deselect them all if they
    are all selected already.
    """
    toggleable = [
        node_id for node_id in page_ids
        if not state.is_inherited(node_id)
    ]
    if toggleable and all(node_id in state.explicit for node_id in toggleable):
        for node_id in toggleable:
            state = deselect(state, node_id)
    else:
        for node_id in toggleable:
            state = select(state, node_id)
    return state


def with_defaults(state, nodes):
    """
    Remember ``nodes`` and pre-select the ones ``default_selected``
    picks, unless the user deselected them earlier in the session.
    """
    state = remember(state, nodes)
    defaults = frozenset(
        node.id
        for node in nodes
        if default_selected(node) and node.id not in state.opted_out
    )
    if defaults <= state.explicit:
        return state
    return attr.evolve(state, explicit=state.explicit | defaults)


def clear(state):
    """
    Drop the selection (but keep what was learned about nodes so far).
    """
    return SelectionState(paths=state.paths, backend_ids=state.backend_ids)


@attr.s
class SelectionStore(object):
    """
    Holds the current ``SelectionState``. Every change is a transition
    applied to the latest state, so changes scheduled in the same tick
    never lose each other's updates.
    """
    state = attr.ib(default=attr.Factory(SelectionState))
    _subscribers = attr.ib(default=attr.Factory(list), init=False)

    def update(self, transition, *args):
        """
        :param transition: a callable ``(state, *args) -> state``

        :returns SelectionState: the new state
        """
        old = self.state
        self.state = transition(old, *args)
        if self.state is not old:
            for callback in list(self._subscribers):
                callback(self.state)
        return self.state

    def subscribe(self, callback):
        """
        :param callback: called with the new state after every change
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback):
        self._subscribers.remove(callback)
