# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Resolve the raw status fields of a ``DiffNode`` into exactly one
display category for the current migration phase.

The traversal family (``traversal``, ``traversal-review``) is driven by
the per-side traversal statuses; the copy family (``copy``,
``copy-review``, ``complete``) by the source side's copy status. Each
family has a fixed precedence order and a closed set of categories it
can produce.
"""

import attr

from .model import (
    REVIEW_PHASES,
    TRAVERSAL_FAILED,
    TRAVERSAL_PENDING,
    COPY_FAILED,
    COPY_PENDING,
    EXCLUDED_COPY_STATUSES,
    EXCLUDE,
    UNEXCLUDE,
    MARK_RETRY,
    UNMARK_RETRY,
    is_copy_phase,
)


FAILED = u"failed"
PENDING_RETRY = u"pending-retry"
EXCLUDED = u"excluded"
EXISTS_ON_BOTH = u"exists-on-both"
EXISTS_DST_ONLY = u"exists-dst-only"
PENDING = u"pending"

CATEGORIES = frozenset([
    FAILED,
    PENDING_RETRY,
    EXCLUDED,
    EXISTS_ON_BOTH,
    EXISTS_DST_ONLY,
    PENDING,
])

# the copy family never produces PENDING: a pending copy status there
# means "marked for another copy attempt"
TRAVERSAL_CATEGORIES = CATEGORIES
COPY_CATEGORIES = CATEGORIES - frozenset([PENDING])

_ICONS = {
    FAILED: u"alert-circle",
    PENDING_RETRY: u"rotate-cw",
    EXCLUDED: u"x",
    PENDING: u"clock",
    EXISTS_ON_BOTH: u"check",
    EXISTS_DST_ONLY: u"check-dst",
}

LEGEND = [
    (PENDING, _ICONS[PENDING], u"Pending"),
    (EXCLUDED, _ICONS[EXCLUDED], u"Excluded"),
    (FAILED, _ICONS[FAILED], u"Failed"),
    (PENDING_RETRY, _ICONS[PENDING_RETRY], u"Marked for retry"),
    (EXISTS_ON_BOTH, _ICONS[EXISTS_ON_BOTH], u"Exists on both"),
    (EXISTS_DST_ONLY, _ICONS[EXISTS_DST_ONLY], u"Exists on destination only"),
]

# what a click does, per family; categories absent here are read-only
_TRAVERSAL_ACTIONS = {
    FAILED: MARK_RETRY,
    PENDING_RETRY: UNMARK_RETRY,
    EXCLUDED: UNEXCLUDE,
    PENDING: EXCLUDE,
}
_COPY_ACTIONS = {
    FAILED: MARK_RETRY,
    PENDING_RETRY: UNMARK_RETRY,
}


@attr.s(frozen=True)
class ResolvedStatus(object):
    """
    The outcome of resolving one node in one phase.

    :ivar str category: one of ``CATEGORIES``

    :ivar bool interactive: whether clicking the node means anything

    :ivar str action: the mutation kind a click triggers (None when not
        interactive)

    :ivar str icon: name of the icon to render
    """
    category = attr.ib(validator=attr.validators.in_(CATEGORIES))
    interactive = attr.ib(validator=attr.validators.instance_of(bool))
    action = attr.ib()
    icon = attr.ib()

    @property
    def label(self):
        for category, _, label in LEGEND:
            if category == self.category:
                return label


def _traversal_category(node, marked_for_retry):
    statuses = node.traversal_statuses()
    if TRAVERSAL_FAILED in statuses:
        return FAILED
    if node.effective_copy_status in EXCLUDED_COPY_STATUSES:
        return EXCLUDED
    if TRAVERSAL_PENDING in statuses:
        return PENDING_RETRY
    if marked_for_retry:
        return PENDING_RETRY
    if node.is_destination_only:
        return EXISTS_DST_ONLY
    if node.exists_on_both:
        return EXISTS_ON_BOTH
    return PENDING


def _copy_category(node):
    # destination-only nodes have nothing to copy
    copy_status = None if node.is_destination_only else node.effective_copy_status
    if copy_status == COPY_FAILED:
        return FAILED
    if copy_status == COPY_PENDING:
        return PENDING_RETRY
    if copy_status in EXCLUDED_COPY_STATUSES:
        return EXCLUDED
    if node.is_destination_only:
        return EXISTS_DST_ONLY
    return EXISTS_ON_BOTH


def resolve(node, phase, marked_for_retry=False):
    """
    :param DiffNode node: the node to classify

    :param str phase: the current migration phase

    :param bool marked_for_retry: the user has asked for this node to
        be discovered again (but the backend has not yet reported it as
        pending)

    :returns ResolvedStatus: the single category and interaction for
        ``node`` during ``phase``
    """
    if is_copy_phase(phase):
        category = _copy_category(node)
        actions = _COPY_ACTIONS
    else:
        category = _traversal_category(node, marked_for_retry)
        actions = _TRAVERSAL_ACTIONS

    action = actions.get(category)
    interactive = (
        phase in REVIEW_PHASES and
        action is not None and
        not node.is_locked
    )
    return ResolvedStatus(
        category=category,
        interactive=interactive,
        action=action if interactive else None,
        icon=_ICONS[category],
    )
