# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Paginated windows onto the diff.

A ``TreeWindow`` shows the children of one folder and grows with "load
more". A ``ListWindow`` shows one page of a flat, filtered and sorted
search. Both hold the currently loaded ``DiffNode`` instances and
provide ``INodeModel`` so that edits can be applied to them.

Every request remembers the locator it was issued for and a serial
number. A response is discarded when the window has since moved to
another locator, when a newer replacing request was issued after it,
or (for re-fetches) when a local edit happened after it was issued.
"""

import attr

from eliot import (
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
from twisted.python.failure import (
    Failure,
)
from zope.interface import (
    Interface,
    implementer,
)

from .common import (
    sanitize_query,
)
from .model import (
    PHASE_TRAVERSAL_REVIEW,
    TRAVERSAL_NOT_ON_SRC,
    Pagination,
    ReviewStats,
    is_copy_phase,
    node_from_json,
)
from .selection import (
    normalize_path,
    remember,
    with_defaults,
)


class INodeModel(Interface):
    """
    The loaded nodes of a view, as seen by the mutation manager.
    """

    def get_node(node_id):
        """
        :returns DiffNode: the loaded node with this id (or None)
        """

    def replace_node(node):
        """
        Replace the loaded node having the same id as ``node``. Nodes
        that are not loaded are ignored.
        """

    def reload():
        """
        Re-fetch everything currently loaded from the backend.

        :returns Deferred: fires when the re-fetch is done (or was
            discarded)
        """

    def loaded_nodes():
        """
        :returns list: every loaded ``DiffNode``
        """


@attr.s(frozen=True)
class TreeLocator(object):
    """
    The children of one folder.
    """
    path = attr.ib(converter=normalize_path)


SEARCH_FIELDS = (u"path", u"name")
TYPE_FILTERS = (u"both", u"folder", u"file")
OPERATORS = (u"equals", u"gt", u"gte", u"lt", u"lte")
SORT_DIRECTIONS = (u"asc", u"desc")


def _operator(value):
    if value == u"eq":
        return u"equals"
    return value


def _non_negative(instance, attribute, value):
    if value is not None and value < 0:
        raise ValueError(
            "'{}' must not be negative (not {})".format(attribute.name, value)
        )


@attr.s(frozen=True)
class SearchQuery(object):
    """
    A flat, filtered and sorted view of the whole diff.

    :ivar str text: free text matched against ``search_field``

    :ivar int size: file size in bytes compared with ``size_operator``

    :ivar int depth: depth compared with ``depth_operator``

    :ivar str status_filter: a traversal status in the traversal
        family of phases, a copy status in the copy family
    """
    text = attr.ib(default=u"", converter=sanitize_query)
    search_field = attr.ib(default=u"path", validator=attr.validators.in_(SEARCH_FIELDS))
    type_filter = attr.ib(default=u"both", validator=attr.validators.in_(TYPE_FILTERS))
    size = attr.ib(default=None, validator=_non_negative)
    size_operator = attr.ib(
        default=u"equals",
        converter=_operator,
        validator=attr.validators.in_(OPERATORS),
    )
    depth = attr.ib(default=None, validator=_non_negative)
    depth_operator = attr.ib(
        default=u"equals",
        converter=_operator,
        validator=attr.validators.in_(OPERATORS),
    )
    status_filter = attr.ib(default=None)
    sort_field = attr.ib(default=u"path")
    sort_dir = attr.ib(default=u"asc", validator=attr.validators.in_(SORT_DIRECTIONS))

    def sorted_by(self, field):
        """
        Sorting by the current field again flips the direction; a new
        field starts ascending.
        """
        if field == self.sort_field:
            return attr.evolve(
                self,
                sort_dir=u"desc" if self.sort_dir == u"asc" else u"asc",
            )
        return attr.evolve(self, sort_field=field, sort_dir=u"asc")

    def params(self, phase):
        """
        :returns list: the (name, value) query parameters for the search
            endpoint during ``phase``
        """
        params = [
            (u"searchField", self.search_field),
            (u"typeFilter", self.type_filter),
            (u"sortDir", self.sort_dir),
        ]
        if self.sort_field:
            params.append((u"sortField", self.sort_field))
        if self.text:
            params.append((u"query", self.text))
        if self.depth is not None:
            params.append((u"depthFilter", self.depth))
            params.append((u"depthOperator", self.depth_operator))
        # sizes mean nothing for folders
        if self.size is not None and self.type_filter != u"folder":
            params.append((u"sizeFilter", self.size))
            params.append((u"sizeOperator", self.size_operator))
        if self.status_filter:
            if is_copy_phase(phase):
                params.append((u"copyStatusFilter", self.status_filter))
            else:
                params.append((u"traversalStatusFilter", self.status_filter))
        return params


@attr.s(frozen=True)
class WindowPage(object):
    """
    One page as delivered by the backend.
    """
    locator = attr.ib()
    items = attr.ib(converter=tuple)
    pagination = attr.ib(validator=attr.validators.instance_of(Pagination))
    stats = attr.ib(default=None)
    fetched = attr.ib(default=0)


def _parse_nodes(items):
    nodes = []
    for item in items:
        try:
            nodes.append(node_from_json(item))
        except (KeyError, TypeError, ValueError):
            Message.log(
                message_type=u"window:malformed-item",
                item=item,
            )
    return nodes


def _page_from_body(locator, body, offset, limit):
    if not isinstance(body, dict):
        raise ValueError("Unexpected page response: {!r}".format(body))
    items = body.get("items")
    if items is None:
        items = (body.get("folders") or []) + (body.get("files") or [])
    return WindowPage(
        locator=locator,
        items=_parse_nodes(items),
        pagination=Pagination.from_json(
            body.get("pagination"), offset, limit, len(items),
        ),
        stats=ReviewStats.from_json(body.get("stats")),
        fetched=len(items),
    )


def visible_in_tree(node):
    """
    The tree only shows what exists on the source.
    """
    return node.in_src and node.traversal_status != TRAVERSAL_NOT_ON_SRC


@attr.s
class _Window(object):
    """
    Shared state of the tree and list windows.

    :ivar client: a ``ReviewClient`` (or an object with the same API)

    :ivar clock: an ``IReactorTime`` provider

    :ivar SelectionStore selection: where loaded paths (and default
        selections) are recorded, or None

    :ivar error: the message of the last failed load (None after a
        successful one)
    """
    client = attr.ib()
    clock = attr.ib()
    selection = attr.ib(default=None)
    page_size = attr.ib(default=100)

    locator = attr.ib(default=None, init=False)
    nodes = attr.ib(default=attr.Factory(list), init=False)
    pagination = attr.ib(default=None, init=False)
    stats = attr.ib(default=None, init=False)
    error = attr.ib(default=None, init=False)
    loading = attr.ib(default=False, init=False)

    _serial = attr.ib(default=0, init=False)
    _replace_serial = attr.ib(default=0, init=False)
    _edit_generation = attr.ib(default=0, init=False)
    _fetched = attr.ib(default=0, init=False)
    _closed = attr.ib(default=False, init=False)

    def get_node(self, node_id):
        """
        INodeModel API
        """
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def replace_node(self, node):
        """
        INodeModel API
        """
        self._edit_generation += 1
        self.nodes = [
            node if existing.id == node.id else existing
            for existing in self.nodes
        ]

    def loaded_nodes(self):
        """
        INodeModel API
        """
        return list(self.nodes)

    def close(self):
        """
        Stop caring about anything in flight.
        """
        self._closed = True

    def _fetch(self, locator, offset, limit):
        raise NotImplementedError()

    def _accept(self, nodes):
        return nodes

    def _record_selection(self, nodes, remember_only):
        if self.selection is not None:
            self.selection.update(remember, nodes)

    @inline_callbacks
    def load(self, locator, offset, limit, append=False, refetch=False):
        """
        Fetch one page for ``locator``.

        :param bool append: add to the loaded nodes instead of replacing
            them

        :param bool refetch: this re-fetches what is already shown and
            must not overwrite edits made after it was issued

        :returns Deferred[WindowPage]: the page, or None if the response
            was discarded or the load failed
        """
        self._serial += 1
        serial = self._serial
        if not append:
            self._replace_serial = serial
        generation = self._edit_generation
        self.locator = locator
        self.loading = True

        page = None
        with start_action(
                action_type=u"window:load",
                locator=repr(locator),
                offset=offset,
                limit=limit,
                append=append,
        ):
            try:
                body = yield self._fetch(locator, offset, limit)
                if self._is_current(locator, serial, generation, refetch):
                    page = _page_from_body(locator, body, offset, limit)
                    self._apply(page, offset, append, refetch)
            except Exception:
                page = None
                if self._is_current(locator, serial, generation, refetch):
                    failure = Failure()
                    write_failure(failure)
                    self.error = failure.getErrorMessage() or failure.type.__name__
                    self.loading = False
        returnValue(page)

    def _is_current(self, locator, serial, generation, refetch):
        reason = None
        if self._closed:
            reason = u"closed"
        elif locator != self.locator:
            reason = u"locator-changed"
        elif serial < self._replace_serial:
            reason = u"superseded"
        elif refetch and generation != self._edit_generation:
            reason = u"edited-since"
        if reason is not None:
            Message.log(
                message_type=u"window:discard-response",
                reason=reason,
                serial=serial,
            )
            return False
        return True

    def _apply(self, page, offset, append, refetch=False):
        nodes = self._accept(page.items)
        if append:
            loaded = set(node.id for node in self.nodes)
            self.nodes = self.nodes + [
                node for node in nodes
                if node.id not in loaded
            ]
            self._fetched = offset + page.fetched
        else:
            self.nodes = list(nodes)
            self._fetched = offset + page.fetched
        self.pagination = page.pagination
        if page.stats is not None:
            self.stats = page.stats
        self.error = None
        self.loading = False
        self._record_selection(nodes, append or refetch)

    @property
    def has_more(self):
        return self.pagination is not None and self.pagination.has_more


@implementer(INodeModel)
@attr.s
class TreeWindow(_Window):
    """
    The children of one folder, loaded page by page ("load more").

    :ivar bool hide_destination_only: only show nodes that exist on the
        source
    """
    hide_destination_only = attr.ib(default=True)
    breadcrumbs = attr.ib(default=attr.Factory(list), init=False)

    @property
    def current_path(self):
        if self.locator is None:
            return None
        return self.locator.path

    def _fetch(self, locator, offset, limit):
        return self.client.diffs(locator.path, offset, limit)

    def _accept(self, nodes):
        if not self.hide_destination_only:
            return nodes
        return [node for node in nodes if visible_in_tree(node)]

    def _record_selection(self, nodes, remember_only):
        """
        Pre-select defaults when a folder is first shown; pages appended
        or fetched again are only remembered.
        """
        if self.selection is None:
            return
        if remember_only:
            self.selection.update(remember, nodes)
        else:
            self.selection.update(with_defaults, nodes)

    def open(self, path):
        """
        Show the children of ``path``, replacing whatever is loaded.
        """
        self.nodes = []
        self.pagination = None
        self._fetched = 0
        return self.load(TreeLocator(path), 0, self.page_size)

    def enter(self, node):
        """
        Descend into a folder.

        :raises ValueError: for files and destination-only folders,
            which cannot be explored
        """
        if not node.is_folder or node.is_destination_only:
            raise ValueError(
                "'{}' cannot be explored".format(node.location_path)
            )
        self.breadcrumbs.append((node.location_path, node.name))
        return self.open(node.location_path)

    def back(self):
        """
        Return to the parent of the current folder (the root when there
        is none).
        """
        if self.breadcrumbs:
            self.breadcrumbs.pop()
        return self.goto_breadcrumb(len(self.breadcrumbs) - 1)

    def goto_breadcrumb(self, index):
        """
        Show the folder at ``index`` in the breadcrumbs (the root for a
        negative index), forgetting the ones after it.
        """
        if index < 0:
            del self.breadcrumbs[:]
            return self.open(u"/")
        del self.breadcrumbs[index + 1:]
        return self.open(self.breadcrumbs[index][0])

    def load_more(self):
        """
        Append the next page of the current folder.

        :returns Deferred[WindowPage]: None if there is nothing more
        """
        if self.locator is None or not self.has_more:
            return None
        return self.load(self.locator, self._fetched, self.page_size, append=True)

    def reload(self):
        """
        INodeModel API
        """
        if self.locator is None:
            return None
        return self.load(
            self.locator,
            0,
            max(self._fetched, self.page_size),
            refetch=True,
        )


@implementer(INodeModel)
@attr.s
class ListWindow(_Window):
    """
    One page of a flat search over the whole diff.

    :ivar phase: the migration phase, which decides whether the status
        filter is about traversal or copy
    """
    phase = attr.ib(default=PHASE_TRAVERSAL_REVIEW)
    search_debounce = attr.ib(default=0.3)
    query = attr.ib(default=attr.Factory(SearchQuery), init=False)
    offset = attr.ib(default=0, init=False)
    _debounced = attr.ib(default=None, init=False)

    def _fetch(self, locator, offset, limit):
        query, phase = locator
        return self.client.search(query.params(phase), offset, limit)

    @property
    def _current_locator(self):
        return (self.query, self.phase)

    def _goto(self, offset):
        self.offset = offset
        return self.load(self._current_locator, offset, self.page_size)

    def search(self, query=None):
        """
        Show the first page for ``query`` (the current query when None).
        Every change of text, filters or sort order starts from the
        first page.
        """
        self._cancel_debounced()
        if query is not None:
            self.query = query
        return self._goto(0)

    def refine(self, **changes):
        """
        Change some attributes of the current query and search again.
        """
        return self.search(attr.evolve(self.query, **changes))

    def sort_by(self, field):
        return self.search(self.query.sorted_by(field))

    def search_debounced(self, text):
        """
        Search for ``text`` once no further text arrived for
        ``search_debounce`` seconds.
        """
        self._cancel_debounced()
        query = attr.evolve(self.query, text=text)
        self._debounced = self.clock.callLater(
            self.search_debounce,
            self._debounced_search,
            query,
        )
        return self._debounced

    def _debounced_search(self, query):
        self._debounced = None
        self.search(query)

    def _cancel_debounced(self):
        if self._debounced is not None and self._debounced.active():
            self._debounced.cancel()
        self._debounced = None

    def next_page(self):
        if not self.has_more:
            return None
        return self._goto(self.offset + self.page_size)

    def previous_page(self):
        if self.offset == 0:
            return None
        return self._goto(max(0, self.offset - self.page_size))

    def goto_page(self, index):
        """
        :param int index: zero-based page number
        """
        if index < 0 or (self.pagination is not None and index >= self.page_count):
            raise ValueError("No page {}".format(index))
        return self._goto(index * self.page_size)

    def set_page_size(self, page_size):
        if page_size <= 0:
            raise ValueError("Page size must be positive")
        self.page_size = page_size
        return self._goto(0)

    def set_phase(self, phase):
        """
        The status filter follows the phase, so a phase change starts a
        new search.
        """
        self.phase = phase
        return self._goto(0)

    @property
    def page_index(self):
        return self.offset // self.page_size

    @property
    def page_count(self):
        if self.pagination is None:
            return 0
        return max(1, -(-self.pagination.total // self.page_size))

    def reload(self):
        """
        INodeModel API
        """
        return self.load(
            self._current_locator,
            self.offset,
            self.page_size,
            refetch=True,
        )

    def close(self):
        self._cancel_debounced()
        super(ListWindow, self).close()
