# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
An in-memory fake of the migration service.

``MemoryReviewBackend`` provides the same API as ``ReviewClient`` (so
the engine can be tested without HTTP) and can be told to fail or to
hold on to particular calls. ``create_review_treq_client`` puts the
same fake behind a treq ``HTTPClient`` so that ``ReviewClient`` itself
(and the command line) can be exercised against it.
"""

import json

import attr

from twisted.internet.defer import (
    Deferred,
    fail,
    succeed,
)
from twisted.python.failure import (
    Failure,
)
from twisted.web import (
    http,
)
from twisted.web.iweb import (
    IBodyProducer,
)
from twisted.web.resource import (
    Resource,
)
from twisted.web.server import (
    NOT_DONE_YET,
)
from treq.client import (
    FileBodyProducer,
    HTTPClient,
)
from treq.testing import (
    RequestTraversalAgent,
)
from zope.interface import (
    implementer,
)

from ..client import (
    PHASE_LOCKED,
    ReviewApiError,
)
from ..common import (
    PhaseLockedError,
)
from ..model import (
    COPY_EXCLUSION_EXPLICIT,
    COPY_EXCLUSION_INHERITED,
    COPY_FAILED,
    COPY_PENDING,
    EXCLUDED_COPY_STATUSES,
    EXCLUDE,
    FOLDER,
    MARK_RETRY,
    PHASE_TRAVERSAL_REVIEW,
    TRAVERSAL_FAILED,
    TRAVERSAL_PENDING,
    UNEXCLUDE,
    UNMARK_RETRY,
    allowed_mutations,
    is_copy_phase,
)
from ..selection import (
    is_descendant,
    normalize_path,
)


# endpoint -> (kind, copy family?, side changes)
_NODE_ENDPOINTS = {
    u"exclude": (EXCLUDE, None, {"copy_status": COPY_EXCLUSION_EXPLICIT}),
    u"unexclude": (UNEXCLUDE, None, {"copy_status": COPY_PENDING}),
    u"retry-discovery": (MARK_RETRY, False, {"traversal_status": TRAVERSAL_PENDING}),
    u"unmark-retry-discovery": (UNMARK_RETRY, False, {"traversal_status": TRAVERSAL_FAILED}),
    u"retry-copy": (MARK_RETRY, True, {"copy_status": COPY_PENDING}),
    u"unmark-retry-copy": (UNMARK_RETRY, True, {"copy_status": COPY_FAILED}),
}

_METHOD_ENDPOINTS = {
    "exclude_node": u"exclude",
    "unexclude_node": u"unexclude",
    "mark_retry_discovery": u"retry-discovery",
    "unmark_retry_discovery": u"unmark-retry-discovery",
    "mark_retry_copy": u"retry-copy",
    "unmark_retry_copy": u"unmark-retry-copy",
}

_OPERATORS = {
    u"equals": lambda a, b: a == b,
    u"gt": lambda a, b: a > b,
    u"gte": lambda a, b: a >= b,
    u"lt": lambda a, b: a < b,
    u"lte": lambda a, b: a <= b,
}


def _parent(path):
    path = normalize_path(path)
    if path == u"/":
        return None
    return path.rsplit(u"/", 1)[0] or u"/"


def _depth(node):
    if node.depth is not None:
        return node.depth
    return len([part for part in node.location_path.split(u"/") if part])


@attr.s
class _HeldCall(object):
    name = attr.ib()
    args = attr.ib()
    deferred = attr.ib()
    effect = attr.ib()


@attr.s
class MemoryReviewBackend(object):
    """
    The state of one migration, kept in memory.

    :ivar list calls: (method name, args...) of every call made, in order

    :ivar dict status: what ``migration_status`` returns

    :ivar dict metrics: what ``queue_metrics`` returns

    :ivar dict logs_by_level: the log entries ``logs`` returns

    :ivar int task_threshold: bulk edits of at least this many ids are
        run as background tasks (never, if None)
    """
    migration_id = attr.ib(default=u"migration-1")
    phase = attr.ib(default=PHASE_TRAVERSAL_REVIEW)
    api_token = attr.ib(default=None)
    status = attr.ib(default=attr.Factory(lambda: {"status": u"awaiting-review"}))
    metrics = attr.ib(default=attr.Factory(lambda: {"success": True}))
    logs_by_level = attr.ib(default=attr.Factory(dict))
    task_threshold = attr.ib(default=None)

    calls = attr.ib(default=attr.Factory(list), init=False)
    held = attr.ib(default=attr.Factory(list), init=False)
    tasks = attr.ib(default=attr.Factory(dict), init=False)
    _nodes = attr.ib(default=attr.Factory(dict), init=False)
    _sides = attr.ib(default=attr.Factory(dict), init=False)
    _holding = attr.ib(default=attr.Factory(set), init=False)
    _failures = attr.ib(default=attr.Factory(list), init=False)
    _task_effects = attr.ib(default=attr.Factory(dict), init=False)

    # test controls

    def add_node(self, node):
        """
        :param DiffNode node: a node to serve (replacing any node with
            the same id)
        """
        self._nodes[node.id] = node
        for side_name in ("src", "dst"):
            side = getattr(node, side_name)
            if side is not None and side.id:
                self._sides[side.id] = (node.id, side_name)

    def node(self, node_id):
        """
        :returns DiffNode: the current state of a node
        """
        return self._nodes[node_id]

    def fail_next(self, name, exception, backend_id=None):
        """
        Make the next call of ``name`` (for ``backend_id``, when given)
        fail with ``exception`` without any effect.
        """
        self._failures.append((name, backend_id, exception))

    def hold(self, *names):
        """
        Calls of these methods return a Deferred which only fires once
        released.
        """
        self._holding.update(names)

    def stop_holding(self, *names):
        self._holding.difference_update(names)

    def release(self, name=None, index=0):
        """
        Let a held call happen (the oldest one, or the oldest one of
        ``name``).
        """
        candidates = [
            held for held in self.held
            if name is None or held.name == name
        ]
        held = candidates[index]
        self.held.remove(held)
        try:
            result = held.effect()
        except Exception:
            held.deferred.errback(Failure())
        else:
            held.deferred.callback(result)

    def fail_held(self, exception, name=None, index=0):
        """
        Make a held call fail (without any effect).
        """
        candidates = [
            held for held in self.held
            if name is None or held.name == name
        ]
        held = candidates[index]
        self.held.remove(held)
        held.deferred.errback(exception)

    def release_all(self):
        while self.held:
            self.release()

    def finish_task(self, task_id, error=None):
        """
        Complete a background task (or fail it, if ``error`` is given).
        """
        if error is None:
            self._task_effects.pop(task_id)()
            self.tasks[task_id] = {"id": task_id, "status": u"completed"}
        else:
            self._task_effects.pop(task_id)
            self.tasks[task_id] = {"id": task_id, "status": u"failed", "error": error}

    def _call(self, name, args, effect):
        self.calls.append((name,) + tuple(args))
        for failure in self._failures:
            failed_name, backend_id, exception = failure
            if failed_name == name and (backend_id is None or backend_id in args):
                self._failures.remove(failure)
                return fail(exception)
        if name in self._holding:
            d = Deferred()
            self.held.append(_HeldCall(name, args, d, effect))
            return d
        try:
            return succeed(effect())
        except Exception:
            return fail()

    # the ReviewClient API

    def diffs(self, path, offset, limit):
        return self._call("diffs", (path, offset, limit), lambda: self._diffs(path, offset, limit))

    def search(self, params, offset, limit):
        return self._call("search", (params, offset, limit), lambda: self._search(params, offset, limit))

    def bulk_exclude(self, node_ids):
        return self._call("bulk_exclude", (list(node_ids),), lambda: self._bulk(EXCLUDE, node_ids))

    def bulk_unexclude(self, node_ids):
        return self._call("bulk_unexclude", (list(node_ids),), lambda: self._bulk(UNEXCLUDE, node_ids))

    def background_tasks(self):
        return self._call("background_tasks", (), lambda: list(self.tasks.values()))

    def migration_status(self):
        return self._call("migration_status", (), lambda: dict(self.status))

    def queue_metrics(self):
        return self._call("queue_metrics", (), lambda: dict(self.metrics))

    def logs(self):
        return self._call("logs", (), lambda: {"success": True, "logs": self.logs_by_level})

    def change_phase(self, target_phase):
        def change():
            self.phase = target_phase
            return {"success": True}
        return self._call("change_phase", (target_phase,), change)

    def __getattr__(self, name):
        if name in _METHOD_ENDPOINTS:
            endpoint = _METHOD_ENDPOINTS[name]
            return lambda backend_id: self._call(
                name,
                (backend_id,),
                lambda: self.node_request(backend_id, endpoint),
            )
        raise AttributeError(name)

    # behaviour

    def _children(self, path):
        path = normalize_path(path)
        return [
            node for node in self._nodes.values()
            if _parent(node.location_path) == path
        ]

    def _diffs(self, path, offset, limit):
        children = sorted(
            self._children(path),
            key=lambda node: (node.type != FOLDER, node.name),
        )
        page = children[offset:offset + limit]
        return {
            "folders": [node.to_json() for node in page if node.type == FOLDER],
            "files": [node.to_json() for node in page if node.type != FOLDER],
            "pagination": self._pagination(offset, limit, len(children)),
        }

    def _pagination(self, offset, limit, total):
        return {
            "offset": offset,
            "limit": limit,
            "total": total,
            "hasMore": offset + limit < total,
        }

    def _matches(self, node, params):
        text = params.get(u"query", u"").lower()
        if text:
            field = node.name if params.get(u"searchField") == u"name" else node.location_path
            if text not in field.lower():
                return False
        type_filter = params.get(u"typeFilter", u"both")
        if type_filter != u"both" and node.type != type_filter:
            return False
        if u"depthFilter" in params:
            compare = _OPERATORS[params.get(u"depthOperator", u"equals")]
            if not compare(_depth(node), int(params[u"depthFilter"])):
                return False
        if u"sizeFilter" in params:
            compare = _OPERATORS[params.get(u"sizeOperator", u"equals")]
            if node.size is None or not compare(node.size, int(params[u"sizeFilter"])):
                return False
        if u"traversalStatusFilter" in params:
            if params[u"traversalStatusFilter"] not in node.traversal_statuses():
                return False
        if u"copyStatusFilter" in params:
            if node.effective_copy_status != params[u"copyStatusFilter"]:
                return False
        return True

    def _search(self, params, offset, limit):
        params = {name: str(value) for (name, value) in params}
        found = [
            node for node in self._nodes.values()
            if self._matches(node, params)
        ]
        sort_key = {
            u"name": lambda node: node.name,
            u"size": lambda node: node.size or 0,
            u"depth": _depth,
        }.get(params.get(u"sortField"), lambda node: node.location_path)
        found.sort(key=sort_key, reverse=params.get(u"sortDir") == u"desc")
        return {
            "items": [node.to_json() for node in found[offset:offset + limit]],
            "pagination": self._pagination(offset, limit, len(found)),
            "stats": self.stats(),
        }

    def stats(self):
        nodes = list(self._nodes.values())
        pending = [
            node for node in nodes
            if node.in_src and node.effective_copy_status in (None, COPY_PENDING)
        ]
        return {
            "pending": len(pending),
            "failed": len([
                node for node in nodes
                if TRAVERSAL_FAILED in node.traversal_statuses() or
                node.effective_copy_status == COPY_FAILED
            ]),
            "excluded": len([
                node for node in nodes
                if node.effective_copy_status in EXCLUDED_COPY_STATUSES
            ]),
            "totalFolders": len([node for node in nodes if node.type == FOLDER]),
            "totalFiles": len([node for node in nodes if node.type != FOLDER]),
            "totalSize": sum(node.size or 0 for node in nodes),
            "pendingSize": sum(node.size or 0 for node in pending),
        }

    def _check_phase(self, endpoint, kind, copy_family):
        allowed = kind in allowed_mutations(self.phase)
        if copy_family is not None and copy_family != is_copy_phase(self.phase):
            allowed = False
        if not allowed:
            raise PhaseLockedError(endpoint, self.phase)

    def _change_side(self, backend_id, **changes):
        try:
            node_id, side_name = self._sides[backend_id]
        except KeyError:
            raise ReviewApiError(http.NOT_FOUND, {"reason": "No node '{}'".format(backend_id)})
        node = self._nodes[node_id]
        side = attr.evolve(getattr(node, side_name), **changes)
        mirror = {}
        if side_name == "src" or node.src is None:
            mirror = changes
        self._nodes[node_id] = attr.evolve(node, **dict(mirror, **{side_name: side}))
        return node_id

    def node_request(self, backend_id, endpoint):
        kind, copy_family, changes = _NODE_ENDPOINTS[endpoint]
        self._check_phase(endpoint, kind, copy_family)
        self._change_side(backend_id, **changes)
        return {"success": True}

    def _bulk(self, kind, backend_ids):
        endpoint = u"bulk-exclude" if kind == EXCLUDE else u"bulk-unexclude"
        self._check_phase(endpoint, kind, None)
        backend_ids = list(backend_ids)
        for backend_id in backend_ids:
            if backend_id not in self._sides:
                raise ReviewApiError(http.NOT_FOUND, {"reason": "No node '{}'".format(backend_id)})

        def effect():
            for backend_id in backend_ids:
                node_id = self._sides[backend_id][0]
                node = self._nodes[node_id]
                if kind == EXCLUDE:
                    self._nodes[node_id] = node.with_copy_status(COPY_EXCLUSION_EXPLICIT)
                else:
                    self._nodes[node_id] = node.with_copy_status(COPY_PENDING)
                for other in list(self._nodes.values()):
                    if is_descendant(other.location_path, node.location_path):
                        if kind == EXCLUDE:
                            self._nodes[other.id] = other.with_copy_status(COPY_EXCLUSION_INHERITED)
                        else:
                            self._nodes[other.id] = other.with_copy_status(COPY_PENDING)

        if self.task_threshold is not None and len(backend_ids) >= self.task_threshold:
            task_id = u"task-{}".format(len(self.tasks) + 1)
            self.tasks[task_id] = {"id": task_id, "status": u"running"}
            self._task_effects[task_id] = effect
            return {"success": True, "taskId": task_id}
        effect()
        return {"success": True}


@implementer(IBodyProducer)
class _SynchronousProducer(object):
    """
    A partial implementation of an :obj:`IBodyProducer` which produces its
    entire payload immediately.
    """

    def __init__(self, body):
        """
        Create a synchronous producer with some bytes.
        """
        if isinstance(body, FileBodyProducer):
            body = body._inputFile.read()

        if not isinstance(body, bytes):
            raise ValueError(
                "'body' must be bytes not '{}'".format(type(body))
            )
        self.body = body
        self.length = len(body)

    def startProducing(self, consumer):
        """
        Immediately produce all data.
        """
        consumer.write(self.body)
        return succeed(None)


def _json_response(request, code, body):
    request.setResponseCode(code)
    request.responseHeaders.setRawHeaders(b"content-type", [b"application/json"])
    return json.dumps(body).encode("utf-8")


class _MigrationResource(Resource, object):
    """
    Serves ``/api/migrations/<id>/...`` from a ``MemoryReviewBackend``.
    """
    isLeaf = True

    def __init__(self, backend):
        Resource.__init__(self)
        self._backend = backend

    def render(self, request):
        backend = self._backend
        if backend.api_token is not None:
            expected = b"Bearer " + backend.api_token
            if request.requestHeaders.getRawHeaders(b"authorization", [None])[0] != expected:
                return _json_response(request, http.UNAUTHORIZED, {"reason": "unauthorized"})

        segments = [segment.decode("utf-8") for segment in request.postpath]
        if segments[:3] != [u"api", u"migrations", backend.migration_id]:
            return _json_response(request, http.NOT_FOUND, {"reason": "No such migration"})
        method = request.method.decode("ascii")
        d = self._dispatch(method, segments[3:], request)
        if d is None:
            return _json_response(request, http.NOT_FOUND, {"reason": "No such endpoint"})

        results = []
        d.addBoth(results.append)
        if results:
            return self._respond(request, results[0])

        def finish(result):
            request.write(self._respond(request, result))
            request.finish()
        d.addBoth(finish)
        return NOT_DONE_YET

    def _respond(self, request, result):
        if not isinstance(result, Failure):
            return _json_response(request, http.OK, result)
        if result.check(ReviewApiError):
            return _json_response(request, result.value.code, result.value.body)
        if result.check(PhaseLockedError):
            return _json_response(request, http.CONFLICT, {
                "success": False,
                "errorCode": PHASE_LOCKED,
                "error": str(result.value),
                "phase": result.value.phase,
            })
        return _json_response(request, http.INTERNAL_SERVER_ERROR, {
            "reason": result.getErrorMessage(),
        })

    def _dispatch(self, method, path, request):
        backend = self._backend
        args = {
            key.decode("utf-8"): [value.decode("utf-8") for value in values]
            for key, values in request.args.items()
        }

        def arg(name, default=None):
            return args.get(name, [default])[0]

        def body():
            content = request.content.read()
            return json.loads(content.decode("utf-8")) if content else {}

        if method == "GET" and path == [u"diffs"]:
            return backend.diffs(arg(u"path", u"/"), int(arg(u"offset", 0)), int(arg(u"limit", 100)))
        if method == "GET" and path == [u"diffs", u"search"]:
            params = [
                (name, value)
                for (name, values) in sorted(args.items())
                for value in values
                if name not in (u"offset", u"limit")
            ]
            return backend.search(params, int(arg(u"offset", 0)), int(arg(u"limit", 100)))
        if method == "GET" and path == [u"tasks"]:
            return backend.background_tasks()
        if method == "GET" and path == [u"status"]:
            return backend.migration_status()
        if method == "GET" and path == [u"queue-metrics"]:
            return backend.queue_metrics()
        if method == "GET" and path == [u"logs"]:
            return backend.logs()
        if method == "POST" and path == [u"phase"]:
            return backend.change_phase(body().get("phase"))
        if method == "POST" and path == [u"nodes", u"bulk-exclude"]:
            return backend.bulk_exclude(body().get("nodeIds", []))
        if method == "POST" and path == [u"nodes", u"bulk-unexclude"]:
            return backend.bulk_unexclude(body().get("nodeIds", []))
        if method == "POST" and len(path) == 3 and path[0] == u"nodes":
            endpoint = path[2]
            for name, known in _METHOD_ENDPOINTS.items():
                if known == endpoint:
                    return getattr(backend, name)(path[1])
        return None


def create_review_treq_client(backend):
    """
    :param MemoryReviewBackend backend: the fake to serve

    :returns: an instance of treq.client.HTTPClient wired up to an
        in-memory fake of the migration service.
    """
    return HTTPClient(
        agent=RequestTraversalAgent(_MigrationResource(backend)),
        data_to_body_producer=_SynchronousProducer,
    )
