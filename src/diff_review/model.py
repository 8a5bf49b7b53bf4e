# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
The data model of a computed diff: one ``DiffNode`` per compared
filesystem entity, with optional per-side (source / destination)
records, plus the migration phases and server-computed statistics.

Nodes are immutable. Every edit produces a new node (see
``DiffNode.with_copy_status`` and friends) so that the mutation manager
can keep the node it replaced as a rollback snapshot.
"""

import attr

from .common import (
    MalformedNodeError,
)


FOLDER = u"folder"
FILE = u"file"
NODE_TYPES = frozenset([FOLDER, FILE])

# traversal (discovery) statuses
TRAVERSAL_PENDING = u"pending"
TRAVERSAL_SUCCESSFUL = u"successful"
TRAVERSAL_FAILED = u"failed"
TRAVERSAL_NOT_ON_SRC = u"not_on_src"

# copy statuses
COPY_PENDING = u"pending"
COPY_EXCLUSION_EXPLICIT = u"exclusion_explicit"
COPY_EXCLUSION_INHERITED = u"exclusion_inherited"
COPY_SUCCESSFUL = u"successful"
COPY_FAILED = u"failed"

COPY_STATUSES = frozenset([
    COPY_PENDING,
    COPY_EXCLUSION_EXPLICIT,
    COPY_EXCLUSION_INHERITED,
    COPY_SUCCESSFUL,
    COPY_FAILED,
])
EXCLUDED_COPY_STATUSES = frozenset([
    COPY_EXCLUSION_EXPLICIT,
    COPY_EXCLUSION_INHERITED,
])

# migration phases
PHASE_TRAVERSAL = u"traversal"
PHASE_TRAVERSAL_REVIEW = u"traversal-review"
PHASE_COPY = u"copy"
PHASE_COPY_REVIEW = u"copy-review"
PHASE_COMPLETE = u"complete"

PHASES = frozenset([
    PHASE_TRAVERSAL,
    PHASE_TRAVERSAL_REVIEW,
    PHASE_COPY,
    PHASE_COPY_REVIEW,
    PHASE_COMPLETE,
])
REVIEW_PHASES = frozenset([PHASE_TRAVERSAL_REVIEW, PHASE_COPY_REVIEW])
_COPY_FAMILY = frozenset([PHASE_COPY, PHASE_COPY_REVIEW, PHASE_COMPLETE])

# kinds of mutation
EXCLUDE = u"exclude"
UNEXCLUDE = u"unexclude"
MARK_RETRY = u"mark-retry"
UNMARK_RETRY = u"unmark-retry"

MUTATION_KINDS = frozenset([EXCLUDE, UNEXCLUDE, MARK_RETRY, UNMARK_RETRY])

_ALLOWED_MUTATIONS = {
    PHASE_TRAVERSAL_REVIEW: frozenset([EXCLUDE, UNEXCLUDE, MARK_RETRY, UNMARK_RETRY]),
    # exclusions are read-only once copying has been reviewed
    PHASE_COPY_REVIEW: frozenset([MARK_RETRY, UNMARK_RETRY]),
}


def validate_phase(phase):
    """
    :raises ValueError: if ``phase`` is not one of the known phases
    """
    if phase not in PHASES:
        raise ValueError(
            "Unknown migration phase '{}' (valid are {})".format(
                phase,
                ", ".join(sorted(PHASES)),
            )
        )
    return phase


def is_copy_phase(phase):
    """
    :returns bool: True if ``copy_status`` (rather than
        ``traversal_status``) is authoritative in ``phase``.
    """
    return validate_phase(phase) in _COPY_FAMILY


def allowed_mutations(phase):
    """
    :returns frozenset: the mutation kinds the backend accepts during
        ``phase`` (nothing outside the two review phases).
    """
    return _ALLOWED_MUTATIONS.get(validate_phase(phase), frozenset())


@attr.s(frozen=True)
class NodeSide(object):
    """
    One side (source or destination) of a compared node, as the
    backend tracks it. ``id`` is the backend's identifier for this side
    and is independent of the other side's.
    """
    id = attr.ib(validator=attr.validators.optional(attr.validators.instance_of(str)))
    traversal_status = attr.ib(default=None)
    copy_status = attr.ib(default=None)
    last_updated = attr.ib(default=None)
    size = attr.ib(default=None)

    @classmethod
    def from_json(cls, data):
        if not data:
            return None
        return cls(
            id=data.get("id"),
            traversal_status=data.get("traversalStatus"),
            copy_status=data.get("copyStatus"),
            last_updated=data.get("lastUpdated"),
            size=data.get("size"),
        )

    def to_json(self):
        result = {"id": self.id}
        for key, value in [
                ("traversalStatus", self.traversal_status),
                ("copyStatus", self.copy_status),
                ("lastUpdated", self.last_updated),
                ("size", self.size)]:
            if value is not None:
                result[key] = value
        return result


def _present_somewhere(instance, attribute, value):
    if not (instance.in_src or instance.in_dst):
        raise ValueError(
            "Node '{}' is present on neither source nor destination".format(
                instance.id,
            )
        )


@attr.s(frozen=True)
class DiffNode(object):
    """
    One compared filesystem entity (a file or a folder).

    :ivar str id: identifier within the current view

    :ivar str location_path: full hierarchical path; the key for all
        ancestor / descendant logic.

    :ivar NodeSide src: the source-side record (or None)

    :ivar NodeSide dst: the destination-side record (or None)

    :ivar str copy_status: mirror of ``src.copy_status``, used when
        ``src`` is absent.
    """
    id = attr.ib(validator=attr.validators.instance_of(str))
    name = attr.ib(validator=attr.validators.instance_of(str))
    location_path = attr.ib(validator=attr.validators.instance_of(str))
    type = attr.ib(validator=attr.validators.in_(NODE_TYPES))
    in_src = attr.ib(validator=attr.validators.instance_of(bool))
    in_dst = attr.ib(validator=[attr.validators.instance_of(bool), _present_somewhere])
    src = attr.ib(default=None, validator=attr.validators.optional(attr.validators.instance_of(NodeSide)))
    dst = attr.ib(default=None, validator=attr.validators.optional(attr.validators.instance_of(NodeSide)))
    copy_status = attr.ib(default=None)
    traversal_status = attr.ib(default=None)
    size = attr.ib(default=None)
    depth = attr.ib(default=None)
    last_updated = attr.ib(default=None)

    @property
    def is_folder(self):
        return self.type == FOLDER

    @property
    def is_destination_only(self):
        """
        Present only on the destination: informational, never explorable
        and without exclusion / retry semantics of its own.
        """
        return self.in_dst and not self.in_src

    @property
    def is_source_only(self):
        return self.in_src and not self.in_dst

    @property
    def exists_on_both(self):
        return self.in_src and self.in_dst

    @property
    def is_locked(self):
        """
        Folders present on both sides cannot be toggled.
        """
        return self.is_folder and self.exists_on_both

    @property
    def effective_copy_status(self):
        """
        The source side's copy status, falling back to the top-level
        mirror when there is no source record.
        """
        if self.src is not None and self.src.copy_status is not None:
            return self.src.copy_status
        return self.copy_status

    def sides(self):
        """
        :returns: the present side records, source first
        """
        return [side for side in (self.src, self.dst) if side is not None]

    def traversal_statuses(self):
        """
        :returns list: the traversal status of each present side (using
            the top-level mirror when a side does not carry one)
        """
        statuses = [
            side.traversal_status or self.traversal_status
            for side in self.sides()
        ]
        if not statuses and self.traversal_status is not None:
            statuses.append(self.traversal_status)
        return statuses

    def backend_ids(self):
        """
        The backend identifiers a mutation of this node has to be sent
        to: the source id (if any) followed by the destination id when
        it is present and different.

        :raises MalformedNodeError: if neither side has an id
        """
        ids = []
        if self.src is not None and self.src.id:
            ids.append(self.src.id)
        if self.dst is not None and self.dst.id and self.dst.id not in ids:
            ids.append(self.dst.id)
        if not ids:
            raise MalformedNodeError(self.id)
        return ids

    def with_copy_status(self, copy_status):
        """
        :returns DiffNode: a copy of this node where every present side
            (and the top-level mirror) has the given copy status
        """
        return attr.evolve(
            self,
            src=attr.evolve(self.src, copy_status=copy_status) if self.src else None,
            dst=attr.evolve(self.dst, copy_status=copy_status) if self.dst else None,
            copy_status=copy_status,
        )

    def with_traversal_status(self, traversal_status, only_if=None):
        """
        :param str only_if: when given, only sides currently in this
            traversal status are changed

        :returns DiffNode: a copy of this node with the side records'
            traversal status replaced
        """
        def change(side):
            if side is None:
                return None
            current = side.traversal_status or self.traversal_status
            if only_if is not None and current != only_if:
                return side
            return attr.evolve(side, traversal_status=traversal_status)

        mirror = self.traversal_status
        if only_if is None or mirror == only_if:
            mirror = traversal_status
        return attr.evolve(
            self,
            src=change(self.src),
            dst=change(self.dst),
            traversal_status=mirror,
        )

    def to_json(self):
        result = {
            "id": self.id,
            "displayName": self.name,
            "locationPath": self.location_path,
            "type": self.type,
            "inSrc": self.in_src,
            "inDst": self.in_dst,
        }
        if self.src is not None:
            result["src"] = self.src.to_json()
        if self.dst is not None:
            result["dst"] = self.dst.to_json()
        for key, value in [
                ("copyStatus", self.copy_status),
                ("traversalStatus", self.traversal_status),
                ("size", self.size),
                ("depthLevel", self.depth),
                ("lastUpdated", self.last_updated)]:
            if value is not None:
                result[key] = value
        return result


def node_from_json(data):
    """
    Build a ``DiffNode`` from the backend's JSON representation of a
    diff item.

    :raises ValueError: for items present on neither side or of an
        unknown type
    """
    src = NodeSide.from_json(data.get("src"))
    copy_status = data.get("copyStatus")
    if copy_status is None and src is not None:
        copy_status = src.copy_status
    return DiffNode(
        id=data["id"],
        name=data.get("displayName") or data.get("name") or u"",
        location_path=data.get("locationPath") or u"",
        type=data["type"],
        in_src=bool(data.get("inSrc", False)),
        in_dst=bool(data.get("inDst", False)),
        src=src,
        dst=NodeSide.from_json(data.get("dst")),
        copy_status=copy_status,
        traversal_status=data.get("traversalStatus"),
        size=data.get("size"),
        depth=data.get("depthLevel"),
        last_updated=data.get("lastUpdated"),
    )


@attr.s(frozen=True)
class Pagination(object):
    """
    Where a page sits in the complete result.
    """
    offset = attr.ib(validator=attr.validators.instance_of(int))
    limit = attr.ib(validator=attr.validators.instance_of(int))
    total = attr.ib(validator=attr.validators.instance_of(int))
    has_more = attr.ib(validator=attr.validators.instance_of(bool))

    @classmethod
    def from_json(cls, data, offset, limit, count):
        """
        :param dict data: the ``pagination`` object of a response (may
            be None, in which case it is derived from the request)

        :param int count: number of items actually returned
        """
        data = data or {}
        offset = int(data.get("offset", offset))
        limit = int(data.get("limit", limit))
        total = int(data.get("total", offset + count))
        has_more = data.get("hasMore")
        if has_more is None:
            has_more = offset + count < total
        return cls(offset=offset, limit=limit, total=total, has_more=bool(has_more))

    @property
    def end(self):
        return self.offset + self.limit


@attr.s(frozen=True)
class ReviewStats(object):
    """
    Server-computed aggregates over the whole diff. Read-only.
    """
    pending = attr.ib(default=0)
    failed = attr.ib(default=0)
    excluded = attr.ib(default=0)
    total_folders = attr.ib(default=0)
    total_files = attr.ib(default=0)
    total_size = attr.ib(default=0)
    pending_size = attr.ib(default=0)

    @classmethod
    def from_json(cls, data):
        if not data:
            return None
        return cls(
            pending=int(data.get("pending", 0)),
            failed=int(data.get("failed", 0)),
            excluded=int(data.get("excluded", 0)),
            total_folders=int(data.get("totalFolders", data.get("folders", 0))),
            total_files=int(data.get("totalFiles", data.get("files", 0))),
            total_size=int(data.get("totalSize", 0)),
            pending_size=int(data.get("pendingSize", 0)),
        )

    @property
    def folder_ratio(self):
        """
        :returns: a (folders, files) pair of percentages, or (0, 0)
        """
        total = self.total_folders + self.total_files
        if total == 0:
            return (0.0, 0.0)
        folders = 100.0 * self.total_folders / total
        return (folders, 100.0 - folders)
