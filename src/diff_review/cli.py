# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
The ``diff-review`` command: review a migration from a terminal.
"""

import sys
import json

import attr
import humanize

from twisted.internet.defer import (
    inlineCallbacks,
    maybeDeferred,
    returnValue,
)
from twisted.internet.task import (
    react,
)
from twisted.python import usage
from twisted.python.filepath import (
    FilePath,
)
from zope.interface import (
    implementer,
)

from eliot.twisted import (
    inline_callbacks,
)

from .client import (
    CannotAccessAPIError,
    ReviewApiError,
    create_http_client,
    create_review_client,
)
from .common import (
    PhaseLockedError,
)
from .config import (
    default_config_path,
    load_engine_config,
)
from .model import (
    EXCLUDE,
    MARK_RETRY,
    PHASES,
    PHASE_TRAVERSAL_REVIEW,
    UNEXCLUDE,
    UNMARK_RETRY,
)
from .mutation import (
    APPLIED,
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
    normalize_path,
    remember,
    select,
)
from .status import (
    LEGEND,
    resolve,
)
from .util.eliotutil import (
    maybe_enable_eliot_logging,
    with_eliot_options,
)
from .window import (
    INodeModel,
    ListWindow,
    SearchQuery,
    TreeLocator,
    TreeWindow,
)


class BaseOptions(usage.Options):
    stdin = sys.stdin
    stdout = sys.stdout
    stderr = sys.stderr

    optFlags = [
        ["version", "V", "Display version numbers."],
    ]
    optParameters = [
        ("config", "c", default_config_path,
         "The directory containing configuration"),
    ]

    _config = None  # lazy-instantiated by .config @property
    _client = None  # lazy-instantiated by .client @property

    @property
    def _config_path(self):
        """
        The FilePath where our config is located
        """
        return FilePath(self['config'])

    @property
    def config(self):
        """
        the EngineConfig loaded from the configuration directory
        """
        if self._config is None:
            try:
                self._config = load_engine_config(self._config_path)
            except Exception as e:
                raise usage.UsageError(
                    u"Unable to load configuration: {}".format(e)
                )
        return self._config

    @property
    def client(self):
        if self._client is None:
            from twisted.internet import reactor
            endpoint_str = self.config.api_client_endpoint
            if endpoint_str is None:
                raise CannotAccessAPIError("Service not running.")
            self._client = create_review_client(
                self.config,
                create_http_client(reactor, endpoint_str),
                self['migration'],
            )
        return self._client


@implementer(INodeModel)
@attr.s
class _FoundNodes(object):
    """
    The nodes named on the command line.
    """
    nodes = attr.ib(default=attr.Factory(list))

    def get_node(self, node_id):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def replace_node(self, node):
        self.nodes = [
            node if existing.id == node.id else existing
            for existing in self.nodes
        ]

    def reload(self):
        return None

    def loaded_nodes(self):
        return list(self.nodes)


def _size(node):
    if node.is_folder or node.size is None:
        return u""
    return humanize.naturalsize(node.size)


def _print_nodes(nodes, phase, out):
    for node in nodes:
        status = resolve(node, phase)
        print(
            u"{} {:<8} {} {}".format(
                status.icon,
                node.type,
                node.location_path,
                _size(node),
            ).rstrip(),
            file=out,
        )


def _print_pagination(pagination, out):
    if pagination is None:
        return
    if pagination.total == 0:
        print(u"(nothing to show)", file=out)
        return
    print(
        u"showing {}-{} of {}".format(
            pagination.offset + 1,
            min(pagination.end, pagination.total),
            pagination.total,
        ),
        file=out,
    )


@inline_callbacks
def _find_node(options, path):
    """
    Load the folder holding ``path`` (page by page) until ``path`` is
    seen.
    """
    path = normalize_path(path)
    parent = path.rsplit(u"/", 1)[0] or u"/"
    window = TreeWindow(
        options.parent.client,
        options.parent.reactor,
        page_size=options.parent.config.page_size,
        hide_destination_only=False,
    )
    page = yield window.open(parent)
    while page is not None:
        for node in window.loaded_nodes():
            if node.location_path == path:
                returnValue(node)
        page = yield window.load_more()
    if window.error is not None:
        raise Exception(window.error)
    raise Exception(u"No node at '{}'".format(path))


def _edits(options, nodes):
    parent = options.parent
    notifier = RecentErrors(parent.reactor, max_errors=parent.config.max_errors)
    return MutationManager(
        parent.client,
        _FoundNodes(list(nodes)),
        notifier,
        parent.reactor,
        selection=SelectionStore(),
        phase=parent['phase'],
        trust_optimistic_state=True,
        task_poll_interval=parent.config.task_poll_interval,
    )


class StatusOptions(usage.Options):
    optFlags = [
        ("json", "", "Output the raw status as JSON"),
    ]


@inlineCallbacks
def status(options):
    """
    Show the migration status and its queues.
    """
    client = options.parent.client
    status = yield client.migration_status()
    if options['json']:
        print(json.dumps(status, indent=4), file=options.stdout)
        return
    print(u"Migration {}: {}".format(
        options.parent['migration'],
        status.get("status", u"unknown"),
    ), file=options.stdout)
    if status.get("phase"):
        print(u"  phase: {}".format(status["phase"]), file=options.stdout)
    metrics = yield client.queue_metrics()
    for name in ("srcTraversal", "dstTraversal", "copy"):
        queue = metrics.get(name)
        if isinstance(queue, dict):
            print(u"  {}: {}".format(
                name,
                u", ".join(
                    u"{} {}".format(humanize.intcomma(value), key)
                    for key, value in sorted(queue.items())
                ),
            ), file=options.stdout)


class DiffsOptions(usage.Options):
    optParameters = [
        ("path", "p", "/", "The folder whose children are listed"),
        ("offset", "o", 0, "Skip this many children", int),
        ("limit", "l", None, "Show at most this many children", int),
    ]
    optFlags = [
        ("legend", "", "Explain the status icons"),
    ]


@inlineCallbacks
def diffs(options):
    """
    List the children of one folder.
    """
    parent = options.parent
    window = TreeWindow(
        parent.client,
        parent.reactor,
        page_size=options['limit'] or parent.config.page_size,
        hide_destination_only=False,
    )
    page = yield window.load(
        TreeLocator(options['path']),
        options['offset'],
        window.page_size,
    )
    if page is None:
        raise Exception(window.error)
    _print_nodes(window.loaded_nodes(), parent['phase'], options.stdout)
    _print_pagination(window.pagination, options.stdout)
    if options['legend']:
        _print_legend(options.stdout)


def _print_legend(out):
    for category, icon, label in LEGEND:
        print(u"  {} {}".format(icon, label), file=out)


class SearchOptions(usage.Options):
    optParameters = [
        ("query", "q", u"", "Text to look for"),
        ("field", "f", u"path", "Match the text against 'path' or 'name'"),
        ("type", "t", u"both", "Only 'folder', 'file' or 'both'"),
        ("size", None, None, "Compare file sizes against this many bytes", int),
        ("size-operator", None, u"equals", "How sizes compare: equals, gt, gte, lt or lte"),
        ("depth", None, None, "Compare depths against this", int),
        ("depth-operator", None, u"equals", "How depths compare: equals, gt, gte, lt or lte"),
        ("status", "s", None, "Only nodes with this status"),
        ("sort", None, u"path", "The field to sort by"),
        ("page", None, 0, "Which page to show (from 0)", int),
        ("limit", "l", None, "Nodes per page", int),
    ]
    optFlags = [
        ("descending", "d", "Sort in descending order"),
    ]

    def postOptions(self):
        try:
            self.query = SearchQuery(
                text=self['query'],
                search_field=self['field'],
                type_filter=self['type'],
                size=self['size'],
                size_operator=self['size-operator'],
                depth=self['depth'],
                depth_operator=self['depth-operator'],
                status_filter=self['status'],
                sort_field=self['sort'],
                sort_dir=u"desc" if self['descending'] else u"asc",
            )
        except ValueError as e:
            raise usage.UsageError(str(e))


@inlineCallbacks
def search(options):
    """
    Search the whole diff.
    """
    parent = options.parent
    window = ListWindow(
        parent.client,
        parent.reactor,
        page_size=options['limit'] or parent.config.page_size,
        phase=parent['phase'],
    )
    window.query = options.query
    page = yield window.goto_page(options['page'])
    if page is None:
        raise Exception(window.error)
    _print_nodes(window.loaded_nodes(), parent['phase'], options.stdout)
    _print_pagination(window.pagination, options.stdout)
    if window.stats is not None:
        stats = window.stats
        print(
            u"{} pending ({}), {} failed, {} excluded".format(
                humanize.intcomma(stats.pending),
                humanize.naturalsize(stats.pending_size or 0),
                humanize.intcomma(stats.failed),
                humanize.intcomma(stats.excluded),
            ),
            file=options.stdout,
        )


class _PathsOptions(usage.Options):
    def parseArgs(self, *paths):
        if not paths:
            raise usage.UsageError("at least one path is required")
        self.paths = list(paths)


class ExcludeOptions(_PathsOptions):
    synopsis = "<path> [<path>...]"


class UnexcludeOptions(_PathsOptions):
    synopsis = "<path> [<path>...]"


class RetryOptions(usage.Options):
    synopsis = "<path>"

    def parseArgs(self, path):
        self.paths = [path]


class UnretryOptions(RetryOptions):
    pass


@inlineCallbacks
def _edit(options, kind):
    if len(options.paths) > 1:
        result = yield _bulk_edit(options, kind)
        return result
    node = yield _find_node(options, options.paths[0])
    result = yield _edits(options, [node]).mutate(node, kind)
    _report(options, kind, [node.location_path], result)
    return result


@inlineCallbacks
def _bulk_edit(options, kind):
    nodes = []
    for path in options.paths:
        node = yield _find_node(options, path)
        nodes.append(node)
    edits = _edits(options, nodes)
    edits.selection.update(remember, nodes)
    for node in nodes:
        edits.selection.update(select, node.id)
    if kind == EXCLUDE:
        result = yield edits.bulk_exclude()
    else:
        result = yield edits.bulk_unexclude()
    _report(options, kind, [node.location_path for node in nodes], result)
    return result


def _report(options, kind, paths, result):
    if result == APPLIED:
        print(u"{}: {}".format(kind, u", ".join(paths)), file=options.stdout)
    else:
        raise PhaseLockedError(kind, options.parent['phase'])


def exclude(options):
    return _edit(options, EXCLUDE)


def unexclude(options):
    return _edit(options, UNEXCLUDE)


def retry(options):
    return _edit(options, MARK_RETRY)


def unretry(options):
    return _edit(options, UNMARK_RETRY)


class AdvanceOptions(usage.Options):
    synopsis = "<phase>"

    def parseArgs(self, phase):
        if phase not in PHASES:
            raise usage.UsageError(
                "phase must be one of: {}".format(", ".join(PHASES))
            )
        self.phase = phase


@inlineCallbacks
def advance(options):
    """
    Move the migration to another phase (not while it is running).
    """
    client = options.parent.client
    status = yield client.migration_status()
    if (status.get("status") or u"").lower() == u"running":
        raise PhaseLockedError(
            u"advance",
            options.parent['phase'],
            u"the migration is still running",
        )
    yield client.change_phase(options.phase)
    print(u"Migration is now in phase '{}'".format(options.phase), file=options.stdout)


class MonitorOptions(usage.Options):
    optFlags = [
        ["once", "", "Exit after the first status"],
    ]


@inlineCallbacks
def monitor(options):
    """
    Print status changes and new log entries until the migration has
    finished.
    """
    parent = options.parent
    config = parent.config
    out = options.stdout
    if options['once']:
        status = yield parent.client.migration_status()
        print(u"status: {}".format(status.get("status")), file=out)
        return
    observer = MigrationObserver(
        parent.client,
        parent.reactor,
        RecentErrors(parent.reactor, max_errors=config.max_errors),
        status_interval=config.status_interval,
        metrics_interval=config.metrics_interval,
        log_interval=config.log_interval,
        max_log_entries=config.max_log_entries,
    )

    def status_changed(previous, current):
        print(u"status: {}".format(current), file=out)

    def new_logs(entries):
        now = parent.reactor.seconds()
        for entry in entries:
            print(
                u"[{}] {} ({} ago)".format(
                    entry.level,
                    entry.message,
                    humanize.naturaldelta(max(0, now - entry.timestamp)),
                ),
                file=out,
            )

    observer.subscribe(status_changed)
    observer.on_new_logs(new_logs)
    observer.startService()
    try:
        yield observer.when_terminal()
    finally:
        yield observer.stopService()


@with_eliot_options
class DiffReviewCommand(BaseOptions):
    """
    top-level command (entry-point is "diff-review")
    """
    subCommands = [
        ["status", None, StatusOptions, "Show the migration status."],
        ["diffs", None, DiffsOptions, "List the children of a folder."],
        ["search", None, SearchOptions, "Search the whole diff."],
        ["exclude", None, ExcludeOptions, "Exclude nodes from copying."],
        ["unexclude", None, UnexcludeOptions, "Include excluded nodes again."],
        ["retry", None, RetryOptions, "Mark a failed node for retry."],
        ["unretry", None, UnretryOptions, "Unmark a node marked for retry."],
        ["advance", None, AdvanceOptions, "Move the migration to another phase."],
        ["monitor", None, MonitorOptions, "Follow the status and logs."],
    ]
    optFlags = [
        ["debug", "d", "Print full stack-traces"],
    ]
    optParameters = [
        ("migration", "m", None, "The id of the migration to review"),
        ("phase", "p", PHASE_TRAVERSAL_REVIEW, "The phase the migration is in"),
    ]
    description = (
        "Review the differences between the source and the destination "
        "of a migration: exclude nodes, retry failures and follow its "
        "progress."
    )

    @property
    def parent(self):
        return None

    @parent.setter
    def parent(self, ignored):
        pass

    def opt_version(self):
        """
        Display diff-review version and exit.
        """
        from . import __version__
        print("diff-review version {}".format(__version__), file=self.stdout)
        sys.exit(0)

    def postOptions(self):
        if not hasattr(self, 'subOptions'):
            raise usage.UsageError("must specify a subcommand")
        if self['migration'] is None:
            raise usage.UsageError("--migration / -m is required")
        if self['phase'] not in PHASES:
            raise usage.UsageError(
                "--phase must be one of: {}".format(", ".join(PHASES))
            )

    def getSynopsis(self):
        return "Usage: diff-review [global-options] <subcommand> [subcommand-options]"

    def getUsage(self, width=None):
        t = usage.Options.getUsage(self, width)
        t += (
            "Please run e.g. 'diff-review search --help' for more "
            "details on each subcommand.\n"
        )
        return t


subDispatch = {
    "status": status,
    "diffs": diffs,
    "search": search,
    "exclude": exclude,
    "unexclude": unexclude,
    "retry": retry,
    "unretry": unretry,
    "advance": advance,
    "monitor": monitor,
}


@inlineCallbacks
def dispatch_review_command(args, stdout=None, stderr=None, client=None,
                            config=None, reactor=None):
    """
    Run a diff-review command with the given args

    :param list[str] args: arguments without the 'diff-review' 0th arg

    :param stdout: file-like writable object to collect stdout (or
        None for default)

    :param stderr: file-like writable object to collect stderr (or
        None for default)

    :param client: the ``ReviewClient`` to use, or None to construct
        one

    :param EngineConfig config: a configuration, or None to load one

    :param reactor: the reactor (the global one if None)

    :returns: a Deferred which fires with the result of doing this
        diff-review (sub)command.
    """
    options = DiffReviewCommand()
    if reactor is None:
        from twisted.internet import reactor
    options.reactor = reactor
    if stdout is not None:
        options.stdout = stdout
    if stderr is not None:
        options.stderr = stderr
    if client is not None:
        options._client = client
    if config is not None:
        options._config = config
    try:
        options.parseOptions(args)
    except usage.UsageError as e:
        print("Error: {}".format(e), file=options.stdout)
        # if a user just typed "diff-review" don't make them re-run
        # with "--help" just to see the sub-commands they were
        # supposed to use
        if len(args) == 0:
            print(options, file=options.stdout)
        raise SystemExit(1)

    yield run_review_options(options)


# If `--eliot-task-fields` is passed, then `maybe_enable_eliot_logging` will
# start an action that is meant to be a parent of *all* logs this process
# generates. Since we call that function in this generator, if we used
# `eliot.inline_callbacks` here, eliot would remove that action context from
# it stack when when we yield to reactor.
@inlineCallbacks
def run_review_options(options):
    """
    Runs a diff-review subcommand with the provided options.

    :param options: already-parsed options.

    :returns: a Deferred which fires with the result of doing this
        diff-review (sub)command.
    """
    so = options.subOptions
    so.stdout = options.stdout
    so.stderr = options.stderr

    maybe_enable_eliot_logging(options, options.reactor)

    main_func = subDispatch[options.subCommand]

    # we want to let exceptions out to the top level if --debug is on
    # because this gives better stack-traces
    if options['debug']:
        yield maybeDeferred(main_func, so)

    else:
        try:
            yield maybeDeferred(main_func, so)

        except CannotAccessAPIError as e:
            # give user more information if we can't find the service at all
            print(u"Error: {}".format(e), file=options.stderr)
            print(
                u"   Attempted access via {}".format(options.config.api_client_endpoint),
                file=options.stderr,
            )
            raise SystemExit(1)

        except ReviewApiError as e:
            # these kinds of errors should report via JSON from the endpoints
            print(json.dumps(e.body), file=options.stderr)
            raise SystemExit(2)

        except Exception as e:
            print(u"Error: {}".format(e), file=options.stderr)
            raise SystemExit(3)


def _entry():
    """
    Implement the *diff-review* console script declared in ``setup.py``.

    :return: ``None``
    """

    def main(reactor):
        return dispatch_review_command(sys.argv[1:], reactor=reactor)
    return react(main)


if __name__ == '__main__':
    # this allows one to run this like "python -m diff_review.cli"
    _entry()
