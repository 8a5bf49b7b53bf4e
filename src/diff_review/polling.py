# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Polling the state of a running migration.

``MigrationObserver`` owns three independent ``PollStream`` services
(status, queue metrics and logs). The status stream is the only
authority on whether the migration is still running: once it reports
a terminal status every stream stops for good.
"""

import re
from datetime import (
    datetime,
)

import attr
import automat

from eliot import (
    Message,
    write_failure,
)
from eliot.twisted import (
    inline_callbacks,
)
from twisted.application.service import (
    MultiService,
    Service,
)
from twisted.internet.defer import (
    Deferred,
    maybeDeferred,
    succeed,
)
from twisted.internet.interfaces import (
    IDelayedCall,
    IReactorTime,
)
from twisted.python.failure import (
    Failure,
)

from .client import (
    DATABASE_NOT_AVAILABLE,
)


TERMINAL_STATUSES = frozenset([
    u"completed",
    u"complete",
    u"failed",
    u"suspended",
])
RUNNING = u"running"


def is_terminal_status(status):
    """
    :param str status: a migration status as reported by the backend
        (in any case)
    """
    return status is not None and status.lower() in TERMINAL_STATUSES


def _provides(interface):
    """
    An attrs validator requiring values to provide ``interface``.
    """
    def validator(instance, attribute, value):
        if not interface.providedBy(value):
            raise TypeError(
                "'{}' must provide {!r} (got {!r})".format(
                    attribute.name,
                    interface,
                    value,
                )
            )
    return validator


def _last_one(things):
    """
    Used as a 'collector' for Automat state transitions whose last
    output is the interesting one.
    """
    things = list(things)
    return things[-1] if things else None


@attr.s
class PollStream(Service):
    """
    Calls a function repeatedly: immediately when activated and then
    ``interval`` seconds after each call has finished. A call is never
    started while the previous one is still running. Failures are logged
    and polling goes on.

    A stream is ``idle`` until started, ``active`` while polling,
    ``paused`` while the caller is not interested and ``stopped`` for
    good once stopped.

    :ivar IReactorTime _clock: Source of time

    :ivar Callable[[], Deferred[None]] _callable: Function to call.
    """
    _machine = automat.MethodicalMachine()

    name = attr.ib()
    _clock = attr.ib(validator=_provides(IReactorTime))
    _interval = attr.ib(validator=attr.validators.instance_of((int, float)))
    _callable = attr.ib(validator=attr.validators.is_callable())

    state = attr.ib(init=False, default=u"idle")
    _delayed_call = attr.ib(
        init=False,
        default=None,
        validator=attr.validators.optional(_provides(IDelayedCall)),
    )
    _deferred = attr.ib(
        init=False,
        default=None,
        validator=attr.validators.optional(attr.validators.instance_of(Deferred)),
    )
    _should_call = attr.ib(init=False, default=False)

    def startService(self):
        Service.startService(self)
        self._start()

    def stopService(self):
        Service.stopService(self)
        self._stop()

    def pause(self):
        """
        Stop polling until ``resume`` is called.
        """
        self._pause()

    def resume(self):
        """
        Poll right away and then periodically again.
        """
        self._resume()

    def stop(self):
        """
        Stop polling permanently.
        """
        self._stop()

    @property
    def in_flight(self):
        return self._deferred is not None

    @_machine.state(initial=True)
    def _idle(self):
        """
        Not started yet.
        """

    @_machine.state()
    def _active(self):
        """
        Calling the function, or waiting to call it again.
        """

    @_machine.state()
    def _paused(self):
        """
        Started, but not calling the function until resumed.
        """

    @_machine.state()
    def _stopped(self):
        """
        Never calling the function again.
        """

    @_machine.input()
    def _start(self):
        """
        The service was started.
        """

    @_machine.input()
    def _pause(self):
        """
        Whoever is interested in the results went away.
        """

    @_machine.input()
    def _resume(self):
        """
        Whoever is interested in the results is back.
        """

    @_machine.input()
    def _stop(self):
        """
        The service was stopped (or polling is pointless from now on).
        """

    @_machine.input()
    def _call_finished(self):
        """
        The function's Deferred fired.
        """

    @_machine.output()
    def _now_active(self):
        self._note_state(u"active")

    @_machine.output()
    def _now_paused(self):
        self._note_state(u"paused")

    @_machine.output()
    def _now_stopped(self):
        self._note_state(u"stopped")

    @_machine.output()
    def _call_soon(self):
        """
        Call the function now, or as soon as the running call finishes.
        """
        self._should_call = True
        self._schedule()

    @_machine.output()
    def _schedule_next(self):
        self._schedule()

    @_machine.output()
    def _cancel_delayed_call(self):
        """
        Cancel any pending delayed call, and remove our record of it.
        """
        self._should_call = False
        if self._delayed_call is not None:
            if self._delayed_call.active():
                self._delayed_call.cancel()
            self._delayed_call = None

    def _note_state(self, state):
        Message.log(
            message_type=u"poll-stream:state",
            stream=self.name,
            old=self.state,
            new=state,
        )
        self.state = state

    def _call(self):
        """
        Call the given function, and arrange to schedule the
        next call when it completes.
        """
        def done(result):
            if isinstance(result, Failure):
                write_failure(result)
            self._deferred = None
            self._call_finished()

        if self._delayed_call is not None:
            if self._delayed_call.active():
                self._delayed_call.cancel()
            self._delayed_call = None
        d = maybeDeferred(self._callable)
        self._deferred = d
        d.addBoth(done)

    def _schedule(self):
        """
        - If the function is running, we don't do anything;
          this method will be called again when the function is finished.
        - If a call has been requested, start it now.
        - Otherwise, if we haven't scheduled a future call, we schedule it
          the given interval into the future.
        """
        if self._deferred is not None:
            return
        if self._should_call:
            self._should_call = False
            self._call()
        elif self._delayed_call is None:
            self._delayed_call = self._clock.callLater(self._interval, self._delayed)

    def _delayed(self):
        self._delayed_call = None
        self._call()

    _idle.upon(_start, enter=_active, outputs=[_now_active, _call_soon], collector=_last_one)
    _idle.upon(_pause, enter=_idle, outputs=[])
    _idle.upon(_resume, enter=_idle, outputs=[])
    _idle.upon(_stop, enter=_stopped, outputs=[_now_stopped])

    _active.upon(_start, enter=_active, outputs=[])
    _active.upon(_resume, enter=_active, outputs=[])
    _active.upon(_call_finished, enter=_active, outputs=[_schedule_next])
    _active.upon(_pause, enter=_paused, outputs=[_now_paused, _cancel_delayed_call], collector=_last_one)
    _active.upon(_stop, enter=_stopped, outputs=[_now_stopped, _cancel_delayed_call], collector=_last_one)

    _paused.upon(_start, enter=_paused, outputs=[])
    _paused.upon(_pause, enter=_paused, outputs=[])
    _paused.upon(_call_finished, enter=_paused, outputs=[])
    _paused.upon(_resume, enter=_active, outputs=[_now_active, _call_soon], collector=_last_one)
    _paused.upon(_stop, enter=_stopped, outputs=[_now_stopped, _cancel_delayed_call], collector=_last_one)

    _stopped.upon(_start, enter=_stopped, outputs=[])
    _stopped.upon(_pause, enter=_stopped, outputs=[])
    _stopped.upon(_resume, enter=_stopped, outputs=[])
    _stopped.upon(_stop, enter=_stopped, outputs=[])
    _stopped.upon(_call_finished, enter=_stopped, outputs=[])


_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value):
    """
    :param str value: an ISO 8601 timestamp (``Z`` suffix and more than
        microsecond precision allowed)

    :returns float: seconds since the epoch, or None if ``value`` is
        not a timestamp
    """
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    text = _FRACTION.sub(r"\1", value.strip()).replace(u"Z", u"+00:00")
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


@attr.s(frozen=True)
class LogEntry(object):
    id = attr.ib()
    timestamp = attr.ib()
    level = attr.ib()
    message = attr.ib()

    @classmethod
    def from_json(cls, data, level, now):
        timestamp = parse_timestamp(data.get("timestamp"))
        message = data.get("message", u"")
        entry_id = data.get("id")
        if entry_id is None:
            entry_id = u"{}:{}:{}".format(data.get("timestamp"), level, message)
        return cls(
            id=entry_id,
            timestamp=now if timestamp is None else timestamp,
            level=data.get("level") or level,
            message=message,
        )


@attr.s
class LogBuffer(object):
    """
    The retained log entries, sorted by time, oldest first and never
    more than ``max_entries`` of them.
    """
    _clock = attr.ib()
    max_entries = attr.ib(default=10000)
    entries = attr.ib(default=attr.Factory(list), init=False)
    _seen = attr.ib(default=attr.Factory(set), init=False)

    def merge(self, logs_by_level):
        """
        :param dict logs_by_level: lists of log entries (as JSON) keyed
            by level

        :returns list: the entries that were not known before (and are
            still retained)
        """
        now = self._clock.seconds()
        new = []
        for level, items in sorted((logs_by_level or {}).items()):
            for item in items or []:
                entry = LogEntry.from_json(item, level, now)
                if entry.id in self._seen:
                    continue
                self._seen.add(entry.id)
                new.append(entry)
        if not new:
            return []
        entries = sorted(self.entries + new, key=lambda e: e.timestamp)
        if len(entries) > self.max_entries:
            entries = entries[len(entries) - self.max_entries:]
            self._seen = set(entry.id for entry in entries)
        self.entries = entries
        return [entry for entry in new if entry.id in self._seen]


@attr.s
class MigrationObserver(MultiService):
    """
    Polls the status, queue metrics and logs of one migration.

    :ivar dict status: the latest status (None before the first poll)

    :ivar dict queue_metrics: the latest usable queue metrics

    :ivar str error: why the last status poll failed (None after a
        successful one)
    """
    client = attr.ib()
    clock = attr.ib(validator=_provides(IReactorTime))
    notifier = attr.ib()
    status_interval = attr.ib(default=0.2)
    metrics_interval = attr.ib(default=0.2)
    log_interval = attr.ib(default=0.5)
    max_log_entries = attr.ib(default=10000)

    status = attr.ib(default=None, init=False)
    queue_metrics = attr.ib(default=None, init=False)
    error = attr.ib(default=None, init=False)
    logs = attr.ib(default=None, init=False)
    at_live_edge = attr.ib(default=True, init=False)

    _subscribers = attr.ib(default=attr.Factory(list), init=False)
    _log_listeners = attr.ib(default=attr.Factory(list), init=False)
    _terminal_waiters = attr.ib(default=attr.Factory(list), init=False)

    def __attrs_post_init__(self):
        MultiService.__init__(self)
        self.logs = LogBuffer(self.clock, self.max_log_entries)
        # status first: it is the first signal after starting
        self.status_stream = PollStream(
            u"status", self.clock, self.status_interval, self._poll_status,
        )
        self.metrics_stream = PollStream(
            u"queue-metrics", self.clock, self.metrics_interval, self._poll_metrics,
        )
        self.log_stream = PollStream(
            u"logs", self.clock, self.log_interval, self._poll_logs,
        )
        for stream in self.streams:
            stream.setServiceParent(self)

    def startService(self):
        MultiService.startService(self)
        if not self.at_live_edge:
            self.log_stream.pause()

    @property
    def streams(self):
        return [self.status_stream, self.metrics_stream, self.log_stream]

    @property
    def status_value(self):
        if self.status is None:
            return None
        return self.status.get("status")

    @property
    def is_terminal(self):
        return is_terminal_status(self.status_value)

    @property
    def is_running(self):
        value = self.status_value
        return value is not None and value.lower() == RUNNING

    @property
    def allows_destructive_actions(self):
        """
        Only once the status is known and says the migration is not
        running.
        """
        return self.status is not None and not self.is_running

    def subscribe(self, callback):
        """
        :param callback: called with the previous and the new status
            value whenever the status value changes
        """
        self._subscribers.append(callback)

    def on_new_logs(self, callback):
        """
        :param callback: called with a list of ``LogEntry`` whenever new
            entries were retained
        """
        self._log_listeners.append(callback)

    def when_terminal(self):
        """
        :returns Deferred[dict]: fires with the status once it is
            terminal
        """
        if self.is_terminal:
            return succeed(self.status)
        d = Deferred()
        self._terminal_waiters.append(d)
        return d

    def scrolled_away(self):
        """
        The log view is no longer at its live edge.
        """
        self.at_live_edge = False
        self.log_stream.pause()

    def scrolled_to_live_edge(self):
        """
        The log view is back at its live edge: back-fill right away.
        """
        self.at_live_edge = True
        if not self.is_terminal:
            self.log_stream.resume()

    @inline_callbacks
    def _poll_status(self):
        try:
            status = yield self.client.migration_status()
        except Exception as e:
            self.error = str(e)
            self.notifier.status_failed(u"Could not fetch migration status: {}".format(e))
            raise
        self.error = None
        previous = self.status_value
        self.status = status
        current = self.status_value
        if current != previous:
            Message.log(
                message_type=u"observer:status-changed",
                previous=previous,
                current=current,
            )
            for callback in list(self._subscribers):
                callback(previous, current)
        if self.is_terminal:
            self._terminated()

    def _terminated(self):
        for stream in self.streams:
            stream.stop()
        waiters, self._terminal_waiters = self._terminal_waiters, []
        for d in waiters:
            d.callback(self.status)

    def _structured_error(self, stream, result):
        """
        :returns bool: True if ``result`` is a ``{success: false}`` reply
            (which is logged, or silently ignored when the backend's
            database has gone away)
        """
        if not isinstance(result, dict) or result.get("success", True):
            return False
        if result.get("errorCode") != DATABASE_NOT_AVAILABLE:
            Message.log(
                message_type=u"observer:structured-error",
                stream=stream,
                error_code=result.get("errorCode"),
                error=result.get("error"),
            )
        return True

    @inline_callbacks
    def _poll_metrics(self):
        if self.is_terminal:
            return
        metrics = yield self.client.queue_metrics()
        if self.is_terminal or self._structured_error(u"queue-metrics", metrics):
            return
        if metrics.get("srcTraversal") is not None or metrics.get("dstTraversal") is not None:
            self.queue_metrics = metrics

    @inline_callbacks
    def _poll_logs(self):
        if self.is_terminal:
            return
        result = yield self.client.logs()
        if self.is_terminal or self._structured_error(u"logs", result):
            return
        new = self.logs.merge(result.get("logs"))
        if new:
            for callback in list(self._log_listeners):
                callback(new)
