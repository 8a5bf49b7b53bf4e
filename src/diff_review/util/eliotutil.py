# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Eliot logging utilities: shared fields, command-line options for
choosing destinations and decorators for Deferred-returning functions.
"""

import inspect
import json
import os

from eliot import (
    Action,
    Field,
    FileDestination,
    ValidationError,
    add_destinations,
    remove_destination,
    start_action,
    start_task,
)
from eliot.twisted import (
    DeferredContext,
    inline_callbacks,
)

from twisted.internet.defer import (
    maybeDeferred,
)
from twisted.python import usage
from twisted.application.service import Service

from functools import wraps
from inspect import unwrap

import attr


def validateSetMembership(s):
    """
    Return an Eliot validator that requires values to be elements of ``s``.
    """
    def validator(v):
        if v not in s:
            raise ValidationError("{} not in {}".format(v, s))
    return validator


NODE_ID = Field.for_types(
    u"node_id",
    [str, None],
    u"The identifier of a diff node (or of one side of it).",
)

MUTATION_KIND = Field(
    u"kind",
    lambda kind: kind,
    u"The kind of edit applied to a node.",
    validateSetMembership({u"exclude", u"unexclude", u"mark-retry", u"unmark-retry"}),
)


def opt_eliot_fd(self, fd):
    """
    File descriptor to send log eliot to.
    """
    try:
        fd = int(fd)
    except Exception as e:
        raise usage.UsageError(str(e))

    stdio_fds = {
        1: self.stdout,
        2: self.stderr,
    }

    def to_fd(reactor):
        f = stdio_fds.get(fd)
        if f is None:
            f = os.fdopen(fd, "w")
        return FileDestination(f)

    self.setdefault("eliot-destinations", []).append(to_fd)


def opt_eliot_task_fields(self, task_fields):
    """
    Wrap all logs in a task with given (JSON) fields. (for testing)
    """
    # a global eliot task is created and all eliot logs become its
    # children, which gives captured logs some context
    try:
        task_fields = json.loads(task_fields)
    except Exception as e:
        raise usage.UsageError(str(e))
    self.setdefault("eliot-task-fields", {}).update(task_fields)


def with_eliot_options(cls):
    cls.opt_eliot_fd = opt_eliot_fd
    cls.opt_eliot_task_fields = opt_eliot_task_fields
    return cls


def maybe_enable_eliot_logging(options, reactor=None):
    destinations = options.get("eliot-destinations")
    task_fields = options.get("eliot-task-fields")
    if not destinations:
        return None
    if reactor is None:
        from twisted.internet import reactor

    destinations = [destination(reactor) for destination in destinations]
    service = _EliotLogging(destinations, task_fields)
    service.startService()
    reactor.addSystemEventTrigger("after", "shutdown", service.stopService)
    return service


@attr.s
class _EliotLogging(Service):
    """
    A service which adds Eliot destinations while it is running.

    :ivar list[eliot.IDestination] destinations: The Eliot destinations
        added by this service.
    """

    destinations = attr.ib()
    task_fields = attr.ib(
        default=None,
        validator=attr.validators.optional(attr.validators.instance_of(dict))
    )
    task = attr.ib(
        init=False,
        default=None,
        validator=attr.validators.optional(attr.validators.instance_of(Action)),
    )

    def startService(self):
        if self.task_fields:
            self.task = start_task(**self.task_fields)
            self.task.__enter__()
        add_destinations(*self.destinations)
        return Service.startService(self)

    def stopService(self):
        if self.task is not None:
            self.task.finish()
        for dest in self.destinations:
            remove_destination(dest)
        return Service.stopService(self)


def log_call_deferred(action_type, include_args=False):
    """
    Like ``eliot.log_call`` but for functions which return ``Deferred``.
    """

    if include_args:
        if include_args is True:
            arg_filter = lambda k: k not in {"self", "reactor"}
        else:
            include_args = set(include_args)
            arg_filter = lambda k: k in include_args

    def decorate_log_call_deferred(f):
        wrapped_f = unwrap(f)

        @wraps(f)
        def logged_f(*a, **kw):
            if include_args:
                callargs = {
                    k: v
                    for k, v in inspect.getcallargs(wrapped_f, *a, **kw).items()
                    if arg_filter(k)
                }
            else:
                callargs = {}

            # Use the action's context method to avoid ending the action when
            # the `with` block ends.
            with start_action(action_type=action_type, **callargs).context():
                # Use addActionFinish so that the action finishes when the
                # Deferred fires.
                d = maybeDeferred(f, *a, **kw)
                return DeferredContext(d).addActionFinish()

        return logged_f

    return decorate_log_call_deferred


def log_inline_callbacks(action_type, include_args=False):
    """
    Like py:`log_call_deferred` but decorates the function with :py:`inline_callbacks`.

    This is needed so that py:`log_call_deferred` can access the right argument names.
    """

    def wrap(f):
        wrapper = inline_callbacks(f)
        wrapper.__wrapped__ = f
        return log_call_deferred(action_type, include_args=include_args)(wrapper)

    return wrap
