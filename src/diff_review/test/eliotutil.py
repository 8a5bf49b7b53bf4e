"""
Run every test inside an Eliot action, capturing (and validating) what
it logs.
"""

__all__ = [
    "RUN_TEST",
    "EliotLoggedRunTest",
    "eliot_logged_test",
]

from functools import (
    wraps,
    partial,
)

import attr

from eliot import (
    ActionType,
    Field,
)
from eliot.testing import capture_logging
from eliot.twisted import DeferredContext

from twisted.internet.defer import (
    maybeDeferred,
)

_NAME = Field.for_types(
    u"name",
    [str],
    u"The name of the test.",
)

RUN_TEST = ActionType(
    u"run-test",
    [_NAME],
    [],
    u"A test is run.",
)


def eliot_logged_test(f):
    """
    Decorate a test method to run in a dedicated Eliot action context.

    The captured messages are validated (so a test fails if it logs an
    unflushed traceback) and then passed on to the global logger.
    """
    class storage(object):
        pass

    @wraps(f)
    def run_and_republish(self, *a, **kw):
        # the *current* default logger, at the time the test runs
        from eliot._output import _DEFAULT_LOGGER as default_logger

        def republish():
            logger = storage.logger
            for msg, serializer in zip(logger.messages, logger.serializers):
                default_logger.write(msg, serializer)

        @capture_logging(None)
        def run(self, logger):
            storage.logger = logger
            # tests use this to flush expected tracebacks
            self.eliot_logger = logger
            # must run before capture_logging's own cleanup
            self.addCleanup(republish)
            return f(self, *a, **kw)

        with RUN_TEST(name=self.id()).context() as action:
            storage.action = action
            return DeferredContext(maybeDeferred(run, self)).addActionFinish()

    return run_and_republish


@attr.s
class EliotLoggedRunTest(object):
    """
    A *RunTest* which wraps another *RunTest* in an Eliot action.

    :ivar case: The test case to run.
    """
    _run_tests_with_factory = attr.ib()
    case = attr.ib()
    handlers = attr.ib(default=None)
    last_resort = attr.ib(default=None)

    @classmethod
    def make_factory(cls, delegated_run_test_factory):
        return partial(cls, delegated_run_test_factory)

    @property
    def eliot_logger(self):
        return self.case.eliot_logger

    @eliot_logger.setter
    def eliot_logger(self, value):
        self.case.eliot_logger = value

    def addCleanup(self, *a, **kw):
        return self.case.addCleanup(*a, **kw)

    def id(self):
        return self.case.id()

    @eliot_logged_test
    def run(self, result=None):
        return self._run_tests_with_factory(
            self.case,
            self.handlers,
            self.last_resort,
        ).run(result)
