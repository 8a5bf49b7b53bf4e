__all__ = [
    "SyncTestCase",
]

from unittest import case as _case

from testtools import (
    TestCase,
)
from testtools.twistedsupport import (
    SynchronousDeferredRunTest,
)

from .eliotutil import (
    EliotLoggedRunTest,
)


class _TestCaseMixin(object):
    """
    A mixin for ``TestCase`` adding a unittest-compatible
    ``assertRaises`` (which can be used as a context manager).
    """
    class _DummyCase(_case.TestCase):
        def dummy(self):
            pass
    _dummyCase = _DummyCase("dummy")

    def assertRaises(self, *a, **kw):
        return self._dummyCase.assertRaises(*a, **kw)


class SyncTestCase(_TestCaseMixin, TestCase):
    """
    A ``TestCase`` which can run tests that may return an already-fired
    ``Deferred``. Each test runs in its own Eliot action and its log
    messages are validated.
    """
    run_tests_with = EliotLoggedRunTest.make_factory(
        SynchronousDeferredRunTest,
    )

    # without this method, instantiating a SyncTestCase (or
    # e.g. testtools.TestCase) results in a traceback
    def runTest(self, *a, **kw):
        raise NotImplementedError
