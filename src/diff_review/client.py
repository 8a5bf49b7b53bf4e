# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

import json

from eliot import (
    start_action,
)
from eliot.twisted import (
    inline_callbacks,
)

from twisted.internet.defer import (
    returnValue,
)
from twisted.internet.endpoints import (
    clientFromString,
)
from twisted.internet.error import (
    ConnectError,
)
from twisted.web import (
    http,
)
from twisted.web.client import (
    Agent,
)
from twisted.web.iweb import (
    IAgentEndpointFactory,
)

from hyperlink import (
    DecodedURL,
)

from treq.client import (
    HTTPClient,
)
from treq.testing import (
    StubTreq,
)
from zope.interface import (
    implementer,
)

import attr

from .common import (
    MutationRejectedError,
    PhaseLockedError,
)
from .util.eliotutil import (
    log_inline_callbacks,
)


PHASE_LOCKED = u"PHASE_LOCKED"
DATABASE_NOT_AVAILABLE = u"DATABASE_NOT_AVAILABLE"


class ClientError(Exception):
    """
    Base class for all exceptions in this module
    """


class CannotAccessAPIError(ClientError):
    """
    The migration HTTP API can't be reached at all
    """


@attr.s(auto_exc=True)
class ReviewApiError(ClientError):
    """
    The migration HTTP API returned a failure code.
    """
    code = attr.ib()
    body = attr.ib()

    @property
    def reason(self):
        if isinstance(self.body, dict):
            return self.body.get("reason") or self.body.get("error")
        return None

    @property
    def error_code(self):
        if isinstance(self.body, dict):
            return self.body.get("errorCode")
        return None

    def __repr__(self):
        return "<ReviewApiError code={} reason={!r} body={!r}>".format(
            self.code,
            self.reason,
            self.body,
        )

    def __str__(self):
        extra_fields = {}
        if isinstance(self.body, dict):
            extra_fields = {
                k: v
                for (k, v) in self.body.items()
                if k not in ("reason", "error")
            }
        return u"Migration HTTP API reported error {}: {}{}".format(
            self.code,
            self.reason,
            " ({})".format(extra_fields) if extra_fields else "",
        )


@inline_callbacks
def _get_json_check_code(acceptable_codes, res):
    """
    Check that the given response's code is acceptable and read the response
    body.

    :raise ReviewApiError: If the response code is not acceptable.

    :return Deferred[Any]: If the response code is acceptable, a Deferred
        which fires with the parsed response body.
    """
    content = yield res.content()
    try:
        body = json.loads(content.decode("utf-8")) if content else {}
    except ValueError:
        # error pages from proxies are not JSON
        body = {"reason": content.decode("utf-8", "replace")}
    if res.code not in acceptable_codes:
        raise ReviewApiError(res.code, body)
    returnValue(body)


def _json_body(value):
    return json.dumps(value, ensure_ascii=False).encode("utf-8")


def _mutation_result(endpoint, backend_id, result):
    """
    Interpret the ``{success, error?, errorCode?}`` reply to a mutation.

    :raises PhaseLockedError: if the backend refused because of the
        current phase

    :raises MutationRejectedError: for any other refusal
    """
    if not isinstance(result, dict) or result.get("success", True):
        return result
    if result.get("errorCode") == PHASE_LOCKED:
        raise PhaseLockedError(endpoint, result.get("phase"), result.get("error"))
    raise MutationRejectedError(
        backend_id,
        reason=result.get("error"),
        error_code=result.get("errorCode"),
    )


@attr.s
class ReviewClient(object):
    """
    An object that knows how to call the review endpoints of one
    migration.

    :ivar HTTPClient http_client: The client to use to make HTTP requests.

    :ivar callable get_api_token: returns the current API token

    :ivar str migration_id: the migration being reviewed
    """

    # we only use the path-part not the domain
    base_url = DecodedURL.from_text(u"http://invalid./")
    http_client = attr.ib(validator=attr.validators.instance_of((HTTPClient, StubTreq)))
    get_api_token = attr.ib()
    migration_id = attr.ib(validator=attr.validators.instance_of(str))

    @property
    def migration_url(self):
        return self.base_url.child(u"api", u"migrations", self.migration_id)

    def diffs(self, path, offset, limit):
        """
        The children of one folder, folders first.
        """
        api_url = self.migration_url.child(u"diffs").replace(query=[
            (u"path", path),
            (u"offset", str(offset)),
            (u"limit", str(limit)),
        ])
        return self._authorized_request("GET", api_url)

    def search(self, params, offset, limit):
        """
        :param params: a list of (name, value) query parameters
            describing the filters and the sort order
        """
        query = [(name, str(value)) for (name, value) in params]
        query.extend([
            (u"offset", str(offset)),
            (u"limit", str(limit)),
        ])
        api_url = self.migration_url.child(u"diffs", u"search").replace(query=query)
        return self._authorized_request("GET", api_url)

    def exclude_node(self, node_id):
        return self._node_request(node_id, u"exclude")

    def unexclude_node(self, node_id):
        return self._node_request(node_id, u"unexclude")

    def mark_retry_discovery(self, node_id):
        return self._node_request(node_id, u"retry-discovery")

    def unmark_retry_discovery(self, node_id):
        return self._node_request(node_id, u"unmark-retry-discovery")

    def mark_retry_copy(self, node_id):
        return self._node_request(node_id, u"retry-copy")

    def unmark_retry_copy(self, node_id):
        return self._node_request(node_id, u"unmark-retry-copy")

    def bulk_exclude(self, node_ids):
        return self._bulk_request(u"bulk-exclude", node_ids)

    def bulk_unexclude(self, node_ids):
        return self._bulk_request(u"bulk-unexclude", node_ids)

    @inline_callbacks
    def background_tasks(self):
        """
        :returns Deferred[list]: every background task of the migration
        """
        api_url = self.migration_url.child(u"tasks")
        body = yield self._authorized_request("GET", api_url)
        if isinstance(body, dict):
            body = body.get("tasks", [])
        returnValue(body)

    def migration_status(self):
        api_url = self.migration_url.child(u"status")
        return self._authorized_request("GET", api_url)

    def queue_metrics(self):
        api_url = self.migration_url.child(u"queue-metrics")
        return self._authorized_request("GET", api_url)

    def logs(self):
        api_url = self.migration_url.child(u"logs")
        return self._authorized_request("GET", api_url)

    @log_inline_callbacks(u"review-client:change-phase", include_args=["target_phase"])
    def change_phase(self, target_phase):
        api_url = self.migration_url.child(u"phase")
        result = yield self._authorized_request(
            "POST",
            api_url,
            body=_json_body({"phase": target_phase}),
        )
        returnValue(_mutation_result(u"phase", self.migration_id, result))

    def _phase_locked(self, endpoint, error):
        phase = error.body.get("phase") if isinstance(error.body, dict) else None
        return PhaseLockedError(endpoint, phase, error.reason)

    @log_inline_callbacks(u"review-client:node", include_args=["node_id", "endpoint"])
    def _node_request(self, node_id, endpoint):
        api_url = self.migration_url.child(u"nodes", node_id, endpoint)
        try:
            result = yield self._authorized_request("POST", api_url)
        except ReviewApiError as e:
            if e.code == http.CONFLICT or e.error_code == PHASE_LOCKED:
                raise self._phase_locked(endpoint, e)
            raise
        returnValue(_mutation_result(endpoint, node_id, result))

    @log_inline_callbacks(u"review-client:bulk", include_args=["endpoint"])
    def _bulk_request(self, endpoint, node_ids):
        api_url = self.migration_url.child(u"nodes", endpoint)
        try:
            result = yield self._authorized_request(
                "POST",
                api_url,
                body=_json_body({"nodeIds": list(node_ids)}),
            )
        except ReviewApiError as e:
            if e.code == http.CONFLICT or e.error_code == PHASE_LOCKED:
                raise self._phase_locked(endpoint, e)
            raise
        returnValue(_mutation_result(endpoint, None, result))

    @inline_callbacks
    def _authorized_request(self, method, url, body=b""):
        """
        :param str method: GET, POST etc http verb

        :param DecodedURL url: the url to request
        """
        with start_action(action_type=u"review-client:request", method=method, url=url.to_text()):
            try:
                response = yield authorized_request(
                    self.http_client,
                    self.get_api_token(),
                    method,
                    url,
                    body=body,
                )

            except ConnectError:
                raise CannotAccessAPIError(
                    "Can't reach the migration service at all"
                )

            body = yield _get_json_check_code(
                [http.OK, http.CREATED, http.ACCEPTED],
                response,
            )
        returnValue(body)


@implementer(IAgentEndpointFactory)
@attr.s
class _StaticEndpointFactory(object):
    """
    Return the same endpoint for every request. This is the endpoint
    factory used by `create_http_client`.

    :ivar endpoint: the endpoint returned for every request
    """

    endpoint = attr.ib()

    def endpointForURI(self, uri):
        return self.endpoint


def create_http_client(reactor, api_client_endpoint_str):
    """
    :param reactor: Twisted reactor

    :param str api_client_endpoint_str: a Twisted client endpoint-string

    :returns: a Treq HTTPClient which will do all requests to the
        indicated endpoint
    """
    return HTTPClient(
        agent=Agent.usingEndpointFactory(
            reactor,
            _StaticEndpointFactory(
                clientFromString(reactor, api_client_endpoint_str),
            ),
        ),
    )


def create_review_client(config, http_client, migration_id):
    """
    Create a new ReviewClient for one migration of the service that
    ``config`` points at.

    :param EngineConfig config: where to find the API token

    :param treq.HTTPClient http_client: the client used to make all
        requests.

    :returns: a ReviewClient instance
    """
    def get_api_token():
        return config.api_token

    return ReviewClient(
        http_client=http_client,
        get_api_token=get_api_token,
        migration_id=migration_id,
    )


def authorized_request(http_client, auth_token, method, url, body=b""):
    """
    Perform a request of the given url with the given client, request method,
    and authorization.

    :param http_client: A treq.HTTPClient instance

    :param bytes auth_token: The authorization token to present.

    :param bytes method: The HTTP request method to use.

    :param DecodedURL url: The request URL.

    :param bytes body: The request body to include.

    :return: Whatever ``treq.request`` returns.
    """
    headers = {
        b"Authorization": b"Bearer " + auth_token,
    }
    return http_client.request(
        method,
        url,
        headers=headers,
        data=body,
    )
