# Copyright 2020 Least Authority TFA GmbH
# See COPYING for details.

"""
Configuration of the review engine.

A configuration directory holds:

 - ``api_client_endpoint``: a Twisted client endpoint-string for the
   migration service (e.g. ``tcp:localhost:8080``)
 - ``api_token``: the token presented to the service
 - ``review.cfg`` (optional): an INI file with ``[polling]`` and
   ``[review]`` sections overriding the defaults below
"""

from configparser import (
    ConfigParser,
)

from appdirs import (
    user_config_dir,
)

import attr

from .common import (
    ConfigurationError,
)


default_config_path = user_config_dir("diff-review")

RECONCILE_REFETCH = u"refetch"
RECONCILE_TRUST = u"trust"


def _positive(instance, attribute, value):
    if value <= 0:
        raise ConfigurationError(
            u"'{}' must be positive (not {})".format(attribute.name, value)
        )


_interval = [attr.validators.instance_of((int, float)), _positive]
_count = [attr.validators.instance_of(int), _positive]


@attr.s(frozen=True)
class EngineConfig(object):
    """
    Everything tunable about one review session.

    :ivar str api_client_endpoint: where the migration service
        listens (None if unknown)

    :ivar bytes api_token: the authorization token (None if unknown)
    """
    api_client_endpoint = attr.ib(default=None)
    api_token = attr.ib(
        default=None,
        validator=attr.validators.optional(attr.validators.instance_of(bytes)),
    )

    # polling cadence, in seconds
    status_interval = attr.ib(default=0.2, validator=_interval)
    metrics_interval = attr.ib(default=0.2, validator=_interval)
    log_interval = attr.ib(default=0.5, validator=_interval)
    task_poll_interval = attr.ib(default=1.0, validator=_interval)

    page_size = attr.ib(default=100, validator=_count)
    max_log_entries = attr.ib(default=10000, validator=_count)
    max_errors = attr.ib(default=30, validator=_count)
    search_debounce = attr.ib(default=0.3, validator=_interval)
    reconcile = attr.ib(
        default=RECONCILE_REFETCH,
        validator=attr.validators.in_([RECONCILE_REFETCH, RECONCILE_TRUST]),
    )

    @property
    def trusts_optimistic_state(self):
        return self.reconcile == RECONCILE_TRUST


# (section, option, attribute, parser)
_OPTIONS = [
    (u"polling", u"status_interval", "status_interval", ConfigParser.getfloat),
    (u"polling", u"metrics_interval", "metrics_interval", ConfigParser.getfloat),
    (u"polling", u"log_interval", "log_interval", ConfigParser.getfloat),
    (u"polling", u"task_poll_interval", "task_poll_interval", ConfigParser.getfloat),
    (u"polling", u"max_log_entries", "max_log_entries", ConfigParser.getint),
    (u"review", u"page_size", "page_size", ConfigParser.getint),
    (u"review", u"max_errors", "max_errors", ConfigParser.getint),
    (u"review", u"search_debounce", "search_debounce", ConfigParser.getfloat),
    (u"review", u"reconcile", "reconcile", ConfigParser.get),
]


def read_review_config(config_file):
    """
    :param FilePath config_file: an INI file

    :return ConfigParser: The parsed configuration file.
    """
    config = config_file.getContent()
    # Byte Order Mark is an optional garbage code point you sometimes get at
    # the start of UTF-8 encoded files. Especially on Windows. Skip it by using
    # utf-8-sig. https://en.wikipedia.org/wiki/Byte_order_mark
    parser = ConfigParser(strict=False)
    parser.read_string(config.decode("utf-8-sig"))
    return parser


def config_from_parser(parser, **kwargs):
    """
    :param ConfigParser parser: parsed ``review.cfg``

    :param kwargs: further ``EngineConfig`` attributes

    :raises ConfigurationError: if a value is malformed or out of range

    :returns EngineConfig:
    """
    for section, option, name, getter in _OPTIONS:
        if parser.has_option(section, option):
            try:
                kwargs[name] = getter(parser, section, option)
            except ValueError as e:
                raise ConfigurationError(
                    u"[{}] {}: {}".format(section, option, e)
                )
    try:
        return EngineConfig(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(str(e))


def _read_stripped(fp):
    if not fp.exists():
        return None
    return fp.getContent().strip()


def load_engine_config(basedir):
    """
    Load the configuration kept in ``basedir``. Missing files leave the
    corresponding values at their defaults.

    :param FilePath basedir: the configuration directory

    :raises ConfigurationError: for malformed values

    :returns EngineConfig:
    """
    endpoint = _read_stripped(basedir.child("api_client_endpoint"))
    if endpoint is not None:
        endpoint = endpoint.decode("utf8")
        if endpoint == u"not running":
            endpoint = None
    kwargs = {
        "api_client_endpoint": endpoint,
        "api_token": _read_stripped(basedir.child("api_token")),
    }
    config_file = basedir.child("review.cfg")
    if not config_file.exists():
        return config_from_parser(ConfigParser(), **kwargs)
    return config_from_parser(read_review_config(config_file), **kwargs)
