# Copyright (c) Least Authority TFA GmbH.
# See COPYING.* for details.

"""
The unit test package for diff-review.

This also does some test-only related setup.  The expectation is that this
code will never be loaded under real usage.
"""

from sys import (
    stderr,
)


def _configure_hypothesis():
    from os import environ

    from hypothesis import (
        HealthCheck,
        settings,
    )

    # profile names aren't namespaced in any way, so please prefix any
    # other profiles in here with "diff-review-"

    settings.register_profile(
        "diff-review-fast",
        max_examples=1,
        suppress_health_check=[
            HealthCheck.too_slow,
        ],
        deadline=60*10*1000,  # _some_ number that's not "forever" (milliseconds)
    )

    settings.register_profile(
        "diff-review-ci",
        suppress_health_check=[
            # CPU resources available to CI builds vary a lot from run
            # to run
            HealthCheck.too_slow,
        ],
        deadline=60*10*1000,  # _some_ number that's not "forever" (milliseconds)
    )

    profile_name = environ.get("DIFF_REVIEW_HYPOTHESIS_PROFILE", "default")
    print("Loading Hypothesis profile {}".format(profile_name), file=stderr)
    settings.load_profile(profile_name)
_configure_hypothesis()

from eliot import to_file
to_file(open("eliot.log", "w", encoding="utf8"))
