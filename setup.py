#! /usr/bin/env python
# -*- coding: utf-8 -*-

import os
from setuptools import find_packages, setup


def load_requirements(filename):
    basedir = os.path.dirname(os.path.abspath(__file__))
    with open(os.path.join(basedir, "requirements", filename), "r") as f:
        return [
            line.rstrip("\n")
            for line in f.readlines()
            if not line.startswith(("#", "-r")) and line.rstrip("\n")
        ]


install_requires = load_requirements("base.in")
test_requires = load_requirements("test.in")


trove_classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "License :: OSI Approved :: GNU General Public License (GPL)",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Natural Language :: English",
    "Programming Language :: Python",
    "Programming Language :: Python :: 3",
    "Topic :: Utilities",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Archiving :: Mirroring",
    ]


setup(
    name="diff-review",
    version="0.1.0",
    description="Review the source/destination diff of a storage migration",
    long_description=open("README.rst", "r").read(),
    author="the diff-review developers",
    license="GNU GPL",
    package_dir={"": "src"},
    packages=find_packages("src"),
    classifiers=trove_classifiers,
    python_requires=">=3.7",
    install_requires=install_requires,
    extras_require={
        "test": test_requires,
    },
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "diff-review = diff_review.cli:_entry",
        ],
    },
)
