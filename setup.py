#!/usr/bin/env python
"""Azure CLI Extension: az mate, deployment execution engine for generated scripts."""

from setuptools import find_packages, setup

VERSION = "0.1.0b1"
CLASSIFIERS = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "License :: OSI Approved :: MIT License",
]

DEPENDENCIES = [
    "knack>=0.11.0",
    "pyyaml>=6.0",
    "requests>=2.28.0",
    "rich>=13.0.0",
    # Pin psutil: only 7.1.1 ships a pre-built win32 binary wheel.
    # Later versions (7.1.2+) require a source build which fails on
    # Azure CLI's bundled 32-bit Python (no setuptools).
    "psutil>=5.6.3,<=7.1.1",
    # Synchronous websocket client for the Cloud Shell terminal
    "websockets>=13.0",
]

setup(
    name="az-mate",
    version=VERSION,
    description="Azure CLI extension that executes generated deployment scripts locally, in Cloud Shell, or as a simulation",
    long_description="Runs PowerShell deployment scripts against a selectable backend and streams a typed log.",
    license="MIT",
    author="",
    author_email="",
    classifiers=CLASSIFIERS,
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=DEPENDENCIES,
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "azure.cli.extensions": [
            "mate=azext_mate",
        ]
    },
)
